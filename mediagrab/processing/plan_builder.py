"""
Plan builder: maps a resolved MetadataRecord and the request options to a StreamPlan.

``build`` is pure. Business failures come back as ErrorPlan values, never as exceptions.
The rules are evaluated in priority order and the first one that matches wins.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from mediagrab.const import METADATA_TAGS
from mediagrab.processing import errors
from mediagrab.processing.formats import (
    AudioFormat,
    format_for_target,
    get_audio_format,
    infer_audio_target,
    is_copy_possible,
)
from mediagrab.processing.metadata import AssetKind, MetadataRecord, SourceAsset
from mediagrab.processing.plan import (
    DirectProxyPlan,
    EnhanceVideoPlan,
    ErrorPlan,
    LocalProcessingPlan,
    MergePlan,
    OutputFormat,
    PickerItem,
    PickerPlan,
    PlanInput,
    RedirectPlan,
    RemuxPlan,
    StreamPlan,
    TranscodeAudioPlan,
    TranscodeGifPlan,
    TunnelPlan,
)


HEVC_CODECS = frozenset({"h265", "hevc", "hvc1", "hev1"})

GIF_SIZE_MULTIPLIER = 60.0
HD_SIZE_MULTIPLIER = 4.0


@dataclass(frozen=True)
class PlanOptions:
    download_mode: str = "auto"  # auto, audio, mute or hd
    audio_format: str = "mp3"  # "best" or a key of AUDIO_FORMATS
    audio_bitrate: str = "128"
    full_audio: bool = False
    allow_h265: bool = False
    always_proxy: bool = False
    disable_metadata: bool = False
    convert_gif: bool = True
    local_processing: bool = False
    default_audio_format: str = "m4a"
    duration_limit: Optional[int] = None  # seconds

    @property
    def audio_only(self) -> bool:
        return self.download_mode == "audio"


def build(metadata: MetadataRecord, options: PlanOptions) -> StreamPlan:
    """
    Build the stream plan for ``metadata`` under ``options``.

    Args:
        metadata (MetadataRecord): What the resolver found.
        options (PlanOptions): The caller's request options plus configured defaults.

    Returns:
        StreamPlan: The delivery decision. Expected failures are returned as ErrorPlan.
    """
    if metadata.transient_error is not None:
        error = metadata.transient_error
        return ErrorPlan(code=error.code, context=error.context, critical=error.critical)

    if options.duration_limit and metadata.duration and metadata.duration > options.duration_limit:
        return _error(errors.CONTENT_TOO_LONG, limit=options.duration_limit // 60)

    if not metadata.source_assets:
        return _error(errors.FETCH_EMPTY)

    plan = _PlanRules(metadata, options).select()

    if options.local_processing and isinstance(plan, TunnelPlan):
        if plan.kind in LocalProcessingPlan.allowed and not plan.is_hls:
            return LocalProcessingPlan(plan)
    return plan


def _error(code: str, service: Optional[str] = None, limit: Optional[int] = None) -> ErrorPlan:
    return ErrorPlan(code=code, context=errors.error_context(code, service, limit))


def is_hevc(asset: SourceAsset) -> bool:
    return (asset.codec or "").lower() in HEVC_CODECS


def select_video(videos: Sequence[SourceAsset], allow_h265: bool) -> Optional[SourceAsset]:
    """Pick the preferred video asset, preferring H.265 only when it is allowed."""
    if not videos:
        return None
    hevc = [video for video in videos if is_hevc(video)]
    other = [video for video in videos if not is_hevc(video)]
    if allow_h265:
        return (hevc or other)[0]
    return (other or hevc)[0]


class _PlanRules:
    def __init__(self, metadata: MetadataRecord, options: PlanOptions):
        self.metadata = metadata
        self.options = options
        self.capabilities = metadata.capabilities
        self.videos = metadata.assets_of(AssetKind.VIDEO)
        self.audios = metadata.assets_of(AssetKind.AUDIO)
        self.images = metadata.assets_of(AssetKind.IMAGE)
        self.combined = tuple(video for video in self.videos if video.has_audio)

    def select(self) -> StreamPlan:
        rules: Tuple[Callable[[], Optional[StreamPlan]], ...] = (
            self._picker,
            self._gif,
            self._audio,
            self._mute,
            self._hd,
            self._merge,
            self._hls,
        )
        for rule in rules:
            plan = rule()
            if plan is not None:
                return plan
        return self._passthrough()

    # helpers

    def _input(self, asset: SourceAsset) -> PlanInput:
        return PlanInput(asset.url, self.metadata.upstream_headers)

    def _filename(self, suffix: str, extension: str) -> str:
        return f"{self.metadata.filename_base}{suffix}.{extension}"

    def _tags(self):
        if self.options.disable_metadata:
            return {}
        return {key: value for key, value in self.metadata.metadata_tags.items() if key in METADATA_TAGS}

    def _prefetch(self) -> bool:
        return self.capabilities.refuses_partial_reads and not self.capabilities.has_hls

    def _video(self) -> Optional[SourceAsset]:
        return select_video(self.combined or self.videos, self.options.allow_h265)

    @staticmethod
    def _video_container(asset: SourceAsset) -> str:
        return (asset.container or "mp4").lower()

    @staticmethod
    def _proxy_extension(asset: SourceAsset) -> str:
        if asset.container:
            return asset.container.lower()
        if asset.kind == AssetKind.IMAGE:
            return "jpg"
        if asset.kind == AssetKind.AUDIO:
            target = infer_audio_target(asset)
            return target.container if target else "m4a"
        return "mp4"

    # rules

    def _picker(self) -> Optional[StreamPlan]:
        is_image_set = len(self.images) > 1 or (self.capabilities.has_multiple_images and self.images)
        if not is_image_set or self.options.audio_only:
            return None

        items = []
        for index, asset in enumerate(
            [asset for asset in self.metadata.source_assets if asset.kind in (AssetKind.IMAGE, AssetKind.VIDEO)],
            start=1,
        ):
            item_type = "photo" if asset.kind == AssetKind.IMAGE else "video"
            extension = self._proxy_extension(asset)
            filename = self._filename(f"_{item_type}_{index}", extension)
            if self.options.always_proxy:
                plan = RemuxPlan(
                    inputs=(self._input(asset),),
                    filename=filename,
                    output_format=OutputFormat(container=extension, copy=True),
                    service=self.metadata.service,
                )
            else:
                plan = DirectProxyPlan(inputs=(self._input(asset),), filename=filename, service=self.metadata.service)
            items.append(PickerItem(type=item_type, plan=plan))

        audio = None
        if self.audios:
            audio_plan = self._audio_plan()
            if isinstance(audio_plan, TunnelPlan):
                audio = audio_plan
        return PickerPlan(items=tuple(items), audio=audio)

    def _gif(self) -> Optional[StreamPlan]:
        if not (self.metadata.is_gif and self.options.convert_gif) or self.options.download_mode != "auto":
            return None
        video = self._video()
        if video is None:
            return None
        return TranscodeGifPlan(
            inputs=(self._input(video),),
            filename=self._filename("", "gif"),
            output_format=OutputFormat(container="gif", codec="gif"),
            estimated_size_multiplier=GIF_SIZE_MULTIPLIER,
            prefetch=self._prefetch(),
            service=self.metadata.service,
        )

    def _audio(self) -> Optional[StreamPlan]:
        if not self.options.audio_only:
            return None
        return self._audio_plan()

    def _audio_plan(self) -> StreamPlan:
        if not self.capabilities.audio_supported:
            return _error(errors.SERVICE_AUDIO_NOT_SUPPORTED)

        best_audio = max(self.audios, key=lambda asset: asset.bitrate or 0) if self.audios else None
        combined = select_video(self.combined, self.options.allow_h265)
        if self.options.full_audio and best_audio is not None:
            source, suffix = best_audio, "_audio_original"
        elif combined is not None:
            source, suffix = combined, "_audio"
        elif best_audio is not None:
            source, suffix = best_audio, "_audio"
        else:
            return _error(errors.FETCH_EMPTY)

        audio_format, force_transcode = self._audio_target()
        is_hls = self.capabilities.has_hls

        if not force_transcode and not is_hls and is_copy_possible(source, audio_format.target):
            return DirectProxyPlan(
                inputs=(self._input(source),),
                filename=self._filename(suffix, audio_format.name),
                service=self.metadata.service,
            )

        bitrate = self.options.audio_bitrate if audio_format.bitrate_applies else None
        return TranscodeAudioPlan(
            inputs=(self._input(source),),
            filename=self._filename(suffix, audio_format.name),
            output_format=OutputFormat(container=audio_format.name, codec=audio_format.encoder, bitrate=bitrate),
            metadata_tags=self._tags(),
            estimated_size_multiplier=audio_size_multiplier(audio_format, bitrate),
            is_hls=is_hls,
            prefetch=self._prefetch(),
            service=self.metadata.service,
        )

    def _audio_target(self) -> Tuple[AudioFormat, bool]:
        """Resolve the requested audio format; the flag forces a re-encode."""
        if self.options.audio_format != "best":
            return get_audio_format(self.options.audio_format), False
        hint = self.metadata.best_audio_hint
        hinted = format_for_target(hint) if hint is not None else None
        if hinted is not None:
            return hinted, False
        return get_audio_format(self.options.default_audio_format), True

    def _mute(self) -> Optional[StreamPlan]:
        if self.options.download_mode != "mute":
            return None
        if not self.capabilities.supports_mute:
            return _error(errors.SERVICE_NOT_SUPPORTED)

        video = self._video()
        if video is None:
            return _error(errors.FETCH_EMPTY)
        container = self._video_container(video)
        filename = self._filename("_mute", container)
        if not video.has_audio and not self.capabilities.has_hls:
            return DirectProxyPlan(inputs=(self._input(video),), filename=filename, service=self.metadata.service)
        return RemuxPlan(
            inputs=(self._input(video),),
            filename=filename,
            output_format=OutputFormat(container=container, copy=True),
            is_hls=self.capabilities.has_hls,
            prefetch=self._prefetch(),
            service=self.metadata.service,
            mute=True,
        )

    def _hd(self) -> Optional[StreamPlan]:
        if self.options.download_mode != "hd":
            return None
        if not self.capabilities.supports_hd_variant:
            return _error(errors.SERVICE_NOT_SUPPORTED)

        hd_assets = [video for video in self.videos if video.hd]
        video = select_video(hd_assets, self.options.allow_h265) or self._video()
        if video is None:
            return _error(errors.FETCH_EMPTY)
        container = self._video_container(video)
        return EnhanceVideoPlan(
            inputs=(self._input(video),),
            filename=self._filename("_HD", container),
            output_format=OutputFormat(container=container, copy=True),
            estimated_size_multiplier=HD_SIZE_MULTIPLIER,
            is_hls=self.capabilities.has_hls,
            prefetch=self._prefetch(),
            service=self.metadata.service,
        )

    def _merge(self) -> Optional[StreamPlan]:
        if self.combined or not self.videos or not self.audios:
            return None
        video = select_video(self.videos, self.options.allow_h265)
        audio = max(self.audios, key=lambda asset: asset.bitrate or 0)
        container = self._video_container(video)
        is_hls = self.capabilities.has_hls
        return MergePlan(
            inputs=(self._input(video), self._input(audio)),
            filename=self._filename("", container),
            output_format=OutputFormat(container=container, copy=not is_hls),
            metadata_tags=self._tags(),
            is_hls=is_hls,
            service=self.metadata.service,
        )

    def _hls(self) -> Optional[StreamPlan]:
        if not self.capabilities.has_hls or not self.combined:
            return None
        video = self._video()
        return RemuxPlan(
            inputs=(self._input(video),),
            filename=self._filename("", "mp4"),
            output_format=OutputFormat(container="mp4", copy=True),
            metadata_tags=self._tags(),
            is_hls=True,
            service=self.metadata.service,
        )

    def _passthrough(self) -> StreamPlan:
        asset = self._video() or (self.audios[0] if self.audios else self.images[0])
        filename = self._filename("", self._proxy_extension(asset))
        if self.options.always_proxy or not self.capabilities.allows_redirect:
            return DirectProxyPlan(inputs=(self._input(asset),), filename=filename, service=self.metadata.service)
        return RedirectPlan(url=asset.url, filename=filename)


def audio_size_multiplier(audio_format: AudioFormat, bitrate: Optional[str]) -> float:
    """Rough output/input size ratio for an audio extraction."""
    if audio_format.name == "mp3":
        multiplier = 0.3 if bitrate == "8" else 0.5
    elif audio_format.name == "opus":
        multiplier = 0.4
    else:
        multiplier = 0.6
    return round(multiplier * 1.1, 4)
