import logging
import re
from typing import Optional, Tuple
from urllib.parse import unquote, urlsplit

from mediagrab.processing import errors
from mediagrab.processing.formats import infer_audio_target, url_extension
from mediagrab.processing.metadata import AssetKind, Capabilities, MetadataRecord, SourceAsset
from mediagrab.processing.plan_builder import PlanOptions
from mediagrab.processing.url import UrlMatch
from mediagrab.resolvers.base import BaseResolver, ResolverError
from mediagrab.utils.http_utils import DownloadError

logger = logging.getLogger(__name__)

# extension -> (kind, container)
EXTENSION_KINDS = {
    "mp4": (AssetKind.VIDEO, "mp4"),
    "m4v": (AssetKind.VIDEO, "mp4"),
    "mov": (AssetKind.VIDEO, "mov"),
    "webm": (AssetKind.VIDEO, "webm"),
    "mkv": (AssetKind.VIDEO, "mkv"),
    "m3u8": (AssetKind.VIDEO, "mp4"),
    "gif": (AssetKind.IMAGE, "gif"),
    "mp3": (AssetKind.AUDIO, "mp3"),
    "m4a": (AssetKind.AUDIO, "m4a"),
    "aac": (AssetKind.AUDIO, "m4a"),
    "opus": (AssetKind.AUDIO, "opus"),
    "ogg": (AssetKind.AUDIO, "ogg"),
    "wav": (AssetKind.AUDIO, "wav"),
    "flac": (AssetKind.AUDIO, "flac"),
    "jpg": (AssetKind.IMAGE, "jpg"),
    "jpeg": (AssetKind.IMAGE, "jpg"),
    "png": (AssetKind.IMAGE, "png"),
    "webp": (AssetKind.IMAGE, "webp"),
}

CONTENT_TYPE_KINDS = {
    "video/mp4": (AssetKind.VIDEO, "mp4"),
    "video/webm": (AssetKind.VIDEO, "webm"),
    "video/quicktime": (AssetKind.VIDEO, "mov"),
    "video/x-matroska": (AssetKind.VIDEO, "mkv"),
    "application/vnd.apple.mpegurl": (AssetKind.VIDEO, "mp4"),
    "application/x-mpegurl": (AssetKind.VIDEO, "mp4"),
    "audio/mpeg": (AssetKind.AUDIO, "mp3"),
    "audio/mp4": (AssetKind.AUDIO, "m4a"),
    "audio/ogg": (AssetKind.AUDIO, "ogg"),
    "audio/opus": (AssetKind.AUDIO, "opus"),
    "audio/wav": (AssetKind.AUDIO, "wav"),
    "image/jpeg": (AssetKind.IMAGE, "jpg"),
    "image/png": (AssetKind.IMAGE, "png"),
    "image/webp": (AssetKind.IMAGE, "webp"),
    "image/gif": (AssetKind.IMAGE, "gif"),
}

HLS_CONTENT_TYPES = frozenset({"application/vnd.apple.mpegurl", "application/x-mpegurl"})

_UNSAFE_FILENAME = re.compile(r"[^\w.-]+")


def filename_base(url: str) -> str:
    name = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
    stem = name.rsplit(".", 1)[0] if "." in name else name
    stem = _UNSAFE_FILENAME.sub("_", stem).strip("._")
    return stem[:100] or "media"


def classify(url: str, content_type: Optional[str]) -> Optional[Tuple[AssetKind, str]]:
    if content_type:
        found = CONTENT_TYPE_KINDS.get(content_type.split(";", 1)[0].strip().lower())
        if found:
            return found
    return EXTENSION_KINDS.get(url_extension(url) or "")


class DirectResolver(BaseResolver):
    """Describes a plain media file link from its headers and extension."""

    name = "direct"

    async def _resolve(self, match: UrlMatch, options: PlanOptions) -> MetadataRecord:
        try:
            response = await self._make_request(match.url, method="HEAD")
            headers = response.headers
        except DownloadError as e:
            if e.status_code not in (403, 405, 501):
                raise
            # origins that reject HEAD are judged by the extension alone
            logger.debug(f"HEAD rejected by origin ({e.status_code}), classifying {match.url} by extension")
            headers = {}

        content_type = headers.get("content-type")
        classified = classify(match.url, content_type)
        if classified is None:
            raise ResolverError(errors.LINK_UNSUPPORTED, f"Not a media file: {content_type}")
        kind, container = classified

        is_hls = (content_type or "").split(";", 1)[0].strip().lower() in HLS_CONTENT_TYPES or (
            url_extension(match.url) == "m3u8"
        )
        asset = SourceAsset(kind=kind, url=match.url, container=container)
        best_audio_hint = infer_audio_target(asset) if kind == AssetKind.AUDIO else None

        return MetadataRecord(
            service=self.name,
            source_assets=(asset,),
            filename_base=filename_base(match.url),
            best_audio_hint=best_audio_hint,
            capabilities=Capabilities(
                has_hls=is_hls,
                supports_mute=kind == AssetKind.VIDEO,
                audio_supported=kind in (AssetKind.VIDEO, AssetKind.AUDIO),
                refuses_partial_reads=headers.get("accept-ranges", "").lower() == "none",
            ),
            upstream_headers={},
        )
