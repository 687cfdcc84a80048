"""
Audio output formats and the copy-possible heuristic.

Container and codec are inferred from what the resolver declared and from the asset URL
(extension or a ``mime_type`` query parameter). Nothing is probed, so whenever the inference is
not confident the answer is "transcode".
"""

from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import parse_qs, urlparse

from mediagrab.processing.metadata import AudioTarget, SourceAsset


@dataclass(frozen=True)
class AudioFormat:
    name: str
    container: str
    codec: str
    encoder: str
    bitrate_applies: bool = True

    @property
    def target(self) -> AudioTarget:
        return AudioTarget(self.container, self.codec)


AUDIO_FORMATS: Dict[str, AudioFormat] = {
    "mp3": AudioFormat("mp3", "mp3", "mp3", "libmp3lame"),
    "m4a": AudioFormat("m4a", "m4a", "aac", "aac"),
    "opus": AudioFormat("opus", "opus", "opus", "libopus"),
    "ogg": AudioFormat("ogg", "ogg", "vorbis", "libvorbis"),
    "wav": AudioFormat("wav", "wav", "pcm_s16le", "pcm_s16le", bitrate_applies=False),
}

# extension or mime type -> (container, codec)
_EXTENSION_HINTS = {
    "mp3": ("mp3", "mp3"),
    "m4a": ("m4a", "aac"),
    "aac": ("m4a", "aac"),
    "opus": ("opus", "opus"),
    "wav": ("wav", "pcm_s16le"),
}

_MIME_HINTS = {
    "audio/mpeg": ("mp3", "mp3"),
    "audio/mp3": ("mp3", "mp3"),
    "audio/mp4": ("m4a", "aac"),
    "audio/x-m4a": ("m4a", "aac"),
    "audio/opus": ("opus", "opus"),
    "audio/wav": ("wav", "pcm_s16le"),
}

# Codec implied by a container when the resolver declared only the container.
_CONTAINER_CODECS = {
    "mp3": "mp3",
    "m4a": "aac",
    "opus": "opus",
    "wav": "pcm_s16le",
}


def get_audio_format(name: str) -> AudioFormat:
    try:
        return AUDIO_FORMATS[name]
    except KeyError:
        raise ValueError(f"Unsupported audio format: {name}")


def format_for_target(target: AudioTarget) -> Optional[AudioFormat]:
    """Return the output format producing ``target``, if there is one."""
    for audio_format in AUDIO_FORMATS.values():
        if audio_format.container == target.container and audio_format.codec == target.codec:
            return audio_format
    return None


def url_extension(url: str) -> Optional[str]:
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return None
    return name.rsplit(".", 1)[-1].lower() or None


def infer_audio_target(asset: SourceAsset) -> Optional[AudioTarget]:
    """
    Infer the container/codec pair of ``asset``.

    Declared hints win. A declared container with a conflicting declared codec, or no usable
    evidence at all, yields None.
    """
    container = asset.container.lower() if asset.container else None
    codec = asset.codec.lower() if asset.codec else None

    if container and codec:
        return AudioTarget(container, codec)
    if container and not codec:
        implied = _CONTAINER_CODECS.get(container)
        return AudioTarget(container, implied) if implied else None

    query = parse_qs(urlparse(asset.url).query)
    mime_type = (query.get("mime_type") or query.get("mime") or [None])[0]
    hint = _MIME_HINTS.get(mime_type.lower()) if mime_type else None
    if hint is None:
        hint = _EXTENSION_HINTS.get(url_extension(asset.url) or "")
    if hint is None:
        return None
    if codec and codec != hint[1]:
        return None
    return AudioTarget(*hint)


def is_copy_possible(asset: SourceAsset, target: AudioTarget) -> bool:
    """True only when both container and codec of ``asset`` are known to equal ``target``."""
    inferred = infer_audio_target(asset)
    if inferred is None:
        return False
    return inferred.container == target.container and inferred.codec == target.codec
