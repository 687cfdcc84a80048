"""
Normalized description of the assets a resolver found for one piece of media.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from mediagrab.processing.errors import ResolutionError


class AssetKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


@dataclass(frozen=True)
class SourceAsset:
    kind: AssetKind
    url: str
    bitrate: Optional[int] = None  # approximate, kbps
    container: Optional[str] = None
    codec: Optional[str] = None
    has_audio: bool = True  # only meaningful for video assets
    hd: bool = False


@dataclass(frozen=True)
class AudioTarget:
    container: str
    codec: str


@dataclass(frozen=True)
class Capabilities:
    has_hls: bool = False
    has_multiple_images: bool = False
    supports_hd_variant: bool = False
    supports_mute: bool = False
    allows_redirect: bool = True
    audio_supported: bool = True
    refuses_partial_reads: bool = False


@dataclass(frozen=True)
class MetadataRecord:
    """
    Everything the plan builder needs about one resolved link.

    When ``transient_error`` is set the rest of the record is ignored.
    """

    service: str
    source_assets: Tuple[SourceAsset, ...] = ()
    filename_base: str = "media"
    best_audio_hint: Optional[AudioTarget] = None
    capabilities: Capabilities = field(default_factory=Capabilities)
    upstream_headers: Mapping[str, str] = field(default_factory=dict)
    metadata_tags: Mapping[str, str] = field(default_factory=dict)
    transient_error: Optional[ResolutionError] = None
    is_gif: bool = False
    duration: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.source_assets, tuple):
            object.__setattr__(self, "source_assets", tuple(self.source_assets))
        object.__setattr__(self, "upstream_headers", MappingProxyType(dict(self.upstream_headers)))
        object.__setattr__(self, "metadata_tags", MappingProxyType(dict(self.metadata_tags)))

    @classmethod
    def failed(cls, service: str, error: ResolutionError) -> "MetadataRecord":
        return cls(service=service, transient_error=error)

    def assets_of(self, kind: AssetKind) -> Tuple[SourceAsset, ...]:
        return tuple(asset for asset in self.source_assets if asset.kind == kind)
