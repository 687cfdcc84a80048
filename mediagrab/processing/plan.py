"""
Stream plans: the immutable decision describing how one request is delivered.

Each kind is its own class so that a plan only carries the fields valid for it.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping, Optional, Tuple, Union


class PlanKind(str, Enum):
    REDIRECT = "redirect"
    DIRECT_PROXY = "direct-proxy"
    REMUX = "remux"
    MERGE = "merge-two-tracks"
    TRANSCODE_AUDIO = "transcode-audio"
    TRANSCODE_GIF = "transcode-gif"
    ENHANCE_VIDEO = "enhance-video"
    PICKER = "picker"
    LOCAL_PROCESSING = "local-processing"
    ERROR = "error"


@dataclass(frozen=True)
class PlanInput:
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class OutputFormat:
    container: str
    codec: Optional[str] = None
    bitrate: Optional[str] = None  # kbps, as accepted by the API
    copy: bool = False


@dataclass(frozen=True)
class ErrorPlan:
    kind: ClassVar[PlanKind] = PlanKind.ERROR

    code: str
    context: Mapping[str, Any] = field(default_factory=dict)
    critical: bool = False

    def __post_init__(self):
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))


@dataclass(frozen=True)
class RedirectPlan:
    kind: ClassVar[PlanKind] = PlanKind.REDIRECT

    url: str
    filename: str


@dataclass(frozen=True)
class TunnelPlan:
    """Base for every plan that produces bytes through a tunnel."""

    kind: ClassVar[PlanKind]
    input_count: ClassVar[int] = 1

    inputs: Tuple[PlanInput, ...]
    filename: str
    output_format: Optional[OutputFormat] = None
    metadata_tags: Mapping[str, str] = field(default_factory=dict)
    estimated_size_multiplier: float = 1.0
    is_hls: bool = False
    prefetch: bool = False
    service: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "metadata_tags", MappingProxyType(dict(self.metadata_tags)))
        if len(self.inputs) != self.input_count:
            raise ValueError(
                f"{self.kind.value} plans take {self.input_count} input(s), got {len(self.inputs)}"
            )

    @property
    def is_processing(self) -> bool:
        """Whether executing the plan spawns ffmpeg."""
        return self.kind != PlanKind.DIRECT_PROXY


@dataclass(frozen=True)
class DirectProxyPlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.DIRECT_PROXY


@dataclass(frozen=True)
class RemuxPlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.REMUX

    mute: bool = False


@dataclass(frozen=True)
class MergePlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.MERGE
    input_count: ClassVar[int] = 2


@dataclass(frozen=True)
class TranscodeAudioPlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.TRANSCODE_AUDIO


@dataclass(frozen=True)
class TranscodeGifPlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.TRANSCODE_GIF


@dataclass(frozen=True)
class EnhanceVideoPlan(TunnelPlan):
    kind: ClassVar[PlanKind] = PlanKind.ENHANCE_VIDEO


@dataclass(frozen=True)
class PickerItem:
    type: str  # "photo" or "video"
    plan: Union[DirectProxyPlan, RemuxPlan]


@dataclass(frozen=True)
class PickerPlan:
    kind: ClassVar[PlanKind] = PlanKind.PICKER

    items: Tuple[PickerItem, ...]
    audio: Optional[TunnelPlan] = None

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))


@dataclass(frozen=True)
class LocalProcessingPlan:
    """A processing plan the client performs itself from the tunnelled inputs."""

    kind: ClassVar[PlanKind] = PlanKind.LOCAL_PROCESSING
    allowed: ClassVar[Tuple[PlanKind, ...]] = (
        PlanKind.MERGE,
        PlanKind.REMUX,
        PlanKind.TRANSCODE_AUDIO,
        PlanKind.TRANSCODE_GIF,
    )

    plan: TunnelPlan

    def __post_init__(self):
        if self.plan.kind not in self.allowed:
            raise ValueError(f"{self.plan.kind.value} cannot be processed locally")
        if self.plan.is_hls:
            raise ValueError("HLS sources cannot be processed locally")

    @property
    def processing_type(self) -> str:
        if isinstance(self.plan, RemuxPlan) and self.plan.mute:
            return "mute"
        return {
            PlanKind.MERGE: "merge",
            PlanKind.REMUX: "remux",
            PlanKind.TRANSCODE_AUDIO: "audio",
            PlanKind.TRANSCODE_GIF: "gif",
        }[self.plan.kind]


StreamPlan = Union[
    ErrorPlan,
    RedirectPlan,
    DirectProxyPlan,
    RemuxPlan,
    MergePlan,
    TranscodeAudioPlan,
    TranscodeGifPlan,
    EnhanceVideoPlan,
    PickerPlan,
    LocalProcessingPlan,
]
