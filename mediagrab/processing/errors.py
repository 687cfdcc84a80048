from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

LINK_INVALID = "link.invalid"
LINK_UNSUPPORTED = "link.unsupported"

SERVICE_DISABLED = "service.disabled"
SERVICE_NOT_SUPPORTED = "service.not_supported"
SERVICE_UNSUPPORTED = "service.unsupported"
SERVICE_AUDIO_NOT_SUPPORTED = "service.audio_not_supported"

FETCH_FAIL = "fetch.fail"
FETCH_RATE = "fetch.rate"
FETCH_CRITICAL = "fetch.critical"
FETCH_EMPTY = "fetch.empty"
FETCH_SHORT_LINK = "fetch.short_link"

CONTENT_TOO_LONG = "content.too_long"
CONTENT_POST_UNAVAILABLE = "content.post.unavailable"
CONTENT_POST_AGE = "content.post.age"
CONTENT_VIDEO_UNAVAILABLE = "content.video.unavailable"

ERROR_CODES = frozenset(
    {
        LINK_INVALID,
        LINK_UNSUPPORTED,
        SERVICE_DISABLED,
        SERVICE_NOT_SUPPORTED,
        SERVICE_UNSUPPORTED,
        SERVICE_AUDIO_NOT_SUPPORTED,
        FETCH_FAIL,
        FETCH_RATE,
        FETCH_CRITICAL,
        FETCH_EMPTY,
        FETCH_SHORT_LINK,
        CONTENT_TOO_LONG,
        CONTENT_POST_UNAVAILABLE,
        CONTENT_POST_AGE,
        CONTENT_VIDEO_UNAVAILABLE,
    }
)

# Codes whose message names the service that failed.
SERVICE_CONTEXT_CODES = frozenset(
    {FETCH_FAIL, FETCH_RATE, FETCH_CRITICAL, LINK_UNSUPPORTED, CONTENT_VIDEO_UNAVAILABLE}
)


@dataclass(frozen=True)
class ResolutionError:
    """
    A typed failure carried as data through resolution and planning.

    ``critical`` marks failures that are not specific to the request (for instance the
    origin changed its API) so they can be logged apart from ordinary user errors.
    """

    code: str
    context: Mapping[str, Any] = field(default_factory=dict)
    critical: bool = False

    def __post_init__(self):
        if self.code not in ERROR_CODES:
            raise ValueError(f"Unknown error code: {self.code}")
        object.__setattr__(self, "context", MappingProxyType(dict(self.context)))


def error_context(code: str, service: Optional[str] = None, limit: Optional[int] = None) -> dict:
    """Interpolation data a client needs to render ``code``."""
    if code == CONTENT_TOO_LONG and limit is not None:
        return {"limit": limit}
    if code in SERVICE_CONTEXT_CODES and service:
        return {"service": service}
    return {}


def resolution_error(
    code: str, service: Optional[str] = None, limit: Optional[int] = None, critical: bool = False
) -> ResolutionError:
    return ResolutionError(code=code, context=error_context(code, service, limit), critical=critical)
