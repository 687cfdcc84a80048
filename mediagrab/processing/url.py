"""
Link validation and service matching.

Services are described by apex domains, the subdomains they accept and ``:name`` path patterns.
Plain media file links on any host fall through to the "direct" service.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from mediagrab.processing import errors
from mediagrab.processing.errors import ResolutionError
from mediagrab.processing.formats import url_extension
from mediagrab.utils.http_utils import create_httpx_client

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = frozenset(
    {"mp4", "webm", "mkv", "mov", "m4v", "gif", "mp3", "m4a", "aac", "opus", "ogg", "wav", "flac", "m3u8"}
)
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp"})

ANY_SUBDOMAIN = "*"

_PATTERN_TOKEN = re.compile(r":(\w+)")
_SEGMENT_VALUE = r"[A-Za-z0-9\-_~ %@.:]+"


def compile_pattern(pattern: str) -> re.Pattern:
    """Turn ``video/:id`` into a regex with one named group per ``:name`` segment."""
    regex = ""
    position = 0
    for token in _PATTERN_TOKEN.finditer(pattern):
        regex += re.escape(pattern[position : token.start()])
        regex += f"(?P<{token.group(1)}>{_SEGMENT_VALUE})"
        position = token.end()
    regex += re.escape(pattern[position:])
    return re.compile(f"^{regex}$")


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    friendly_name: str
    hosts: Tuple[str, ...] = ()
    patterns: Tuple[str, ...] = ()
    # "www" and the bare domain are always accepted
    subdomains: Union[Tuple[str, ...], str] = ()
    tester: Optional[Callable[[Mapping[str, str]], bool]] = field(default=None, compare=False)
    compiled: Tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", tuple(compile_pattern(pattern) for pattern in self.patterns))

    def matches_host(self, host: str) -> bool:
        for domain in self.hosts:
            if host == domain:
                return True
            if host.endswith(f".{domain}"):
                subdomain = host[: -len(domain) - 1]
                if self.subdomains == ANY_SUBDOMAIN or subdomain == "www" or subdomain in self.subdomains:
                    return True
        return False

    def match_path(self, path: str) -> Optional[Dict[str, str]]:
        for pattern in self.compiled:
            found = pattern.match(path)
            if found:
                return found.groupdict()
        return None

    def accepts(self, patterns: Mapping[str, str]) -> bool:
        return self.tester is None or self.tester(patterns)


def _tiktok_tester(patterns: Mapping[str, str]) -> bool:
    return ("postId" in patterns and len(patterns["postId"]) <= 21) or (
        "shortLink" in patterns and len(patterns["shortLink"]) <= 13
    )


DIRECT_SERVICE = ServiceConfig(name="direct", friendly_name="Direct link")

TIKTOK_SERVICE = ServiceConfig(
    name="tiktok",
    friendly_name="TikTok",
    hosts=("tiktok.com",),
    patterns=(
        ":user/video/:postId",
        "i18n/share/video/:postId",
        ":shortLink",
        "t/:shortLink",
        ":user/photo/:postId",
        "v/:postId.html",
    ),
    subdomains=("vt", "vm", "m", "t"),
    tester=_tiktok_tester,
)

SERVICES: Dict[str, ServiceConfig] = {
    DIRECT_SERVICE.name: DIRECT_SERVICE,
    TIKTOK_SERVICE.name: TIKTOK_SERVICE,
}


def friendly_name(service: str) -> str:
    config = SERVICES.get(service)
    return config.friendly_name if config else service


@dataclass(frozen=True)
class UrlMatch:
    service: str
    url: str
    patterns: Mapping[str, str] = field(default_factory=dict)


def repair_url(url: str) -> str:
    url = url.strip()
    for scheme in ("https", "http"):
        if url.startswith(f"{scheme}//"):
            return f"{scheme}://{url[len(scheme) + 2:]}"
    return url


def normalize_url(url: str) -> str:
    """Repair a missing colon and drop userinfo, port, query, fragment and a trailing slash."""
    parts = urlsplit(repair_url(url))
    host = (parts.hostname or "").lower()
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), host, path, "", ""))


def _host(url: str) -> str:
    host = urlsplit(url).hostname or ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def extract(
    url: str, enabled_services: Iterable[str], services: Optional[Mapping[str, ServiceConfig]] = None
) -> Union[UrlMatch, ResolutionError]:
    """
    Match ``url`` against the known services.

    Returns:
        UrlMatch | ResolutionError: ``link.invalid`` for malformed or unknown links,
        ``service.disabled`` for known but disabled services and ``link.unsupported``
        when a known host serves a path shape no pattern matches or the service rejects
        the matched identifiers.
    """
    services = SERVICES if services is None else services
    enabled: FrozenSet[str] = frozenset(enabled_services)

    repaired = repair_url(url)
    try:
        parts = urlsplit(repaired)
    except ValueError:
        return errors.resolution_error(errors.LINK_INVALID)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return errors.resolution_error(errors.LINK_INVALID)

    normalized = normalize_url(repaired)
    host = _host(normalized)
    path = urlsplit(normalized).path.lstrip("/")

    for service in services.values():
        if not service.hosts or not service.matches_host(host):
            continue
        if service.name not in enabled:
            return errors.resolution_error(errors.SERVICE_DISABLED)
        found = service.match_path(path)
        if found is None or not service.accepts(found):
            return errors.resolution_error(errors.LINK_UNSUPPORTED, service=service.friendly_name)
        return UrlMatch(service=service.name, url=normalized, patterns=found)

    extension = url_extension(repaired)
    if extension in MEDIA_EXTENSIONS or extension in IMAGE_EXTENSIONS:
        if DIRECT_SERVICE.name not in enabled:
            return errors.resolution_error(errors.SERVICE_DISABLED)
        return UrlMatch(service=DIRECT_SERVICE.name, url=repaired, patterns={"extension": extension})

    return errors.resolution_error(errors.LINK_INVALID)


def service_for_url(url: str, services: Optional[Mapping[str, ServiceConfig]] = None) -> Optional[ServiceConfig]:
    services = SERVICES if services is None else services
    host = _host(normalize_url(url))
    for service in services.values():
        if service.hosts and service.matches_host(host):
            return service
    return None


async def resolve_redirecting_url(
    url: str,
    headers: Optional[Mapping[str, str]] = None,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    services: Optional[Mapping[str, ServiceConfig]] = None,
) -> Optional[UrlMatch]:
    """
    Ask the origin where a short link points and match the target.

    Only one redirect is followed. Returns None unless the target belongs to the same service
    as ``url`` and matches one of its patterns.
    """
    services = SERVICES if services is None else services
    service = service_for_url(url, services)
    if service is None:
        return None

    client_factory = client_factory or create_httpx_client
    try:
        async with client_factory() as client:
            response = await client.get(url, headers=dict(headers or {}), follow_redirects=False)
    except httpx.HTTPError as e:
        logger.warning(f"Could not expand short link {url}: {e}")
        return None

    location = response.headers.get("location")
    if not response.is_redirect or not location:
        logger.debug(f"Short link {url} answered {response.status_code} without a redirect")
        return None

    target = extract(urljoin(url, location), {service.name}, services)
    if isinstance(target, UrlMatch) and target.service == service.name:
        return target
    return None


async def expand_short_link(
    match: UrlMatch,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    services: Optional[Mapping[str, ServiceConfig]] = None,
) -> Union[UrlMatch, ResolutionError]:
    """Replace a ``shortLink`` match with the canonical link it redirects to, or fail with ``fetch.short_link``."""
    if "shortLink" not in match.patterns:
        return match

    target = await resolve_redirecting_url(match.url, client_factory=client_factory, services=services)
    if target is None or "shortLink" in target.patterns:
        return errors.resolution_error(errors.FETCH_SHORT_LINK, service=friendly_name(match.service))
    logger.info(f"Expanded short link {match.url} to {target.url}")
    return target
