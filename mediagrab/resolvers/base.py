from abc import ABC, abstractmethod
from typing import Callable, Dict, Mapping, Optional

import httpx
import logging

from mediagrab.configs import settings
from mediagrab.processing import errors
from mediagrab.processing.metadata import MetadataRecord
from mediagrab.processing.plan_builder import PlanOptions
from mediagrab.processing.url import UrlMatch, friendly_name
from mediagrab.utils.http_utils import DownloadError, create_httpx_client

logger = logging.getLogger(__name__)


class ResolverError(Exception):
    """A resolution failure with a response code attached."""

    def __init__(self, code: str, message: str = "", critical: bool = False):
        self.code = code
        self.critical = critical
        super().__init__(message or code)


class BaseResolver(ABC):
    """
    Base class for metadata resolvers.

    Subclasses implement ``_resolve`` and may raise; ``resolve`` turns every failure into a
    MetadataRecord carrying a ResolutionError so callers branch on data, not exceptions.
    """

    name: str = ""

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient] = create_httpx_client,
        request_headers: Optional[Mapping[str, str]] = None,
    ):
        self.client_factory = client_factory
        self.base_headers = {"user-agent": settings.user_agent}
        self.base_headers.update(request_headers or {})

    @property
    def friendly_name(self) -> str:
        return friendly_name(self.name)

    async def _make_request(
        self, url: str, method: str = "GET", headers: Optional[Dict] = None, raise_on_status: bool = True, **kwargs
    ) -> httpx.Response:
        """
        Send one request to the origin. Failures are not retried.

        Raises:
            DownloadError: On a non-2xx status (when ``raise_on_status``) or a transport failure.
        """
        request_headers = self.base_headers.copy()
        if headers:
            request_headers.update(headers)

        try:
            async with self.client_factory() as client:
                response = await client.request(method, url, headers=request_headers, **kwargs)
        except httpx.TimeoutException:
            logger.warning(f"Timeout while requesting {url}")
            raise DownloadError(504, f"Timeout while requesting {url}")
        except httpx.HTTPError as e:
            logger.warning(f"Error requesting {url}: {e}")
            raise DownloadError(502, f"Error requesting {url}: {e}")

        if raise_on_status and not response.is_success:
            logger.debug(f"{method} {url} answered {response.status_code}")
            raise DownloadError(response.status_code, f"HTTP error {response.status_code} while requesting {url}")
        return response

    def _failed(self, code: str, critical: bool = False) -> MetadataRecord:
        return MetadataRecord.failed(
            self.name, errors.resolution_error(code, service=self.friendly_name, critical=critical)
        )

    async def resolve(self, match: UrlMatch, options: PlanOptions) -> MetadataRecord:
        try:
            return await self._resolve(match, options)
        except DownloadError as e:
            code = errors.FETCH_RATE if e.status_code == 429 else errors.FETCH_FAIL
            return self._failed(code)
        except ResolverError as e:
            logger.info(f"{self.name} resolver returned {e.code}: {e}")
            return self._failed(e.code, e.critical)
        except Exception as e:
            logger.exception(f"{self.name} resolver crashed on {match.url}: {e}")
            return self._failed(errors.FETCH_CRITICAL, critical=True)

    @abstractmethod
    async def _resolve(self, match: UrlMatch, options: PlanOptions) -> MetadataRecord:
        """Describe the media behind ``match``."""
        pass
