import logging
import ssl
import typing
from functools import partial
from urllib import parse

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tqdm.asyncio import tqdm as tqdm_asyncio

from mediagrab.configs import settings

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    def __init__(self, status_code, message):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


DEFAULT_SSL_CONTEXT = ssl.create_default_context()


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create the AsyncClient used for every origin request.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments; they override the configured defaults.

    Returns:
        httpx.AsyncClient: Client with the configured proxy mounts, timeout and user agent.
    """
    kwargs.setdefault("timeout", settings.transport_config.timeout)
    kwargs.setdefault("headers", {"user-agent": settings.user_agent})
    kwargs.setdefault("verify", DEFAULT_SSL_CONTEXT)
    return httpx.AsyncClient(
        mounts=settings.transport_config.get_mounts(), follow_redirects=follow_redirects, **kwargs
    )


class Streamer:
    """One upstream GET whose body is handed out as it arrives. ``close`` also closes the client."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client
        self.response: typing.Optional[httpx.Response] = None
        self.bytes_transferred = 0

    async def create_streaming_response(self, url: str, headers: typing.Mapping[str, str]):
        """
        Send the request and keep the body unread.

        Raises:
            DownloadError: On timeouts, transport failures and non-2xx answers (after redirects).
        """
        request = self.client.build_request("GET", url, headers=dict(headers))
        try:
            self.response = await self.client.send(request, stream=True)
            self.response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning(f"Timeout while connecting to {url}")
            raise DownloadError(409, "Timeout while creating streaming response")
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"Upstream answered {status_code} for {url}")
            raise DownloadError(status_code, f"HTTP error {status_code} while creating streaming response")
        except httpx.RequestError as e:
            logger.error(f"Error creating streaming response for {url}: {e}")
            raise DownloadError(502, f"Error creating streaming response: {e}")

    def expected_size(self) -> int:
        """Full resource size announced by the upstream, 0 when unknown."""
        content_range = self.response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if total.isdigit():
            return int(total)
        length = self.response.headers.get("content-length", "")
        return int(length) if length.isdigit() else 0

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        if self.response is None:
            raise RuntimeError("No response available for streaming")

        progress_bar = None
        if settings.enable_streaming_progress:
            progress_bar = tqdm_asyncio(
                total=self.expected_size() or None,
                unit="B",
                unit_scale=True,
                unit_divisor=1024,
                desc="Proxying",
                mininterval=1,
            )
        try:
            async for chunk in self.response.aiter_bytes():
                self.bytes_transferred += len(chunk)
                if progress_bar is not None:
                    progress_bar.update(len(chunk))
                yield chunk
        except httpx.TimeoutException:
            logger.warning(f"Timeout while streaming after {self.bytes_transferred} bytes")
            raise DownloadError(409, "Timeout while streaming")
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred and "peer closed connection" in str(e):
                # some origins drop the connection instead of finishing the last chunk
                logger.warning(f"Upstream closed the connection after {self.bytes_transferred} bytes: {e}")
                return
            logger.error(f"Protocol error while streaming: {e}")
            raise DownloadError(502, f"Protocol error while streaming: {e}")
        finally:
            if progress_bar is not None:
                progress_bar.close()

    async def close(self):
        if self.response is not None:
            await self.response.aclose()
        await self.client.aclose()


async def fetch_content_length(client: httpx.AsyncClient, url: str, headers: typing.Mapping[str, str]) -> int | None:
    """HEAD ``url`` and return its Content-Length, or None when the origin does not say."""
    try:
        response = await client.head(url, headers=dict(headers), follow_redirects=True)
    except httpx.HTTPError as e:
        logger.debug(f"Length probe failed for {url}: {e}")
        return None
    if not response.is_success:
        return None
    value = response.headers.get("content-length")
    return int(value) if value and value.isdigit() else None


def get_base_url(request: Request) -> str:
    """
    Public base URL for links handed back to the client.

    ``settings.api_url`` wins; otherwise the request's own base URL, with the scheme a
    reverse proxy reports through X-Forwarded-Proto.
    """
    if settings.api_url:
        return settings.api_url.rstrip("/")
    scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
    return str(request.base_url.replace(scheme=scheme)).rstrip("/")


def get_client_ip(request: Request) -> str:
    """
    Extract the client's real IP address from the request headers or fallback to the client host.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "127.0.0.1"


def content_disposition(filename: str) -> str:
    """Attachment header carrying both an ASCII fallback and the RFC 5987 encoded name."""
    fallback = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "file"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{parse.quote(filename)}"


class EnhancedStreamingResponse(Response):
    """
    Streams a tunnel body while watching for the client to disconnect.

    The body has no fixed length: a Content-Length passed in is dropped and the server falls back to
    chunked transfer. Upstream failures after the headers went out end the body cleanly.
    """

    def __init__(
        self,
        content: typing.AsyncIterable[bytes],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        self.body_iterator = content
        self.status_code = status_code
        self.media_type = media_type
        self.background = background
        self.init_headers({name: value for name, value in (headers or {}).items() if name.lower() != "content-length"})
        self.bytes_sent = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                return

    async def stream_response(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        try:
            async for chunk in self.body_iterator:
                await send({"type": "http.response.body", "body": chunk, "more_body": True})
                self.bytes_sent += len(chunk)
        except (ConnectionResetError, anyio.BrokenResourceError):
            logger.info(f"Client disconnected after {self.bytes_sent} bytes")
            return
        except (httpx.RemoteProtocolError, h11.LocalProtocolError, DownloadError) as e:
            logger.warning(f"Upstream error after {self.bytes_sent} bytes, ending response: {e}")
        except Exception:
            # status and headers are already out; all that is left is ending the body
            logger.exception(f"Producer failed after {self.bytes_sent} bytes")
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        async with anyio.create_task_group() as task_group:

            async def run_and_cancel(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(run_and_cancel, partial(self.stream_response, send))
            await run_and_cancel(partial(self.listen_for_disconnect, receive))

        if self.background is not None:
            await self.background()
