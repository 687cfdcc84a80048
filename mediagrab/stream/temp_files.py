"""
Local copies of remote sources for origins that refuse the partial reads ffmpeg performs.

Every ``acquire`` downloads its own file; nothing is shared or deduplicated. The manager only
remembers what it handed out so a periodic sweep can delete files whose owner never released them.
"""

import asyncio
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

import aiofiles
import aiofiles.os
import httpx

from mediagrab.processing.formats import url_extension
from mediagrab.utils.http_utils import DownloadError, Streamer, create_httpx_client

logger = logging.getLogger(__name__)

ACCEPTED_STATUS_CODES = (200, 206)


@dataclass
class TrackedFile:
    path: str
    url: str
    created_at: float = field(default_factory=time.time)
    downloading: bool = True


class TempFileManager:
    def __init__(
        self,
        directory: str,
        max_age: float = 300,
        sweep_interval: float = 60,
        client_factory: Callable[[], httpx.AsyncClient] = create_httpx_client,
        prefix: str = "mediagrab_",
    ):
        self.directory = directory
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self.prefix = prefix
        self._client_factory = client_factory
        self._files: Dict[str, TrackedFile] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    @property
    def tracked_paths(self) -> List[str]:
        with self._lock:
            return list(self._files)

    def _track(self, path: str, url: str) -> None:
        with self._lock:
            self._files[path] = TrackedFile(path=path, url=url)

    def _mark_downloaded(self, path: str) -> bool:
        with self._lock:
            tracked = self._files.get(path)
            if tracked is None:
                return False
            tracked.downloading = False
            tracked.created_at = time.time()
            return True

    def _untrack(self, path: str) -> Optional[TrackedFile]:
        with self._lock:
            return self._files.pop(path, None)

    async def acquire(self, url: str, headers: Optional[Mapping[str, str]] = None, extension: Optional[str] = None) -> str:
        """
        Download ``url`` completely to a new local file.

        Args:
            url (str): Remote source.
            headers (Mapping[str, str], optional): Headers the origin requires.
            extension (str, optional): File extension; guessed from the URL when omitted.

        Returns:
            str: Path of the downloaded file. The caller owns it and must ``release`` it.

        Raises:
            DownloadError: If the origin does not answer with 200/206 or the transfer fails.
        """
        extension = extension or url_extension(url) or "tmp"
        path = os.path.join(self.directory, f"{self.prefix}{uuid.uuid4().hex}.{extension}")
        self._track(path, url)
        logger.debug(f"Downloading {url} to {path}")

        streamer = Streamer(self._client_factory())
        try:
            await streamer.create_streaming_response(url, headers or {})
            status_code = streamer.response.status_code
            if status_code not in ACCEPTED_STATUS_CODES:
                raise DownloadError(status_code, f"Unexpected status {status_code} while downloading {url}")

            async with aiofiles.open(path, "wb") as file:
                async for chunk in streamer.stream_content():
                    await file.write(chunk)
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(f"Temp download of {url} failed: {e!r}")
            await self.release(path)
            raise
        finally:
            await streamer.close()

        # the age counts from here; a running download is never swept
        if not self._mark_downloaded(path) or not await aiofiles.os.path.exists(path):
            await self.release(path)
            raise DownloadError(500, f"Temp file for {url} disappeared before it was handed out")

        logger.info(f"Downloaded {streamer.bytes_transferred} bytes from {url} to {path}")
        return path

    async def release(self, path: str) -> bool:
        """Delete ``path``. Safe to call any number of times; returns whether a file was removed."""
        self._untrack(path)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        logger.debug(f"Removed temp file {path}")
        return True

    async def sweep(self, now: Optional[float] = None) -> int:
        """Delete finished files older than ``max_age``. Returns how many were removed."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                tracked.path
                for tracked in self._files.values()
                if not tracked.downloading and now - tracked.created_at > self.max_age
            ]

        removed = 0
        for path in stale:
            if await self.release(path):
                removed += 1
        if stale:
            logger.info(f"Swept {len(stale)} stale temp file(s), {removed} still on disk")
        return removed

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        """Periodically remove files nobody released."""
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                return
            except OSError as e:
                logger.warning(f"Temp file sweep error: {e}")

    async def stop(self) -> None:
        """Stop the sweep loop and delete everything still tracked."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        for path in self.tracked_paths:
            await self.release(path)
