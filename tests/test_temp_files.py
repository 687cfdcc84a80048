import asyncio
import os
import time

import httpx
import pytest

from mediagrab.stream.temp_files import TempFileManager
from mediagrab.utils.http_utils import DownloadError

SOURCE = "https://cdn.example.com/clip.mp4"


@pytest.fixture
def manager(tmp_path, mock_client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/missing.mp4":
            return httpx.Response(404)
        return httpx.Response(200, content=b"0123456789" * 100)

    return TempFileManager(str(tmp_path), max_age=300, client_factory=mock_client_factory(handler))


@pytest.mark.asyncio
async def test_acquire_downloads_whole_file(manager, tmp_path):
    path = await manager.acquire(SOURCE)

    assert os.path.dirname(path) == str(tmp_path)
    assert path.endswith(".mp4")
    with open(path, "rb") as file:
        assert file.read() == b"0123456789" * 100
    assert manager.tracked_paths == [path]


@pytest.mark.asyncio
async def test_each_acquire_gets_its_own_file(manager):
    first = await manager.acquire(SOURCE)
    second = await manager.acquire(SOURCE)

    assert first != second


@pytest.mark.asyncio
async def test_failed_download_leaves_nothing_behind(manager, tmp_path):
    with pytest.raises(DownloadError) as exc_info:
        await manager.acquire("https://cdn.example.com/missing.mp4")

    assert exc_info.value.status_code == 404
    assert os.listdir(tmp_path) == []
    assert manager.tracked_paths == []


@pytest.mark.asyncio
async def test_release_is_idempotent(manager):
    path = await manager.acquire(SOURCE)

    assert await manager.release(path) is True
    assert await manager.release(path) is False
    assert not os.path.exists(path)
    assert manager.tracked_paths == []


@pytest.mark.asyncio
async def test_sweep_removes_only_stale_files(manager):
    path = await manager.acquire(SOURCE)

    assert await manager.sweep(now=time.time()) == 0
    assert os.path.exists(path)

    assert await manager.sweep(now=time.time() + 301) == 1
    assert not os.path.exists(path)


@pytest.mark.asyncio
async def test_stop_releases_everything(manager, tmp_path):
    manager.start()
    await manager.acquire(SOURCE)
    await manager.acquire(SOURCE)

    await manager.stop()

    assert os.listdir(tmp_path) == []
    assert manager.tracked_paths == []


@pytest.fixture
def slow_client_factory(mock_client_factory):
    async def body():
        for _ in range(5):
            await asyncio.sleep(0.1)
            yield b"x" * 100

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body())

    return mock_client_factory(handler)


@pytest.mark.asyncio
async def test_sweep_leaves_running_downloads_alone(tmp_path, slow_client_factory):
    manager = TempFileManager(str(tmp_path), max_age=0.2, sweep_interval=0.05, client_factory=slow_client_factory)
    manager.start()
    try:
        path = await manager.acquire(SOURCE)

        assert os.path.exists(path)
        with open(path, "rb") as file:
            assert file.read() == b"x" * 500
        assert manager.tracked_paths == [path]
    finally:
        await manager.stop()


@pytest.mark.asyncio
async def test_file_age_counts_from_download_completion(tmp_path, slow_client_factory):
    manager = TempFileManager(str(tmp_path), max_age=0.2, client_factory=slow_client_factory)

    path = await manager.acquire(SOURCE)

    assert await manager.sweep() == 0
    assert await manager.sweep(now=time.time() + 1) == 1
    assert not os.path.exists(path)


@pytest.mark.asyncio
async def test_file_removed_during_download_is_not_handed_out(tmp_path, slow_client_factory):
    manager = TempFileManager(str(tmp_path), client_factory=slow_client_factory)

    download = asyncio.create_task(manager.acquire(SOURCE))
    while not manager.tracked_paths:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.15)
    await manager.release(manager.tracked_paths[0])

    with pytest.raises(DownloadError):
        await download
    assert os.listdir(tmp_path) == []
