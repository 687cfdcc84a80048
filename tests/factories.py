import asyncio
import signal
import sys

from mediagrab.processing.metadata import AssetKind, Capabilities, MetadataRecord, SourceAsset
from mediagrab.stream.process_runner import ProcessRunner


def video(url="https://cdn.example.com/clip.mp4", **kwargs) -> SourceAsset:
    kwargs.setdefault("container", "mp4")
    return SourceAsset(kind=AssetKind.VIDEO, url=url, **kwargs)


def audio(url="https://cdn.example.com/clip.m4a", **kwargs) -> SourceAsset:
    return SourceAsset(kind=AssetKind.AUDIO, url=url, **kwargs)


def image(url="https://cdn.example.com/photo.jpg", **kwargs) -> SourceAsset:
    kwargs.setdefault("container", "jpg")
    return SourceAsset(kind=AssetKind.IMAGE, url=url, **kwargs)


def record(*assets, capabilities=None, **kwargs) -> MetadataRecord:
    kwargs.setdefault("filename_base", "clip")
    return MetadataRecord(
        service="direct",
        source_assets=tuple(assets),
        capabilities=capabilities or Capabilities(),
        **kwargs,
    )


WRITE_ONCE = "import sys; sys.stdout.buffer.write(b'hello world')"
EXIT_WITH_ERROR = "import sys; sys.exit(3)"
WRITE_FOREVER = """
import sys, time
while True:
    sys.stdout.buffer.write(b"x" * 4096)
    sys.stdout.buffer.flush()
    time.sleep(0.01)
"""


def _ignore_sigterm():
    signal.signal(signal.SIGTERM, signal.SIG_IGN)


class ScriptedRunner(ProcessRunner):
    """
    Runs a Python program in place of ffmpeg and remembers what it was asked to run.

    With ``deadline_after_spawn`` the operation timeout only starts counting once the child exists.
    """

    def __init__(self, script: str, ignore_sigterm: bool = False, deadline_after_spawn: bool = False, **kwargs):
        kwargs.setdefault("grace_period", 1.0)
        kwargs.setdefault("default_timeout", 10)
        super().__init__(**kwargs)
        self.script = script
        self.ignore_sigterm = ignore_sigterm
        self.deadline_after_spawn = deadline_after_spawn
        self.spawned = asyncio.Event()
        self.commands = []
        self.processes = []

    async def _spawn(self, command):
        self.commands.append(command)
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            self.script,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            preexec_fn=_ignore_sigterm if self.ignore_sigterm else None,
        )
        self.processes.append(process)
        self.spawned.set()
        return process

    async def _watch(self, handle, cancel_signal):
        if self.deadline_after_spawn:
            loop = asyncio.get_running_loop()
            timeout = handle.deadline - loop.time()
            await self.spawned.wait()
            handle.deadline = loop.time() + timeout
        await super()._watch(handle, cancel_signal)
