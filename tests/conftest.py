"""Shared pytest fixtures and fakes for the tiered stream tests."""

import asyncio
import itertools
import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest
import pytest_asyncio
from fastapi import WebSocketDisconnect

from tiered_stream.config import NotifierConfig, ServerConfig
from tiered_stream.orchestrator import StreamOrchestrator


# =============================================================================
# Process fakes
# =============================================================================


class FakeProcess:
    """Stands in for an asyncio subprocess running ffmpeg."""

    _pids = itertools.count(4000)

    def __init__(self, stderr=None):
        self.pid = next(FakeProcess._pids)
        self.returncode: Optional[int] = None
        self.stderr = stderr
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False
        self._exited = asyncio.Event()

    def exit(self, code: int = 1) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Records encoder launches and hands back ``FakeProcess`` objects."""

    def __init__(self):
        self.commands: List[List[str]] = []
        self.processes: List[FakeProcess] = []
        self.fail_with: Optional[BaseException] = None
        self.stderr_factory: Optional[Callable[[], object]] = None

    async def __call__(self, args: List[str]) -> FakeProcess:
        self.commands.append(list(args))
        if self.fail_with is not None:
            raise self.fail_with
        stderr = self.stderr_factory() if self.stderr_factory else None
        process = FakeProcess(stderr=stderr)
        self.processes.append(process)
        return process

    def live(self) -> List[FakeProcess]:
        return [process for process in self.processes if process.returncode is None]


# =============================================================================
# WebSocket fake
# =============================================================================


class FakeWebSocket:
    """Minimal FastAPI WebSocket double used by the broadcast hub tests."""

    def __init__(self, fail_sends: bool = False):
        self.accepted = False
        self.sent: List[str] = []
        self.fail_sends = fail_sends
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise RuntimeError("connection closed")
        self.sent.append(text)

    async def receive_text(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise WebSocketDisconnect(code=1000)
        return item


# =============================================================================
# Helpers
# =============================================================================


def write_manifest(directory: Path, durations: Sequence[float], write_segments: bool = True, first: int = 0) -> List[Path]:
    """Write an ffmpeg-style rolling playlist plus its segment files."""
    directory.mkdir(parents=True, exist_ok=True)
    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        "#EXT-X-TARGETDURATION:2",
        f"#EXT-X-MEDIA-SEQUENCE:{first}",
    ]
    segments = []
    for offset, duration in enumerate(durations):
        name = f"segment_{first + offset:05d}.ts"
        lines.append(f"#EXTINF:{duration:.6f},")
        lines.append(name)
        segment = directory / name
        if write_segments:
            segment.write_bytes(b"\x47" * 188)
        segments.append(segment)
    (directory / "playlist.m3u8").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return segments


def set_mtime(path: Path, seconds: float) -> None:
    os.utime(path, (seconds, seconds))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path) -> ServerConfig:
    return ServerConfig(
        video_source=str(tmp_path / "source.mp4"),
        hls_root=str(tmp_path / "hls"),
        metrics_interval=0.05,
        restart_delay=0.05,
        watch_interval=0.01,
        shutdown_timeout=0.2,
        notifier=NotifierConfig(),
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest_asyncio.fixture
async def orchestrator(config, spawner):
    orchestrator = StreamOrchestrator(config, spawner=spawner)
    yield orchestrator
    await orchestrator.shutdown()
