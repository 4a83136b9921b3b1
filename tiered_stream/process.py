"""Encoder command construction and the process-control seam."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from .latency import MANIFEST_NAME, SEGMENT_PATTERN
from .models import Tier


class EncoderProcess(Protocol):
    pid: Optional[int]
    returncode: Optional[int]
    stderr: Any

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[[List[str]], Awaitable[EncoderProcess]]


async def spawn_subprocess(args: List[str]) -> EncoderProcess:
    """Launch an encoder without blocking the event loop."""
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


def build_ffmpeg_command(tier: Tier, source: str, output_dir: Path, ffmpeg: str = "ffmpeg") -> List[str]:
    input_args: List[str] = ["-stream_loop", "-1", "-re", "-fflags", "+genpts", "-i", source]

    filters = [f"scale=-2:{tier.height}"]

    video_args = [
        "-c:v",
        "libx264",
        "-preset",
        tier.preset,
        "-profile:v",
        tier.profile,
        "-level",
        tier.level,
        "-b:v",
        tier.video_bitrate,
        "-maxrate",
        tier.max_rate,
        "-bufsize",
        tier.buffer_size,
        "-r",
        str(tier.frame_rate),
        "-g",
        str(tier.keyframe_interval),
        "-keyint_min",
        str(tier.keyframe_interval),
        "-sc_threshold",
        "0",
        "-pix_fmt",
        "yuv420p",
    ]

    audio_args = ["-c:a", "aac", "-ar", "48000", "-b:a", tier.audio_bitrate]

    output_args = [
        "-f",
        "hls",
        "-hls_time",
        str(tier.segment_duration),
        "-hls_list_size",
        str(tier.window_size),
        "-hls_flags",
        "delete_segments+omit_endlist",
        "-hls_segment_filename",
        str(output_dir / SEGMENT_PATTERN),
        str(output_dir / MANIFEST_NAME),
    ]

    return [
        ffmpeg,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "warning",
        "-nostats",
        "-progress",
        "pipe:2",
        *input_args,
        "-vf",
        ",".join(filters),
        *video_args,
        *audio_args,
        *output_args,
    ]
