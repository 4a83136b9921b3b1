"""Supervise one ffmpeg HLS encoder per quality tier."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .config import ServerConfig
from .errors import PipelineFailure
from .latency import MANIFEST_NAME
from .models import Pipeline, PipelineStatus, Tier, utcnow
from .process import EncoderProcess, Spawner, build_ffmpeg_command, spawn_subprocess
from .watcher import SegmentCallback, SegmentWatcher

logger = logging.getLogger(__name__)


class PipelineSupervisor:
    """Keeps every requested tier encoding, restarting encoders that die.

    Pipelines move ``starting -> running -> failed`` and a failed pipeline is
    replaced by a fresh one after ``restart_delay``. Restarts are retried
    forever; ``restart_backoff_max`` turns the fixed delay into a capped
    exponential one.
    """

    def __init__(
        self,
        config: ServerConfig,
        on_segment: SegmentCallback,
        spawner: Spawner = spawn_subprocess,
        on_failure: Optional[Callable[[PipelineFailure], None]] = None,
        on_start: Optional[Callable[[Pipeline], None]] = None,
    ):
        self.config = config
        self.hls_root = Path(config.hls_root)
        self.on_segment = on_segment
        self.on_failure = on_failure
        self.on_start = on_start
        self._spawner = spawner
        self.pipelines: Dict[str, Pipeline] = {}
        self.watchers: Dict[str, SegmentWatcher] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._restarts: Dict[str, asyncio.Task] = {}
        self._consecutive_failures: Dict[str, int] = {}
        self._stopping = False

    def manifest_url(self, tier: Tier) -> str:
        return f"{self.config.hls_public_path}/{tier.id}/{MANIFEST_NAME}"

    def status(self, tier_id: str) -> Optional[PipelineStatus]:
        pipeline = self.pipelines.get(tier_id)
        return pipeline.status if pipeline else None

    def active_tiers(self) -> List[str]:
        return [tier_id for tier_id, pipeline in self.pipelines.items() if pipeline.is_live]

    def restart_delay(self, tier_id: str) -> float:
        failures = self._consecutive_failures.get(tier_id, 1)
        if self.config.restart_backoff_max is None:
            return self.config.restart_delay
        delay = self.config.restart_delay * (2 ** max(failures - 1, 0))
        return min(delay, self.config.restart_backoff_max)

    async def ensure_running(self, tier: Tier) -> str:
        url = self.manifest_url(tier)
        current = self.pipelines.get(tier.id)
        if current is not None and current.is_live:
            return url
        if self._stopping:
            logger.info("Supervisor is stopping; not starting %s", tier.id)
            return url

        pending = self._restarts.pop(tier.id, None)
        if pending is not None:
            pending.cancel()

        pipeline = Pipeline(
            tier=tier,
            output_dir=self.hls_root / tier.id,
            attempt=current.attempt + 1 if current else 0,
        )
        self.pipelines[tier.id] = pipeline
        pipeline.append_log("Pipeline starting.")
        await self._start(pipeline)
        return url

    async def _start(self, pipeline: Pipeline) -> None:
        tier = pipeline.tier
        cmd = build_ffmpeg_command(tier, self.config.video_source, pipeline.output_dir, self.config.ffmpeg_binary)
        try:
            await asyncio.to_thread(self._prepare_output_dir, pipeline.output_dir)
            logger.info("Launching encoder for %s: %s", tier.id, " ".join(cmd))
            process = await self._spawner(cmd)
        except Exception as exc:  # noqa: BLE001
            await self._fail(pipeline, f"could not launch encoder: {exc!r}")
            return

        if pipeline.status is PipelineStatus.STOPPED:
            await self._terminate(process)
            return

        pipeline.process = process
        pipeline.started_at = utcnow()
        pipeline.status = PipelineStatus.RUNNING
        pipeline.append_log(f"Encoder running with pid {pipeline.pid}.")
        logger.info("Pipeline %s running (pid %s, attempt %s)", tier.id, pipeline.pid, pipeline.attempt)

        await self._watch(tier, pipeline.output_dir)
        self._monitors[tier.id] = asyncio.create_task(self._monitor(pipeline), name=f"encoder-monitor-{tier.id}")
        if self.on_start:
            self.on_start(pipeline)

    @staticmethod
    def _prepare_output_dir(output_dir: Path) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        for stale in output_dir.iterdir():
            if stale.suffix in {".ts", ".m3u8", ".tmp"}:
                stale.unlink(missing_ok=True)

    async def _monitor(self, pipeline: Pipeline) -> None:
        process = pipeline.process
        last_error = await self._drain_stderr(pipeline)
        returncode = await process.wait()
        if pipeline.status is not PipelineStatus.RUNNING:
            return
        reason = f"encoder exited with code {returncode}"
        if last_error:
            reason = f"{reason}: {last_error}"
        await self._fail(pipeline, reason)

    async def _drain_stderr(self, pipeline: Pipeline) -> Optional[str]:
        stream = getattr(pipeline.process, "stderr", None)
        if stream is None:
            return None
        last_error = None
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.debug("Skipping oversized encoder output for %s", pipeline.tier.id)
                continue
            if not raw:
                return last_error
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            key, sep, value = line.partition("=")
            if sep and " " not in key:
                pipeline.progress[key] = value
                continue
            if "error" in line.lower():
                last_error = line
                pipeline.append_log(line)
                logger.warning("Encoder %s: %s", pipeline.tier.id, line)
            else:
                logger.debug("Encoder %s: %s", pipeline.tier.id, line)

    async def _fail(self, pipeline: Pipeline, reason: str) -> None:
        tier = pipeline.tier
        if pipeline.status is PipelineStatus.STOPPED:
            return
        pipeline.status = PipelineStatus.FAILED
        pipeline.append_log(reason)
        self._consecutive_failures[tier.id] = self._consecutive_failures.get(tier.id, 0) + 1
        logger.error("Pipeline %s failed: %s", tier.id, reason)
        await self._unwatch(tier.id)

        if self.on_failure:
            try:
                self.on_failure(PipelineFailure(tier.id, reason))
            except Exception:  # noqa: BLE001
                logger.exception("Failure hook raised for %s", tier.id)

        if self._stopping:
            return
        delay = self.restart_delay(tier.id)
        logger.info("Restarting pipeline %s in %.1fs", tier.id, delay)
        self._restarts[tier.id] = asyncio.create_task(self._restart_later(tier, delay), name=f"restart-{tier.id}")

    async def _restart_later(self, tier: Tier, delay: float) -> None:
        await asyncio.sleep(delay)
        self._restarts.pop(tier.id, None)
        if self._stopping:
            return
        await self.ensure_running(tier)

    async def _watch(self, tier: Tier, directory: Path) -> None:
        await self._unwatch(tier.id)
        watcher = SegmentWatcher(
            tier.id,
            directory,
            self._segment_arrived,
            poll_interval=self.config.watch_interval,
        )
        self.watchers[tier.id] = watcher
        await watcher.start()

    async def _unwatch(self, tier_id: str) -> None:
        watcher = self.watchers.pop(tier_id, None)
        if watcher is not None:
            await watcher.stop()

    async def _segment_arrived(self, tier_id: str, filename: str) -> None:
        self._consecutive_failures.pop(tier_id, None)
        result = self.on_segment(tier_id, filename)
        if inspect.isawaitable(result):
            await result

    async def stop_all(self) -> None:
        """Terminate every encoder; survivors are killed after ``shutdown_timeout``."""
        self._stopping = True
        for task in self._restarts.values():
            task.cancel()
        self._restarts.clear()
        for tier_id in list(self.watchers):
            await self._unwatch(tier_id)

        live = [pipeline for pipeline in self.pipelines.values() if pipeline.status is not PipelineStatus.STOPPED]
        for pipeline in live:
            pipeline.status = PipelineStatus.STOPPED
            pipeline.append_log("Stopping encoder.")
        await asyncio.gather(
            *(self._terminate(pipeline.process) for pipeline in live if pipeline.process is not None)
        )

        monitors = list(self._monitors.values())
        self._monitors.clear()
        for task in monitors:
            task.cancel()
        await asyncio.gather(*monitors, return_exceptions=True)
        logger.info("Stopped %d pipeline(s)", len(live))

    async def _terminate(self, process: EncoderProcess) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Encoder pid %s ignored SIGTERM; killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def describe(self) -> Dict[str, Dict[str, object]]:
        return {
            tier_id: {
                "status": pipeline.status.value,
                "pid": pipeline.pid,
                "attempt": pipeline.attempt,
                "started_at": pipeline.started_at.isoformat() if pipeline.started_at else None,
                "progress": dict(pipeline.progress),
                "log_tail": pipeline.log[-10:],
            }
            for tier_id, pipeline in self.pipelines.items()
        }
