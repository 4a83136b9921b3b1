"""Compose the supervisor, metrics and broadcast hub into one service."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dateutil.tz import tzutc

from .config import ServerConfig
from .errors import PipelineFailure
from .hub import BroadcastHub
from .latency import ManifestLatencyEstimator
from .metrics import MetricsAggregator, MetricsSnapshot, epoch_ms
from .models import Pipeline, PipelineEvent, PipelineEventKind
from .notifier import Notifier
from .process import Spawner, spawn_subprocess
from .supervisor import PipelineSupervisor
from .tiers import TIER_CATALOG, get_tier, tier_ids

logger = logging.getLogger(__name__)


class StreamOrchestrator:
    """Entry point for request handlers: tiers, snapshots and boundaries."""

    def __init__(
        self,
        config: ServerConfig,
        spawner: Spawner = spawn_subprocess,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.clock = clock
        self.estimator = ManifestLatencyEstimator(config.hls_root, clock=clock)
        self.metrics = MetricsAggregator(
            TIER_CATALOG.values(),
            self.estimator,
            default_boundary_ms=config.default_latency_boundary_ms,
            clock=clock,
        )
        self.hub = BroadcastHub(
            snapshot_provider=self.get_snapshot,
            on_viewers_changed=self.metrics.set_viewer_count,
            clock=clock,
        )
        self.notifier = Notifier(config.notifier, source=config.project_name)
        self.supervisor = PipelineSupervisor(
            config,
            on_segment=self.on_segment,
            spawner=spawner,
            on_failure=self._pipeline_failed,
            on_start=self._pipeline_started,
        )
        self.scheduler = AsyncIOScheduler(timezone=tzutc())
        self.started = False

    async def start(self) -> None:
        """Warm every catalog tier, then begin the periodic metrics broadcast."""
        if self.started:
            return
        self.started = True
        for tier_id in tier_ids():
            await self.request_tier(tier_id)
        self.scheduler.add_job(
            self.publish_metrics,
            trigger="interval",
            seconds=self.config.metrics_interval,
            id="metrics-tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Orchestrator started with tiers %s", ", ".join(tier_ids()))

    async def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.supervisor.stop_all()
        self.started = False
        logger.info("Orchestrator stopped.")

    async def request_tier(self, tier_id: str) -> str:
        tier = get_tier(tier_id)
        return await self.supervisor.ensure_running(tier)

    def get_snapshot(self) -> MetricsSnapshot:
        return self.metrics.current_snapshot(self.supervisor.active_tiers())

    def get_performance(self) -> Dict[str, Any]:
        performance = self.metrics.performance(self.supervisor.active_tiers())
        performance["pipelines"] = self.supervisor.describe()
        performance["observers"] = self.hub.describe()
        return performance

    def set_latency_boundary(self, value: float, tier_id: Optional[str] = None) -> Dict[str, Any]:
        applied = self.metrics.set_boundary(value, tier_id)
        scope = tier_id or "all"
        logger.info("Latency boundary set to %sms for %s", value, scope)
        return {"boundaryMs": float(value), "scope": scope, "tiers": applied}

    async def publish_metrics(self) -> MetricsSnapshot:
        snapshot = self.metrics.tick(self.supervisor.active_tiers())
        await self.hub.broadcast(snapshot.to_message())
        return snapshot

    async def on_segment(self, tier_id: str, filename: str) -> None:
        stats = self.metrics.record_segment(tier_id)
        logger.debug("New segment %s for %s (%d total)", filename, tier_id, stats.segment_count)
        estimate = self.metrics.refresh_latency(tier_id)
        if estimate is None:
            return
        await self.hub.broadcast(
            {
                "type": "latency",
                "latency": estimate.latency_ms,
                "boundary": stats.latency_boundary_ms,
                "quality": tier_id,
                "timestamp": epoch_ms(self.clock()),
            }
        )

    def _pipeline_failed(self, failure: PipelineFailure) -> None:
        pipeline = self.supervisor.pipelines.get(failure.tier_id)
        delay = self.supervisor.restart_delay(failure.tier_id)
        self.notifier.notify_background(
            PipelineEvent(
                tier_id=failure.tier_id,
                kind=PipelineEventKind.FAILED,
                detail=f"{failure.reason}. Restarting in {delay:.0f}s.",
                attempt=pipeline.attempt if pipeline else 0,
                pid=pipeline.pid if pipeline else None,
            )
        )

    def _pipeline_started(self, pipeline: Pipeline) -> None:
        if pipeline.attempt == 0:
            return
        self.notifier.notify_background(
            PipelineEvent(
                tier_id=pipeline.tier.id,
                kind=PipelineEventKind.RECOVERED,
                detail=f"Encoder restarted after {pipeline.attempt} attempt(s).",
                attempt=pipeline.attempt,
                pid=pipeline.pid,
            )
        )
