"""Per-tier operational metrics and the periodic snapshot."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import psutil

from .errors import InvalidBoundary, InvalidTier
from .latency import ManifestLatencyEstimator
from .models import LatencyEstimate, PerTierStats, Tier

logger = logging.getLogger(__name__)


def epoch_ms(seconds: Optional[float]) -> Optional[int]:
    return None if seconds is None else int(seconds * 1000)


@dataclass(frozen=True)
class MetricsSnapshot:
    per_stream: Dict[str, Dict[str, Any]]
    timestamp: int
    viewer_count: int = 0
    resources: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"type": "performance", "perStream": self.per_stream, "timestamp": self.timestamp}


class MetricsAggregator:
    """Owns ``PerTierStats`` and turns them into snapshots.

    Segment events and viewer changes mutate the stats as they happen; ``tick``
    refreshes latency, derives throughput since the previous tick and freezes
    everything into a ``MetricsSnapshot``. Reading metrics never raises.
    """

    def __init__(
        self,
        tiers: Iterable[Tier],
        estimator: ManifestLatencyEstimator,
        default_boundary_ms: float = 3000.0,
        clock: Callable[[], float] = time.time,
        process: Optional[psutil.Process] = None,
    ):
        self.tiers: Dict[str, Tier] = {tier.id: tier for tier in tiers}
        self.estimator = estimator
        self.clock = clock
        self.started_at = clock()
        self.viewer_count = 0
        self.latest: Optional[MetricsSnapshot] = None
        self._process = process
        self._cpu_percent = 0.0
        self.stats: Dict[str, PerTierStats] = {
            tier_id: PerTierStats(
                tier_id=tier_id,
                latency_boundary_ms=default_boundary_ms,
                previous_tick_at=self.started_at,
            )
            for tier_id in self.tiers
        }

    def _stats(self, tier_id: str) -> PerTierStats:
        try:
            return self.stats[tier_id]
        except KeyError:
            raise InvalidTier(tier_id) from None

    def record_segment(self, tier_id: str, at: Optional[float] = None) -> PerTierStats:
        stats = self._stats(tier_id)
        stats.segment_count += 1
        stats.last_segment_at = self.clock() if at is None else at
        return stats

    def refresh_latency(self, tier_id: str) -> Optional[LatencyEstimate]:
        """Re-read the manifest and store a fresh estimate.

        Returns ``None`` when nothing readable was found, in which case the
        previously stored latency is kept.
        """
        stats = self._stats(tier_id)
        try:
            estimate = self.estimator.estimate(self.tiers[tier_id])
        except Exception:  # noqa: BLE001
            logger.exception("Latency estimate failed for %s", tier_id)
            estimate = None
        if estimate is not None:
            stats.latency_ms = estimate.latency_ms
        return estimate

    def set_boundary(self, value: float, tier_id: Optional[str] = None) -> List[str]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidBoundary(value)
        if not math.isfinite(value) or value <= 0:
            raise InvalidBoundary(value)
        targets = [self._stats(tier_id)] if tier_id is not None else list(self.stats.values())
        for stats in targets:
            stats.latency_boundary_ms = float(value)
        return [stats.tier_id for stats in targets]

    def boundary(self, tier_id: str) -> float:
        return self._stats(tier_id).latency_boundary_ms

    def set_viewer_count(self, count: int) -> None:
        self.viewer_count = max(0, count)
        for stats in self.stats.values():
            stats.viewer_count = self.viewer_count

    def sample_resources(self, refresh_cpu_percent: bool = False) -> Dict[str, Any]:
        """Read process memory and CPU time.

        ``cpu_percent`` is measured against the previous call, so only ``tick``
        passes ``refresh_cpu_percent``; other reads reuse the tick's figure and
        the percentage always covers one metrics interval.
        """
        memory: Dict[str, Optional[int]] = {"rss": 0, "vms": 0, "heapUsed": 0}
        cpu: Dict[str, Optional[float]] = {"user": 0.0, "system": 0.0, "percent": self._cpu_percent}
        try:
            if self._process is None:
                self._process = psutil.Process()
            info = self._process.memory_info()
            memory = {"rss": info.rss, "vms": info.vms, "heapUsed": getattr(info, "data", info.rss)}
            if refresh_cpu_percent:
                self._cpu_percent = self._process.cpu_percent(interval=None)
            times = self._process.cpu_times()
            cpu = {"user": times.user, "system": times.system, "percent": self._cpu_percent}
        except (psutil.Error, OSError) as exc:
            logger.warning("Could not sample process resources: %s", exc)
        return {"memory": memory, "cpu": cpu}

    def tick(self, active_tiers: Iterable[str] = (), now: Optional[float] = None) -> MetricsSnapshot:
        now = self.clock() if now is None else now
        active = set(active_tiers)
        for tier_id, stats in self.stats.items():
            if tier_id in active:
                self.refresh_latency(tier_id)
            elapsed = now - stats.previous_tick_at if stats.previous_tick_at is not None else 0.0
            produced = stats.segment_count - stats.previous_segment_count
            stats.segments_per_second = max(0.0, produced / elapsed) if elapsed > 0 else 0.0
            stats.previous_segment_count = stats.segment_count
            stats.previous_tick_at = now
        self.latest = self._build(active, now, refresh_cpu_percent=True)
        return self.latest

    def current_snapshot(self, active_tiers: Iterable[str] = ()) -> MetricsSnapshot:
        """Current state without advancing throughput baselines.

        Latency is read inline only while no tick has run yet; afterwards the
        values kept by ticks and segment events are used.
        """
        active = set(active_tiers)
        if self.latest is None:
            for tier_id in active:
                self.refresh_latency(tier_id)
        return self._build(active, self.clock())

    def _build(self, active: Iterable[str], now: float, refresh_cpu_percent: bool = False) -> MetricsSnapshot:
        resources = self.sample_resources(refresh_cpu_percent)
        uptime = max(0.0, now - self.started_at)
        per_stream = {
            tier_id: {
                "tierId": tier_id,
                "label": self.tiers[tier_id].label,
                "active": tier_id in active,
                "latencyMs": stats.latency_ms,
                "latencyBoundaryMs": stats.latency_boundary_ms,
                "overBoundary": stats.over_boundary,
                "segmentCount": stats.segment_count,
                "segmentsPerSecond": round(stats.segments_per_second, 4),
                "viewerCount": stats.viewer_count,
                "lastSegmentTimestamp": epoch_ms(stats.last_segment_at),
                "memory": dict(resources["memory"]),
                "cpu": dict(resources["cpu"]),
                "uptimeSeconds": round(uptime, 3),
            }
            for tier_id, stats in self.stats.items()
        }
        return MetricsSnapshot(
            per_stream=per_stream,
            timestamp=epoch_ms(now),
            viewer_count=self.viewer_count,
            resources=resources,
        )

    def performance(self, active_tiers: Iterable[str] = ()) -> Dict[str, Any]:
        resources = self.sample_resources()
        now = self.clock()
        return {
            "memory": resources["memory"],
            "cpu": resources["cpu"],
            "uptimeSeconds": round(max(0.0, now - self.started_at), 3),
            "streams": len(list(active_tiers)),
            "viewerCount": self.viewer_count,
            "timestamp": epoch_ms(now),
        }
