"""
Unit Tests for the Metrics Aggregator

Throughput, latency fallback, boundaries and resource sampling.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import psutil
import pytest

from conftest import set_mtime, write_manifest
from tiered_stream.errors import InvalidBoundary, InvalidTier
from tiered_stream.latency import ManifestLatencyEstimator
from tiered_stream.metrics import MetricsAggregator
from tiered_stream.tiers import TIER_CATALOG


class Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def process():
    process = MagicMock()
    process.memory_info.return_value = SimpleNamespace(rss=50_000_000, vms=400_000_000, data=30_000_000)
    process.cpu_times.return_value = SimpleNamespace(user=1.5, system=0.25)
    process.cpu_percent.return_value = 12.5
    return process


@pytest.fixture
def aggregator(tmp_path, clock, process):
    estimator = ManifestLatencyEstimator(tmp_path, clock=clock)
    return MetricsAggregator(TIER_CATALOG.values(), estimator, default_boundary_ms=3000, clock=clock, process=process)


# =============================================================================
# Throughput
# =============================================================================


class TestThroughput:
    """Tests for segments-per-second derivation."""

    def test_four_segments_in_eight_seconds(self, aggregator, clock):
        aggregator.tick(["social"], now=clock.now)
        for _ in range(4):
            aggregator.record_segment("social")

        snapshot = aggregator.tick(["social"], now=clock.now + 8)

        assert snapshot.per_stream["social"]["segmentsPerSecond"] == 0.5
        assert snapshot.per_stream["social"]["segmentCount"] == 4

    def test_quiet_window_is_zero(self, aggregator, clock):
        aggregator.record_segment("social")
        aggregator.tick(["social"], now=clock.now + 2)

        snapshot = aggregator.tick(["social"], now=clock.now + 4)

        assert snapshot.per_stream["social"]["segmentsPerSecond"] == 0.0

    def test_zero_elapsed_does_not_divide(self, aggregator, clock):
        aggregator.tick(["social"], now=clock.now + 2)
        aggregator.record_segment("social")

        snapshot = aggregator.tick(["social"], now=clock.now + 2)

        assert snapshot.per_stream["social"]["segmentsPerSecond"] == 0.0

    def test_rapid_segment_events_never_go_negative(self, aggregator, clock):
        aggregator.record_segment("cinema")
        aggregator.record_segment("cinema")
        first = aggregator.tick(["cinema"], now=clock.now + 1)
        second = aggregator.tick(["cinema"], now=clock.now + 1.5)

        assert first.per_stream["cinema"]["segmentCount"] == 2
        assert second.per_stream["cinema"]["segmentCount"] == 2
        assert first.per_stream["cinema"]["segmentsPerSecond"] == 2.0
        assert second.per_stream["cinema"]["segmentsPerSecond"] == 0.0

    def test_record_segment_sets_timestamp(self, aggregator, clock):
        aggregator.record_segment("social", at=1234.5)

        snapshot = aggregator.tick()

        assert snapshot.per_stream["social"]["lastSegmentTimestamp"] == 1_234_500


# =============================================================================
# Latency
# =============================================================================


class TestLatencyRefresh:
    """Tests for periodic latency refresh."""

    def test_refresh_for_active_tier(self, aggregator, clock, tmp_path):
        segments = write_manifest(tmp_path / "social", [2, 2, 2])
        set_mtime(segments[-1], clock.now - 0.5)

        snapshot = aggregator.tick(["social"])

        assert snapshot.per_stream["social"]["latencyMs"] == pytest.approx(6500, abs=1)
        assert snapshot.per_stream["broadcasting"]["latencyMs"] is None

    def test_never_regresses_to_none(self, aggregator, clock, tmp_path):
        segments = write_manifest(tmp_path / "social", [2, 2])
        set_mtime(segments[-1], clock.now - 1)
        aggregator.tick(["social"])

        (tmp_path / "social" / "playlist.m3u8").unlink()
        snapshot = aggregator.tick(["social"])

        assert snapshot.per_stream["social"]["latencyMs"] == pytest.approx(5000, abs=1)

    def test_over_boundary_flag(self, aggregator, clock, tmp_path):
        segments = write_manifest(tmp_path / "social", [2, 2])
        set_mtime(segments[-1], clock.now)
        aggregator.set_boundary(3500, "social")

        snapshot = aggregator.tick(["social"])

        assert snapshot.per_stream["social"]["overBoundary"] is True
        assert snapshot.per_stream["cinema"]["overBoundary"] is False

    def test_estimator_crash_is_contained(self, aggregator):
        aggregator.estimator = MagicMock()
        aggregator.estimator.estimate.side_effect = RuntimeError("disk gone")

        snapshot = aggregator.tick(["social"])

        assert snapshot.per_stream["social"]["latencyMs"] is None

    def test_inline_snapshot_before_first_tick(self, aggregator, clock, tmp_path):
        segments = write_manifest(tmp_path / "cinema", [2])
        set_mtime(segments[-1], clock.now)

        snapshot = aggregator.current_snapshot(["cinema"])

        assert snapshot.per_stream["cinema"]["latencyMs"] == pytest.approx(2000, abs=1)
        assert aggregator.latest is None


# =============================================================================
# Boundaries and viewers
# =============================================================================


class TestBoundaries:
    """Tests for latency boundary updates."""

    def test_scoped_update_leaves_other_tiers(self, aggregator):
        assert aggregator.set_boundary(1500, "social") == ["social"]

        snapshot = aggregator.current_snapshot()

        assert snapshot.per_stream["social"]["latencyBoundaryMs"] == 1500
        assert snapshot.per_stream["broadcasting"]["latencyBoundaryMs"] == 3000
        assert snapshot.per_stream["cinema"]["latencyBoundaryMs"] == 3000

    def test_unscoped_update_changes_all(self, aggregator):
        applied = aggregator.set_boundary(4200)

        snapshot = aggregator.current_snapshot()

        assert sorted(applied) == sorted(TIER_CATALOG)
        assert {record["latencyBoundaryMs"] for record in snapshot.per_stream.values()} == {4200}

    @pytest.mark.parametrize("value", [0, -1, float("nan"), float("inf"), float("-inf"), True, "100"])
    def test_invalid_boundary(self, aggregator, value):
        with pytest.raises(InvalidBoundary):
            aggregator.set_boundary(value)
        assert aggregator.boundary("social") == 3000

    def test_unknown_tier(self, aggregator):
        with pytest.raises(InvalidTier):
            aggregator.set_boundary(1000, "imax")

    def test_viewer_count_replicated(self, aggregator):
        aggregator.set_viewer_count(3)

        snapshot = aggregator.current_snapshot()

        assert snapshot.viewer_count == 3
        assert {record["viewerCount"] for record in snapshot.per_stream.values()} == {3}


# =============================================================================
# Resources
# =============================================================================


class TestResources:
    """Tests for process resource sampling."""

    def test_memory_and_cpu_in_every_tier(self, aggregator):
        snapshot = aggregator.tick()

        for record in snapshot.per_stream.values():
            assert record["memory"] == {"rss": 50_000_000, "vms": 400_000_000, "heapUsed": 30_000_000}
            assert record["cpu"]["user"] == 1.5
            assert record["cpu"]["percent"] == 12.5

    def test_cpu_percent_sampled_only_on_tick(self, aggregator, process):
        aggregator.tick()
        process.cpu_percent.return_value = 99.0

        snapshot = aggregator.current_snapshot(["social"])
        performance = aggregator.performance(["social"])

        assert process.cpu_percent.call_count == 1
        assert snapshot.per_stream["social"]["cpu"]["percent"] == 12.5
        assert performance["cpu"]["percent"] == 12.5
        assert aggregator.tick().per_stream["social"]["cpu"]["percent"] == 99.0

    def test_sampling_failure_reports_zeros(self, aggregator, process):
        process.memory_info.side_effect = psutil.AccessDenied()

        snapshot = aggregator.tick()

        assert snapshot.per_stream["social"]["memory"] == {"rss": 0, "vms": 0, "heapUsed": 0}

    def test_uptime(self, aggregator, clock):
        clock.now += 90

        snapshot = aggregator.tick()

        assert snapshot.per_stream["social"]["uptimeSeconds"] == 90

    def test_performance_summary(self, aggregator):
        aggregator.set_viewer_count(2)

        performance = aggregator.performance(["social", "cinema"])

        assert performance["streams"] == 2
        assert performance["viewerCount"] == 2
        assert performance["memory"]["rss"] == 50_000_000

    def test_snapshot_message(self, aggregator, clock):
        message = aggregator.tick(now=clock.now).to_message()

        assert message["type"] == "performance"
        assert set(message["perStream"]) == set(TIER_CATALOG)
        assert message["timestamp"] == 1_000_000
