"""Estimate viewer latency from a tier's published HLS manifest."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from .errors import ManifestUnavailable
from .models import LatencyEstimate, Manifest, ManifestSegment, Tier

logger = logging.getLogger(__name__)

MANIFEST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"
DURATION_TAG = "#EXTINF:"


def parse_manifest(text: str) -> Manifest:
    """Parse the media segments of an HLS media playlist, in playback order.

    A ``#EXTINF`` line pairs with the next URI line. Other tags, comments and
    blank lines are skipped. Raises ``ManifestUnavailable`` on anything that
    looks like a half-written file.
    """
    segments: List[ManifestSegment] = []
    pending: Optional[float] = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith(DURATION_TAG):
            if pending is not None:
                raise ManifestUnavailable("duration tag without a segment uri")
            value = line[len(DURATION_TAG):].split(",", 1)[0].strip()
            try:
                pending = float(value)
            except ValueError:
                raise ManifestUnavailable(f"bad segment duration {value!r}") from None
            if pending < 0:
                raise ManifestUnavailable(f"negative segment duration {value!r}")
            continue
        if line.startswith("#"):
            continue
        if pending is None:
            continue
        segments.append(ManifestSegment(duration=pending, filename=line))
        pending = None

    return Manifest(segments=segments)


class ManifestLatencyEstimator:
    """Computes ``now - newest segment mtime + manifest window`` per tier."""

    def __init__(self, hls_root: Path | str, clock: Callable[[], float] = time.time):
        self.hls_root = Path(hls_root)
        self.clock = clock

    def output_dir(self, tier: Tier) -> Path:
        return self.hls_root / tier.id

    def manifest_path(self, tier: Tier) -> Path:
        return self.output_dir(tier) / MANIFEST_NAME

    def estimate(self, tier: Tier) -> Optional[LatencyEstimate]:
        try:
            return self._estimate(tier)
        except ManifestUnavailable as exc:
            logger.debug("No latency estimate for %s: %s", tier.id, exc)
            return None

    def _estimate(self, tier: Tier) -> LatencyEstimate:
        path = self.manifest_path(tier)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ManifestUnavailable(f"{path} does not exist yet") from None
        except (OSError, UnicodeDecodeError) as exc:
            raise ManifestUnavailable(f"cannot read {path}: {exc}") from exc
        if not text.strip():
            raise ManifestUnavailable(f"{path} is empty")

        manifest = parse_manifest(text)
        last = manifest.last_segment
        if last is None:
            raise ManifestUnavailable(f"{path} lists no segments")

        segment_path = path.parent / last.filename
        try:
            mtime = segment_path.stat().st_mtime
        except OSError:
            raise ManifestUnavailable(f"segment {segment_path} not written yet") from None

        file_age_ms = max(0.0, (self.clock() - mtime) * 1000.0)
        window_ms = manifest.total_duration * 1000.0
        return LatencyEstimate(
            latency_ms=file_age_ms + window_ms,
            file_age_ms=file_age_ms,
            window_ms=window_ms,
            segment_count=len(manifest.segments),
        )
