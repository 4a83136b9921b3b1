"""Domain models for tiered live streaming."""

from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from dateutil.tz import tzutc


def utcnow() -> dt.datetime:
    return dt.datetime.now(tzutc())


@dataclass(frozen=True)
class Tier:
    id: str
    label: str
    description: str
    width: int
    height: int
    video_bitrate: str
    max_rate: str
    buffer_size: str
    audio_bitrate: str
    frame_rate: int
    preset: str
    profile: str
    level: str
    segment_duration: int
    window_size: int

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def keyframe_interval(self) -> int:
        return self.frame_rate * self.segment_duration


class PipelineStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class Pipeline:
    tier: Tier
    output_dir: Path
    status: PipelineStatus = PipelineStatus.STARTING
    started_at: Optional[dt.datetime] = None
    process: Any = field(default=None, repr=False)
    attempt: int = 0
    progress: Dict[str, str] = field(default_factory=dict)
    log: List[str] = field(default_factory=list)

    @property
    def is_live(self) -> bool:
        return self.status in {PipelineStatus.STARTING, PipelineStatus.RUNNING}

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def append_log(self, message: str) -> None:
        timestamp = utcnow().isoformat()
        self.log.append(f"[{timestamp}] {message}")
        del self.log[:-50]


@dataclass(frozen=True)
class ManifestSegment:
    duration: float
    filename: str


@dataclass(frozen=True)
class Manifest:
    segments: List[ManifestSegment] = field(default_factory=list)

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)

    @property
    def last_segment(self) -> Optional[ManifestSegment]:
        return self.segments[-1] if self.segments else None


@dataclass(frozen=True)
class LatencyEstimate:
    """How far behind the live edge a viewer joining now would sit.

    ``file_age_ms`` is the time since the newest segment was written and
    ``window_ms`` the playable duration of the manifest. This is an
    approximation, not a measured glass-to-glass latency.
    """

    latency_ms: float
    file_age_ms: float
    window_ms: float
    segment_count: int


@dataclass
class PerTierStats:
    tier_id: str
    latency_boundary_ms: float
    segment_count: int = 0
    latency_ms: Optional[float] = None
    last_segment_at: Optional[float] = None
    viewer_count: int = 0
    segments_per_second: float = 0.0
    previous_segment_count: int = 0
    previous_tick_at: Optional[float] = None

    @property
    def over_boundary(self) -> bool:
        return self.latency_ms is not None and self.latency_ms > self.latency_boundary_ms


@dataclass
class ObserverConnection:
    websocket: Any = field(repr=False)
    role: str = "unknown"
    id: str = field(default_factory=lambda: f"obs_{uuid4().hex[:12]}")
    connected_at: dt.datetime = field(default_factory=utcnow)
    messages_sent: int = 0

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "connected_at": self.connected_at.isoformat(),
            "messages_sent": self.messages_sent,
        }


class PipelineEventKind(str, enum.Enum):
    FAILED = "failed"
    RECOVERED = "recovered"


@dataclass(frozen=True)
class PipelineEvent:
    """A pipeline health change worth telling an operator about."""

    tier_id: str
    kind: PipelineEventKind
    detail: str
    attempt: int = 0
    pid: Optional[int] = None
    occurred_at: dt.datetime = field(default_factory=utcnow)

    @property
    def subject(self) -> str:
        return f"Pipeline {self.tier_id} {self.kind.value}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "tierId": self.tier_id,
            "subject": self.subject,
            "detail": self.detail,
            "attempt": self.attempt,
            "pid": self.pid,
            "occurredAt": self.occurred_at.isoformat(),
        }
