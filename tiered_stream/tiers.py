"""Static catalog of the quality tiers the server encodes."""

from __future__ import annotations

from typing import Dict, List

from .errors import InvalidTier
from .models import Tier

SEGMENT_DURATION = 2
MANIFEST_WINDOW = 5

TIER_CATALOG: Dict[str, Tier] = {
    tier.id: tier
    for tier in (
        Tier(
            id="social",
            label="Social Media (720p)",
            description="Low latency, mobile-friendly",
            width=1280,
            height=720,
            video_bitrate="2500k",
            max_rate="2675k",
            buffer_size="3750k",
            audio_bitrate="128k",
            frame_rate=30,
            preset="veryfast",
            profile="main",
            level="3.1",
            segment_duration=SEGMENT_DURATION,
            window_size=MANIFEST_WINDOW,
        ),
        Tier(
            id="broadcasting",
            label="Broadcasting (1080p)",
            description="Standard TV quality",
            width=1920,
            height=1080,
            video_bitrate="5000k",
            max_rate="5350k",
            buffer_size="7500k",
            audio_bitrate="160k",
            frame_rate=30,
            preset="veryfast",
            profile="high",
            level="4.1",
            segment_duration=SEGMENT_DURATION,
            window_size=MANIFEST_WINDOW,
        ),
        Tier(
            id="cinema",
            label="Cinema (4K)",
            description="Ultra high quality",
            width=3840,
            height=2160,
            video_bitrate="15000k",
            max_rate="16050k",
            buffer_size="22500k",
            audio_bitrate="192k",
            frame_rate=30,
            preset="faster",
            profile="high",
            level="5.1",
            segment_duration=SEGMENT_DURATION,
            window_size=MANIFEST_WINDOW,
        ),
    )
}


def get_tier(tier_id: str) -> Tier:
    try:
        return TIER_CATALOG[tier_id]
    except KeyError:
        raise InvalidTier(tier_id) from None


def tier_ids() -> List[str]:
    return list(TIER_CATALOG)
