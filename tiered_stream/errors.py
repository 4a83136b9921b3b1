"""Error taxonomy for the tiered stream server."""

from __future__ import annotations


class StreamError(Exception):
    """Base class for tiered stream errors."""


class InvalidTier(StreamError, ValueError):
    """Raised when a tier identifier is not in the catalog."""

    def __init__(self, tier_id: str):
        super().__init__(f"Unknown tier: {tier_id}")
        self.tier_id = tier_id


class InvalidBoundary(StreamError, ValueError):
    """Raised when a latency boundary is not a positive number."""

    def __init__(self, value: object):
        super().__init__(f"Latency boundary must be positive, got {value!r}")
        self.value = value


class PipelineFailure(StreamError):
    """An encoder subprocess crashed or could not be started."""

    def __init__(self, tier_id: str, reason: str):
        super().__init__(f"Pipeline {tier_id} failed: {reason}")
        self.tier_id = tier_id
        self.reason = reason


class ManifestUnavailable(StreamError):
    """The manifest or its newest segment cannot be read yet."""


class ObserverSendFailure(StreamError):
    """Delivering a message to one observer failed."""
