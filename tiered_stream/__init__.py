"""Live multi-tier HLS stream orchestrator."""

__version__ = "0.1.0"
