"""Configuration helpers for the tiered stream server."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class NotifierConfig:
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: Optional[str] = None
    email_to: Optional[str] = None
    notify_recoveries: bool = True
    timeout: float = 10.0


@dataclass
class ServerConfig:
    project_name: str = "Tiered Live Stream"
    video_source: str = "video/source.mp4"
    hls_root: str = "hls"
    hls_public_path: str = "/hls"
    ffmpeg_binary: str = "ffmpeg"
    metrics_interval: float = 2.0
    restart_delay: float = 5.0
    restart_backoff_max: Optional[float] = None
    watch_interval: float = 0.5
    shutdown_timeout: float = 5.0
    default_latency_boundary_ms: float = 3000.0
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    notifier: NotifierConfig = field(default_factory=NotifierConfig)


def _optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value in (None, ""):
        return None
    return float(value)


def _flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_notifier_config() -> NotifierConfig:
    return NotifierConfig(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("NOTIFY_EMAIL_FROM"),
        email_to=os.getenv("NOTIFY_EMAIL_TO"),
        notify_recoveries=_flag("NOTIFY_RECOVERIES", True),
        timeout=float(os.getenv("NOTIFY_TIMEOUT", "10")),
    )


def load_config() -> ServerConfig:
    """Load configuration from environment variables."""
    return ServerConfig(
        project_name=os.getenv("PROJECT_NAME", "Tiered Live Stream"),
        video_source=os.getenv("VIDEO_SOURCE", "video/source.mp4"),
        hls_root=os.getenv("HLS_ROOT", "hls"),
        hls_public_path=os.getenv("HLS_PUBLIC_PATH", "/hls").rstrip("/") or "/hls",
        ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
        metrics_interval=float(os.getenv("METRICS_INTERVAL", "2.0")),
        restart_delay=float(os.getenv("RESTART_DELAY", "5.0")),
        restart_backoff_max=_optional_float("RESTART_BACKOFF_MAX"),
        watch_interval=float(os.getenv("WATCH_INTERVAL", "0.5")),
        shutdown_timeout=float(os.getenv("SHUTDOWN_TIMEOUT", "5.0")),
        default_latency_boundary_ms=float(os.getenv("DEFAULT_LATENCY_BOUNDARY_MS", "3000")),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        notifier=_load_notifier_config(),
    )
