"""FastAPI application exposing tier requests, metrics and the observer channel."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.staticfiles import StaticFiles
from pydantic import AliasChoices, BaseModel, Field

from .config import ServerConfig, load_config
from .errors import InvalidBoundary, InvalidTier
from .orchestrator import StreamOrchestrator
from .tiers import TIER_CATALOG

logger = logging.getLogger(__name__)


class BoundaryPayload(BaseModel):
    boundary_ms: float = Field(
        ...,
        validation_alias=AliasChoices("boundaryMs", "boundary"),
        description="Latency alert threshold in milliseconds.",
    )
    tier_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("tierId", "quality"),
        description="Tier to update; every tier when omitted.",
    )


def create_app(config: ServerConfig | None = None, orchestrator: StreamOrchestrator | None = None) -> FastAPI:
    config = config or load_config()
    orchestrator = orchestrator or StreamOrchestrator(config)
    app = FastAPI(title=config.project_name)
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/tiers")
    async def list_tiers() -> Dict[str, Any]:
        return {
            "tiers": [
                {
                    "tierId": tier.id,
                    "label": tier.label,
                    "description": tier.description,
                    "resolution": tier.resolution,
                    "bitrate": tier.video_bitrate,
                    "frameRate": tier.frame_rate,
                    "segmentDuration": tier.segment_duration,
                }
                for tier in TIER_CATALOG.values()
            ]
        }

    @app.get("/api/stream/{tier_id}")
    async def request_tier(tier_id: str) -> Dict[str, str]:
        try:
            manifest_url = await orchestrator.request_tier(tier_id)
        except InvalidTier as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"manifestUrl": manifest_url, "tierId": tier_id}

    @app.get("/api/metrics")
    async def metrics() -> Dict[str, Any]:
        snapshot = orchestrator.get_snapshot()
        return {
            "perStream": snapshot.per_stream,
            "viewerCount": snapshot.viewer_count,
            "timestamp": snapshot.timestamp,
        }

    @app.get("/api/performance")
    async def performance() -> Dict[str, Any]:
        return orchestrator.get_performance()

    @app.post("/api/latency-boundary")
    async def latency_boundary(payload: BoundaryPayload) -> Dict[str, Any]:
        try:
            return orchestrator.set_latency_boundary(payload.boundary_ms, payload.tier_id)
        except InvalidBoundary as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except InvalidTier as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.websocket("/ws")
    async def observer_channel(websocket: WebSocket, role: str = "unknown") -> None:
        await orchestrator.hub.serve(websocket, role=role)

    app.mount(config.hls_public_path, StaticFiles(directory=config.hls_root, check_dir=False), name="hls")

    @app.on_event("startup")
    async def startup_event() -> None:
        await orchestrator.start()
        logger.info("%s started.", config.project_name)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await orchestrator.shutdown()

    return app
