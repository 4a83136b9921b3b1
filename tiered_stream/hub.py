"""WebSocket fan-out of metrics snapshots and latency events."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .errors import ObserverSendFailure
from .metrics import MetricsSnapshot, epoch_ms
from .models import ObserverConnection

logger = logging.getLogger(__name__)


class BroadcastHub:
    """Tracks connected observers and delivers every broadcast to each of them.

    A send that fails drops that observer only. The viewer count is global:
    every connection observes every tier.
    """

    def __init__(
        self,
        snapshot_provider: Optional[Callable[[], MetricsSnapshot]] = None,
        on_viewers_changed: Optional[Callable[[int], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.snapshot_provider = snapshot_provider
        self.on_viewers_changed = on_viewers_changed
        self.clock = clock
        self.connections: Dict[str, ObserverConnection] = {}

    @property
    def viewer_count(self) -> int:
        return len(self.connections)

    def _viewers_changed(self) -> None:
        if self.on_viewers_changed:
            self.on_viewers_changed(self.viewer_count)

    async def connect(self, websocket: WebSocket, role: str = "unknown") -> ObserverConnection:
        await websocket.accept()
        connection = ObserverConnection(websocket=websocket, role=role)
        self.connections[connection.id] = connection
        self._viewers_changed()
        logger.info("Observer %s (%s) connected; %d viewer(s)", connection.id, role, self.viewer_count)

        if self.snapshot_provider is not None:
            try:
                await self.send(connection, self.snapshot_provider().to_message())
            except ObserverSendFailure as exc:
                logger.info("Initial snapshot to %s failed: %s", connection.id, exc)
                self.disconnect(connection)
            except Exception:  # noqa: BLE001
                logger.exception("Could not build initial snapshot for %s", connection.id)
        return connection

    def disconnect(self, connection: ObserverConnection) -> bool:
        if self.connections.pop(connection.id, None) is None:
            return False
        self._viewers_changed()
        logger.info("Observer %s disconnected; %d viewer(s)", connection.id, self.viewer_count)
        return True

    async def send(self, connection: ObserverConnection, message: Dict[str, Any]) -> None:
        await self._send_text(connection, json.dumps(message))

    async def _send_text(self, connection: ObserverConnection, payload: str) -> None:
        try:
            await connection.websocket.send_text(payload)
        except Exception as exc:  # noqa: BLE001
            raise ObserverSendFailure(f"send to {connection.id} failed: {exc!r}") from exc
        connection.messages_sent += 1

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Send ``message`` to every observer; returns how many received it."""
        targets: List[ObserverConnection] = list(self.connections.values())
        if not targets:
            return 0
        payload = json.dumps(message)
        results = await asyncio.gather(
            *(self._send_text(connection, payload) for connection in targets),
            return_exceptions=True,
        )
        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.info("Dropping observer %s: %s", connection.id, result)
                self.disconnect(connection)
            else:
                delivered += 1
        return delivered

    async def handle_message(self, connection: ObserverConnection, text: str) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            logger.debug("Ignoring non-JSON message from %s", connection.id)
            return
        if not isinstance(data, dict):
            return

        if data.get("type") == "ping":
            client = data.get("client")
            if client and connection.role == "unknown":
                connection.role = str(client)
            await self.send(connection, {"type": "pong", "timestamp": epoch_ms(self.clock()), "client": client})

    async def serve(self, websocket: WebSocket, role: str = "unknown") -> None:
        connection = await self.connect(websocket, role)
        try:
            while connection.id in self.connections:
                text = await websocket.receive_text()
                await self.handle_message(connection, text)
        except (WebSocketDisconnect, ObserverSendFailure):
            pass
        finally:
            self.disconnect(connection)

    def describe(self) -> List[Dict[str, Any]]:
        return [connection.describe() for connection in self.connections.values()]
