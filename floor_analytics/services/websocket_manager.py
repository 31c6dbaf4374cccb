"""
Floor Analytics - WebSocket Broadcast Manager

This module tracks connected dashboard clients and pushes engine events to
them as ``{"type", "data", "timestamp"}`` JSON messages. Delivery is best
effort: a client that fails to receive a message is dropped.
"""

import json
from datetime import datetime
from itertools import count
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
import structlog

from floor_analytics.utils.clock import SystemClock

logger = structlog.get_logger()


MACHINE_UPDATE_EVENT = "machine:update"


class BroadcastManager:
    """Connected WebSocket clients and fan-out of engine events."""

    def __init__(self, metrics=None, clock=None):
        self.connections: Dict[str, Any] = {}
        self.metrics = metrics
        self.clock = clock or SystemClock()
        self._ids = count(1)

    def __len__(self) -> int:
        return len(self.connections)

    def add_connection(self, websocket: Any) -> str:
        connection_id = f"client_{next(self._ids)}"
        self.connections[connection_id] = websocket
        logger.info("WebSocket connection added", connection_id=connection_id,
                    clients=len(self.connections))
        return connection_id

    def remove_connection(self, connection_id: str) -> None:
        if self.connections.pop(connection_id, None) is not None:
            logger.info("WebSocket connection removed", connection_id=connection_id,
                        clients=len(self.connections))

    def build_message(self, event: str, data: Any, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            "type": event,
            "data": jsonable_encoder(data),
            "timestamp": (timestamp or self.clock.now()).isoformat(),
        }

    async def send_personal_message(self, message: Dict[str, Any], connection_id: str) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.error("Failed to send message", error=str(e), connection_id=connection_id)
            self.remove_connection(connection_id)
            return False

    async def broadcast(self, event: str, data: Any) -> int:
        """Send an event to every connected client; returns the number reached."""
        message = self.build_message(event, data)
        sent = 0
        for connection_id in list(self.connections):
            if await self.send_personal_message(message, connection_id):
                sent += 1

        if self.metrics:
            self.metrics.record_broadcast(event)
        if sent:
            logger.debug("Broadcast sent", event_type=event, clients=sent)
        return sent

    async def broadcast_machine_update(self, machine: Dict[str, Any]) -> int:
        return await self.broadcast(MACHINE_UPDATE_EVENT, machine)

    def get_connection_stats(self) -> Dict[str, Any]:
        return {"total_connections": len(self.connections)}
