"""
Floor Analytics - WebSocket Handler

This module provides the WebSocket endpoint that dashboard clients connect to
for ``machine:update`` events.
"""

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import structlog

from floor_analytics.services.websocket_manager import BroadcastManager

logger = structlog.get_logger()

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Main WebSocket endpoint for real-time updates."""
    manager: BroadcastManager = websocket.app.state.services.broadcaster

    await websocket.accept()
    connection_id = manager.add_connection(websocket)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal_message({
                    "type": "error",
                    "message": "Invalid JSON message"
                }, connection_id)
                continue

            await handle_websocket_message(manager, connection_id, message)

    except WebSocketDisconnect:
        manager.remove_connection(connection_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), connection_id=connection_id)
        manager.remove_connection(connection_id)


async def handle_websocket_message(manager: BroadcastManager, connection_id: str, message) -> None:
    """Handle incoming WebSocket messages."""
    message_type = message.get("type") if isinstance(message, dict) else None

    if message_type == "ping":
        await manager.send_personal_message(
            manager.build_message("pong", {"connection_id": connection_id}), connection_id
        )
    else:
        await manager.send_personal_message({
            "type": "error",
            "message": f"Unknown message type: {message_type}"
        }, connection_id)
