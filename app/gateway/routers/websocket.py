"""DeskPilot – Dashboard WebSocket Router.

Clients join rooms and then only listen:

    {"action": "join_conversation", "conversationId": 12}
    {"action": "leave_conversation", "conversationId": 12}
    {"action": "join_admin"}

Events arrive as {"room", "event", "data", "timestamp"}.
"""

import json
from uuid import uuid4

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.gateway.dependencies import get_broadcaster
from app.gateway.realtime import ADMIN_ROOM, conversation_room

logger = structlog.get_logger()
router = APIRouter(tags=["realtime"])


def _room_for(payload: dict) -> str | None:
    action = payload.get("action")
    if action == "join_admin":
        return ADMIN_ROOM
    conversation_id = payload.get("conversationId")
    if isinstance(conversation_id, bool) or not isinstance(conversation_id, (int, str)):
        return None
    try:
        return conversation_room(int(conversation_id))
    except ValueError:
        return None


@router.websocket("/ws")
async def realtime_socket(ws: WebSocket) -> None:
    broadcaster = get_broadcaster(ws)
    await ws.accept()
    client_id = uuid4().hex[:8]
    logger.info("ws.connected", client_id=client_id)

    try:
        while True:
            data = await ws.receive_text()
            try:
                payload = json.loads(data)
            except ValueError:
                await ws.send_json({"event": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(payload, dict):
                await ws.send_json({"event": "error", "data": {"message": "Expected an object"}})
                continue

            action = payload.get("action")
            room = _room_for(payload)
            if action not in {"join_conversation", "leave_conversation", "join_admin"} or room is None:
                await ws.send_json({"event": "error", "data": {"message": f"Unsupported action: {action}"}})
                continue

            if action == "leave_conversation":
                broadcaster.leave(room, ws)
                await ws.send_json({"event": "left", "data": {"room": room}})
            else:
                broadcaster.join(room, ws)
                await ws.send_json({"event": "joined", "data": {"room": room}})
            logger.debug("ws.room_change", client_id=client_id, action=action, room=room)
    except WebSocketDisconnect:
        logger.info("ws.disconnected", client_id=client_id)
    finally:
        broadcaster.disconnect(ws)
