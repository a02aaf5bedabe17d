"""DeskPilot – Realtime Broadcaster.

Notification sink for dashboard clients. The pipeline calls `emit_*` after
state is committed; emission schedules the sends and returns immediately,
and a failed send (closed socket, no clients, Redis down) never reaches the
caller.

Two sinks share the same emit interface:
  - WebSocketBroadcaster: rooms of connected websockets in this process.
  - RedisEventPublisher: publishes events on `deskpilot:events` for workers
    running outside the gateway; the gateway relays them into its rooms
    via `relay_events`.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any

import structlog
from fastapi import WebSocket
from pydantic import ValidationError

from app.gateway.redis_bus import RedisBus
from app.gateway.schemas import RealtimeEvent

logger = structlog.get_logger()

ADMIN_ROOM = "admin_notifications"


def conversation_room(conversation_id: int) -> str:
    return f"conversation_{conversation_id}"


class EventSink(ABC):
    """Emit interface shared by every realtime sink; subclasses implement deliver()."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def emit_to_conversation(self, conversation_id: int, event: str, data: dict[str, Any]) -> None:
        self.emit_to_room(conversation_room(conversation_id), event, data)

    def emit_to_room(self, room: str, event: str, data: dict[str, Any]) -> None:
        self.deliver(RealtimeEvent(room=room, event=event, data=data))

    @abstractmethod
    def deliver(self, evt: RealtimeEvent) -> None:
        """Schedule delivery of one event without blocking the caller."""

    def _spawn(self, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("realtime.no_event_loop")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Wait for scheduled sends to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebSocketBroadcaster(EventSink):
    """Room-based fan-out to websockets connected to this process."""

    def __init__(self, send_timeout: float = 5.0) -> None:
        super().__init__()
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._send_timeout = send_timeout

    def join(self, room: str, ws: WebSocket) -> None:
        self._rooms[room].add(ws)

    def leave(self, room: str, ws: WebSocket) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(ws)
        if not members:
            self._rooms.pop(room, None)

    def disconnect(self, ws: WebSocket) -> None:
        for room in list(self._rooms):
            self.leave(room, ws)

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def deliver(self, evt: RealtimeEvent) -> None:
        sockets = list(self._rooms.get(evt.room, ()))
        if not sockets:
            logger.debug("realtime.no_listeners", room=evt.room, event_name=evt.event)
            return
        payload = evt.model_dump(mode="json")
        self._spawn(self._send_all(sockets, payload))

    async def _send_all(self, sockets: list[WebSocket], payload: dict[str, Any]) -> None:
        for ws in sockets:
            try:
                await asyncio.wait_for(ws.send_json(payload), timeout=self._send_timeout)
            except Exception as exc:
                logger.warning("realtime.send_failed", room=payload.get("room"), error=str(exc))
                self.disconnect(ws)


class RedisEventPublisher(EventSink):
    """Publishes events to Redis for a gateway process to relay."""

    def __init__(self, bus: RedisBus, channel: str = RedisBus.CHANNEL_EVENTS) -> None:
        super().__init__()
        self._bus = bus
        self._channel = channel

    def deliver(self, evt: RealtimeEvent) -> None:
        self._spawn(self._publish(evt))

    async def _publish(self, evt: RealtimeEvent) -> None:
        try:
            await self._bus.publish(self._channel, evt.model_dump_json())
        except Exception as exc:
            logger.warning("realtime.publish_failed", room=evt.room, event_name=evt.event, error=str(exc))


async def relay_events(bus: RedisBus, broadcaster: WebSocketBroadcaster) -> None:
    """Forward events published by out-of-process workers into local rooms."""

    async def _on_message(data: str) -> None:
        try:
            evt = RealtimeEvent.model_validate_json(data)
        except ValidationError:
            logger.warning("realtime.relay_malformed", preview=data[:200])
            return
        broadcaster.deliver(evt)

    await bus.subscribe(RedisBus.CHANNEL_EVENTS, _on_message)
