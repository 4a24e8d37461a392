from __future__ import annotations

import threading
from typing import Any, Optional, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from src.api.logging_config import get_logger

logger = get_logger(__name__)


class Channel(Protocol):
    """Outbound half of one participant's live connection."""

    @property
    def is_open(self) -> bool: ...

    async def send(self, payload: Any) -> None: ...


class WebSocketChannel:
    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: Any) -> None:
        await self.websocket.send_json(payload)


class ConnectionRegistry:
    """Maps participant ids to their live channel. In-memory, per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, Channel] = {}

    def bind(self, participant_id: str, channel: Channel) -> None:
        # A rebind replaces the old handle; closing it is the transport's job.
        with self._lock:
            self._channels[participant_id] = channel

    def unbind(self, participant_id: str, channel: Optional[Channel] = None) -> None:
        """Drop the binding. With *channel*, only if it is still the bound one."""
        with self._lock:
            current = self._channels.get(participant_id)
            if current is None:
                return
            if channel is not None and current is not channel:
                return
            del self._channels[participant_id]

    def lookup(self, participant_id: str) -> Optional[Channel]:
        with self._lock:
            channel = self._channels.get(participant_id)
        if channel is None or not channel.is_open:
            return None
        return channel

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)


class RoomBroadcaster:
    """Delivers messages to one participant or to every member of a room."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send_direct(self, channel: Channel, message: Any, recipient: str = "connection") -> bool:
        """Fire-and-forget delivery; a closed channel is skipped, never raised."""
        if not channel.is_open:
            logger.debug(f"Channel for {recipient} is closed, skipping {message.get('type')}")
            return False
        try:
            await channel.send(message)
        except Exception as e:
            # Closed mid-send; the disconnect handler reconciles membership.
            logger.debug(f"Delivery to {recipient} failed: {e}")
            return False
        return True

    async def send_to(self, participant_id: str, message: Any) -> bool:
        channel = self.registry.lookup(participant_id)
        if channel is None:
            logger.debug(f"No live channel for {participant_id}, skipping {message.get('type')}")
            return False
        return await self.send_direct(channel, message, recipient=participant_id)

    async def send_to_room(self, room: dict[str, Any], message: Any, exclude: Optional[str] = None) -> int:
        """Send *message* to the members listed in *room*; returns how many deliveries went out."""
        delivered = 0
        for user in list(room.get("users") or []):
            if exclude is not None and user["id"] == exclude:
                continue
            if await self.send_to(user["id"], message):
                delivered += 1
        return delivered
