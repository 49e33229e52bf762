"""In-memory room-scoped event bus for real-time clients."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
CloseCallable = Callable[[], Awaitable[None]]

AGENT_ROOM = "role:agent"
SUPERVISOR_ROOMS = ("role:supervisor", "role:admin")
AGENT_STATUS_ROOMS = (AGENT_ROOM, *SUPERVISOR_ROOMS)


def call_room(call_id: str) -> str:
    return f"call:{call_id}"


def role_room(role: str) -> str:
    return f"role:{role}"


@dataclass(slots=True)
class Connection:
    """Handle for one connected real-time client."""

    connection_id: str
    send: SendCallable
    user_id: Optional[str] = None
    role: Optional[str] = None
    close: Optional[CloseCallable] = None


class EventBus:
    """Manage rooms and fan out ``{"event", "data"}`` envelopes to their members."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._memberships: Dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, connection: Connection, room: str) -> bool:
        """Add a connection to a room; returns False if it was already a member."""

        async with self._lock:
            members = self._rooms.setdefault(room, {})
            if connection.connection_id in members:
                return False
            members[connection.connection_id] = connection
            self._memberships.setdefault(connection.connection_id, set()).add(room)
            return True

    async def unsubscribe(self, connection_id: str, room: str) -> bool:
        """Remove a connection from a room, cleaning up empty rooms."""

        async with self._lock:
            return self._remove(connection_id, room)

    async def unsubscribe_all(self, connection_id: str) -> list[str]:
        """Drop every membership of a connection and return the rooms it left."""

        async with self._lock:
            rooms = list(self._memberships.get(connection_id, ()))
            for room in rooms:
                self._remove(connection_id, room)
            self._memberships.pop(connection_id, None)
            return rooms

    def _remove(self, connection_id: str, room: str) -> bool:
        members = self._rooms.get(room)
        if not members or connection_id not in members:
            return False
        members.pop(connection_id, None)
        if not members:
            self._rooms.pop(room, None)
        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                self._memberships.pop(connection_id, None)
        return True

    async def publish(self, rooms: str | Iterable[str], event: str, data: dict[str, Any]) -> int:
        """Deliver an event once to every connection in any of ``rooms``."""

        room_names = [rooms] if isinstance(rooms, str) else list(rooms)
        async with self._lock:
            recipients: Dict[str, Connection] = {}
            for room in room_names:
                for connection_id, connection in self._rooms.get(room, {}).items():
                    recipients.setdefault(connection_id, connection)

        if not recipients:
            return 0

        envelope = {"event": event, "data": data}
        targets = list(recipients.values())
        results = await asyncio.gather(*(conn.send(envelope) for conn in targets), return_exceptions=True)
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("Dropping %s for connection %s: %s", event, connection.connection_id, result)
        return len(targets)

    def members(self, room: str) -> list[str]:
        return list(self._rooms.get(room, {}))

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, {}))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, ()))
