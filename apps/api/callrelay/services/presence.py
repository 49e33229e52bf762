"""Agent presence: who is connected and what status they are in."""
from __future__ import annotations

import logging
from typing import Any, Dict

from ..db.session import SessionFactory
from ..models.user import AgentStatus
from ..repositories import users as users_repo
from .events import AGENT_STATUS_ROOMS, SUPERVISOR_ROOMS, Connection, EventBus

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Map agent ids to their live connection and persist status changes."""

    def __init__(self, bus: EventBus, session_factory: SessionFactory) -> None:
        self.bus = bus
        self._session_factory = session_factory
        self._connections: Dict[str, Connection] = {}

    def online(self) -> list[str]:
        return sorted(self._connections)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._connections

    async def connect(self, connection: Connection) -> None:
        """Register a connection; an agent becomes available unless already on a call."""

        user_id = connection.user_id
        if not user_id:
            return
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        if previous is not None and previous.connection_id != connection.connection_id:
            logger.info("User %s reconnected; closing connection %s", user_id, previous.connection_id)
            if previous.close is not None:
                await previous.close()

        changed = False
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    changed = await users_repo.set_status(
                        db, user_id, AgentStatus.AVAILABLE, unless=(AgentStatus.ON_CALL,)
                    )
        except Exception:  # noqa: BLE001 - presence must not block the socket
            logger.exception("Failed to persist online status for %s", user_id)

        if changed:
            await self._broadcast_status(user_id, AgentStatus.AVAILABLE)
        await self._broadcast_online()

    async def disconnect(self, connection: Connection) -> None:
        """Mark a user offline if this connection is still their current one."""

        user_id = connection.user_id
        if not user_id:
            return
        current = self._connections.get(user_id)
        if current is None or current.connection_id != connection.connection_id:
            return
        self._connections.pop(user_id, None)

        try:
            async with self._session_factory() as db:
                async with db.begin():
                    await users_repo.set_status(db, user_id, AgentStatus.OFFLINE)
        except Exception:  # noqa: BLE001 - the broadcast still goes out
            logger.exception("Failed to persist offline status for %s", user_id)

        await self._broadcast_status(user_id, AgentStatus.OFFLINE)
        await self._broadcast_online()

    async def set_status(self, connection: Connection, value: str) -> AgentStatus:
        """Apply a client-requested status change."""

        try:
            status = AgentStatus(value)
        except ValueError as exc:
            raise ValueError(f"Unknown agent status: {value!r}") from exc
        if not connection.user_id:
            raise ValueError("Connection is not bound to a user")

        async with self._session_factory() as db:
            async with db.begin():
                await users_repo.set_status(db, connection.user_id, status)
        await self._broadcast_status(connection.user_id, status)
        return status

    async def force_disconnect(self, user_id: str) -> bool:
        """Close a user's live connection, e.g. after an admin deactivates them."""

        connection = self._connections.get(user_id)
        if connection is None or connection.close is None:
            return False
        logger.info("Force-disconnecting user %s", user_id)
        await connection.close()
        return True

    async def _broadcast_status(self, user_id: str, status: AgentStatus) -> None:
        await self.bus.publish(AGENT_STATUS_ROOMS, "agent:statusChanged", {"agentId": user_id, "status": status.value})

    async def _broadcast_online(self) -> None:
        agents: list[dict[str, Any]] = [
            {"agentId": user_id, "role": conn.role} for user_id, conn in sorted(self._connections.items())
        ]
        await self.bus.publish(SUPERVISOR_ROOMS, "agents:online", {"count": len(agents), "agents": agents})
