"""Tests for the room-scoped event bus."""
from __future__ import annotations

import pytest

from callrelay.services.events import AGENT_ROOM, Connection, EventBus, call_room, role_room


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def handle(self, role: str | None = None) -> Connection:
        return Connection(self.connection_id, self.send, user_id=f"user-{self.connection_id}", role=role)


class BrokenConnection(DummyConnection):
    async def send(self, message: dict) -> None:
        raise RuntimeError("socket closed")


def test_room_names():
    assert call_room("c1") == "call:c1"
    assert role_room("agent") == AGENT_ROOM


@pytest.mark.asyncio
async def test_publish_reaches_room_members_only():
    bus = EventBus()
    conn_a = DummyConnection("a")
    conn_b = DummyConnection("b")

    assert await bus.subscribe(conn_a.handle(), "call:1")
    assert not await bus.subscribe(conn_a.handle(), "call:1")
    await bus.subscribe(conn_b.handle(), "call:2")

    delivered = await bus.publish("call:1", "call:connected", {"callId": "1"})

    assert delivered == 1
    assert conn_a.messages == [{"event": "call:connected", "data": {"callId": "1"}}]
    assert conn_b.messages == []


@pytest.mark.asyncio
async def test_publish_to_overlapping_rooms_delivers_once():
    bus = EventBus()
    conn = DummyConnection("a")
    await bus.subscribe(conn.handle("supervisor"), "role:supervisor")
    await bus.subscribe(conn.handle("supervisor"), "role:admin")

    delivered = await bus.publish(["role:supervisor", "role:admin"], "agents:online", {"count": 1})

    assert delivered == 1
    assert len(conn.messages) == 1


@pytest.mark.asyncio
async def test_failed_delivery_does_not_block_others():
    bus = EventBus()
    broken = BrokenConnection("broken")
    healthy = DummyConnection("healthy")
    await bus.subscribe(broken.handle(), "call:1")
    await bus.subscribe(healthy.handle(), "call:1")

    delivered = await bus.publish("call:1", "call:ended", {"callId": "1"})

    assert delivered == 2
    assert healthy.messages == [{"event": "call:ended", "data": {"callId": "1"}}]


@pytest.mark.asyncio
async def test_unsubscribe_all_releases_every_room():
    bus = EventBus()
    conn = DummyConnection("a")
    await bus.subscribe(conn.handle("agent"), AGENT_ROOM)
    await bus.subscribe(conn.handle("agent"), "call:1")
    await bus.subscribe(conn.handle("agent"), "call:2")

    left = await bus.unsubscribe_all("a")

    assert sorted(left) == ["call:1", "call:2", AGENT_ROOM]
    assert bus.rooms_of("a") == set()
    assert bus.room_size("call:1") == 0
    assert bus.members(AGENT_ROOM) == []
    assert await bus.publish("call:1", "call:ended", {}) == 0


@pytest.mark.asyncio
async def test_unsubscribe_single_room():
    bus = EventBus()
    conn = DummyConnection("a")
    await bus.subscribe(conn.handle(), "call:1")
    await bus.subscribe(conn.handle(), "call:2")

    assert await bus.unsubscribe("a", "call:1")
    assert not await bus.unsubscribe("a", "call:1")
    assert bus.rooms_of("a") == {"call:2"}
