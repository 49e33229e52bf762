"""Tests for agent presence tracking."""
from __future__ import annotations

import pytest

from callrelay.models import AgentStatus
from callrelay.repositories import users as users_repo
from callrelay.services.events import Connection, EventBus
from callrelay.services.presence import PresenceTracker
from conftest import make_user


class DummyConnection:
    def __init__(self, connection_id: str, user_id: str, role: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []
        self.closed = False
        self.connection = Connection(connection_id, self.send, user_id=user_id, role=role, close=self.close)

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    def events(self) -> list[str]:
        return [message["event"] for message in self.messages]


async def status_of(session_factory, user_id: str) -> AgentStatus:
    async with session_factory() as session:
        user = await users_repo.get_by_id(session, user_id)
    return user.status


async def watching_supervisor(bus: EventBus) -> DummyConnection:
    supervisor = DummyConnection("sup-conn", "sup-1", "supervisor")
    await bus.subscribe(supervisor.connection, "role:supervisor")
    return supervisor


@pytest.mark.asyncio
async def test_connect_marks_agent_available(session_factory, seed):
    await seed(make_user("agent-1"))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    supervisor = await watching_supervisor(bus)
    agent = DummyConnection("conn-1", "agent-1", "agent")

    await presence.connect(agent.connection)

    assert await status_of(session_factory, "agent-1") is AgentStatus.AVAILABLE
    assert supervisor.messages == [
        {"event": "agent:statusChanged", "data": {"agentId": "agent-1", "status": "available"}},
        {"event": "agents:online", "data": {"count": 1, "agents": [{"agentId": "agent-1", "role": "agent"}]}},
    ]
    assert presence.online() == ["agent-1"]


@pytest.mark.asyncio
async def test_connect_keeps_on_call_status(session_factory, seed):
    await seed(make_user("agent-1", status=AgentStatus.ON_CALL))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    supervisor = await watching_supervisor(bus)

    await presence.connect(DummyConnection("conn-1", "agent-1", "agent").connection)

    assert await status_of(session_factory, "agent-1") is AgentStatus.ON_CALL
    assert supervisor.events() == ["agents:online"]


@pytest.mark.asyncio
async def test_abrupt_disconnect_marks_offline(session_factory, seed):
    await seed(make_user("agent-1"))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    agent = DummyConnection("conn-1", "agent-1", "agent")
    await presence.connect(agent.connection)
    supervisor = await watching_supervisor(bus)

    await presence.disconnect(agent.connection)

    assert await status_of(session_factory, "agent-1") is AgentStatus.OFFLINE
    assert presence.online() == []
    assert supervisor.messages == [
        {"event": "agent:statusChanged", "data": {"agentId": "agent-1", "status": "offline"}},
        {"event": "agents:online", "data": {"count": 0, "agents": []}},
    ]


@pytest.mark.asyncio
async def test_reconnect_closes_older_socket_and_ignores_its_disconnect(session_factory, seed):
    await seed(make_user("agent-1"))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    old = DummyConnection("conn-old", "agent-1", "agent")
    new = DummyConnection("conn-new", "agent-1", "agent")
    await presence.connect(old.connection)
    await presence.connect(new.connection)

    await presence.disconnect(old.connection)

    assert old.closed
    assert not new.closed
    assert presence.is_online("agent-1")
    assert await status_of(session_factory, "agent-1") is AgentStatus.AVAILABLE


@pytest.mark.asyncio
async def test_disconnect_broadcasts_even_if_database_fails(session_factory, seed, monkeypatch):
    await seed(make_user("agent-1"))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    agent = DummyConnection("conn-1", "agent-1", "agent")
    await presence.connect(agent.connection)
    supervisor = await watching_supervisor(bus)

    async def boom(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(users_repo, "set_status", boom)
    await presence.disconnect(agent.connection)

    assert supervisor.events() == ["agent:statusChanged", "agents:online"]
    assert not presence.is_online("agent-1")


@pytest.mark.asyncio
async def test_set_status_validates_and_broadcasts(session_factory, seed):
    await seed(make_user("agent-1"))
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    agent = DummyConnection("conn-1", "agent-1", "agent")
    await bus.subscribe(agent.connection, "role:agent")

    status = await presence.set_status(agent.connection, "break")
    with pytest.raises(ValueError):
        await presence.set_status(agent.connection, "napping")

    assert status is AgentStatus.BREAK
    assert await status_of(session_factory, "agent-1") is AgentStatus.BREAK
    assert agent.messages == [
        {"event": "agent:statusChanged", "data": {"agentId": "agent-1", "status": "break"}},
    ]


@pytest.mark.asyncio
async def test_force_disconnect_closes_live_connection(session_factory):
    bus = EventBus()
    presence = PresenceTracker(bus, session_factory)
    agent = DummyConnection("conn-1", "agent-1", "agent")
    await presence.connect(agent.connection)

    assert await presence.force_disconnect("agent-1")
    assert agent.closed
    assert not await presence.force_disconnect("someone-else")
