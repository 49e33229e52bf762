"""Tests for the real-time WebSocket channel."""
from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketDisconnect

from callrelay.core.security import issue_token
from callrelay.main import create_app
from callrelay.services.provider import VoiceProviderClient


def make_client() -> TestClient:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    provider = VoiceProviderClient(
        base_url="https://api.vapi.test",
        api_key="key",
        assistant_id="assistant-1",
        phone_number_id="number-1",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )
    return TestClient(create_app(engine=engine, provider=provider, init_schema=True))


def test_invalid_token_closes_with_4401():
    with make_client() as client:
        with client.websocket_connect("/api/realtime?token=garbage") as ws:
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()

    assert closed.value.code == 4401


def test_presence_and_room_flow():
    supervisor_token = issue_token("sup-1", "supervisor")
    agent_token = issue_token("agent-1", "agent")

    with make_client() as client:
        with client.websocket_connect(f"/api/realtime?token={supervisor_token}") as supervisor:
            online = supervisor.receive_json()
            assert online == {
                "event": "agents:online",
                "data": {"count": 1, "agents": [{"agentId": "sup-1", "role": "supervisor"}]},
            }

            with client.websocket_connect(f"/api/realtime?token={agent_token}") as agent:
                assert supervisor.receive_json()["data"]["count"] == 2

                agent.send_json({"event": "agent:setStatus", "data": {"status": "break"}})
                changed = {"event": "agent:statusChanged", "data": {"agentId": "agent-1", "status": "break"}}
                assert agent.receive_json() == changed
                assert agent.receive_json() == {"event": "agent:status", "data": {"agentId": "agent-1", "status": "break"}}
                assert supervisor.receive_json() == changed

                agent.send_json({"event": "agent:setStatus", "data": {"status": "napping"}})
                error = agent.receive_json()
                assert error["event"] == "error"
                assert "napping" in error["data"]["message"]

                agent.send_json({"event": "call:listen", "data": {"callId": "call-1"}})
                assert agent.receive_json() == {
                    "event": "call:listening",
                    "data": {"callId": "call-1", "session": None},
                }

                agent.send_json({"event": "call:stopListen", "data": {"callId": "call-1"}})
                agent.send_json({"event": "bogus"})
                assert agent.receive_json()["event"] == "error"

            offline = supervisor.receive_json()
            assert offline == {"event": "agent:statusChanged", "data": {"agentId": "agent-1", "status": "offline"}}
            assert supervisor.receive_json()["data"] == {
                "count": 1,
                "agents": [{"agentId": "sup-1", "role": "supervisor"}],
            }


def test_malformed_frame_gets_error_and_keeps_socket_open():
    agent_token = issue_token("agent-1", "agent")

    with make_client() as client:
        with client.websocket_connect(f"/api/realtime?token={agent_token}") as agent:
            agent.send_text("{not json")
            assert agent.receive_json()["event"] == "error"

            agent.send_json({"event": "call:answer", "data": {"callId": "missing"}})
            missing = agent.receive_json()
            assert missing["event"] == "error"
            assert "missing" in missing["data"]["message"]

            agent.send_json({"event": "agent:setStatus", "data": {"status": "break"}})
            assert agent.receive_json()["event"] == "agent:statusChanged"
            assert agent.receive_json() == {"event": "agent:status", "data": {"agentId": "agent-1", "status": "break"}}


def test_admin_can_force_disconnect_an_agent():
    agent_token = issue_token("agent-1", "agent")
    admin = {"Authorization": f"Bearer {issue_token('admin-1', 'admin')}"}
    supervisor = {"Authorization": f"Bearer {issue_token('sup-1', 'supervisor')}"}

    with make_client() as client:
        with client.websocket_connect(f"/api/realtime?token={agent_token}") as agent:
            online = client.get("/api/agents/online", headers=supervisor)
            assert online.json() == {"success": True, "count": 1, "agents": ["agent-1"]}
            assert client.post("/api/agents/agent-1/disconnect", headers=supervisor).status_code == 403

            kicked = client.post("/api/agents/agent-1/disconnect", headers=admin)
            assert kicked.json() == {"success": True, "agentId": "agent-1"}
            with pytest.raises(WebSocketDisconnect) as closed:
                agent.receive_json()

        assert closed.value.code == 4000
        assert client.post("/api/agents/agent-1/disconnect", headers=admin).status_code == 404
