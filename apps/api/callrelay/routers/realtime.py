"""Real-time WebSocket channel for agents and supervisors."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.errors import CallControlError
from ..core.security import InvalidTokenError, decode_token
from ..services.events import Connection
from ..services.runtime import Runtime, get_ws_runtime

logger = logging.getLogger(__name__)

router = APIRouter()

UNAUTHORIZED_CLOSE_CODE = 4401
FORCED_CLOSE_CODE = 4000


async def _handle_message(runtime: Runtime, connection: Connection, message: Any) -> dict[str, Any] | None:
    """Apply one client envelope and return the reply, if any."""

    if not isinstance(message, dict):
        raise ValueError("Expected a JSON object")
    event = message.get("event")
    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("data must be an object")

    if event == "agent:setStatus":
        status = await runtime.presence.set_status(connection, str(data.get("status") or ""))
        return {"event": "agent:status", "data": {"agentId": connection.user_id, "status": status.value}}
    if event == "call:listen":
        call_id = data.get("callId")
        if not call_id:
            raise ValueError("callId is required")
        session = await runtime.relay.join_call(connection, str(call_id))
        return {
            "event": "call:listening",
            "data": {"callId": call_id, "session": session.snapshot() if session else None},
        }
    if event == "call:answer":
        call_id = data.get("callId")
        if not call_id:
            raise ValueError("callId is required")
        await runtime.relay.answer_call(connection, str(call_id))
        return None
    if event == "call:stopListen":
        call_id = data.get("callId")
        if not call_id:
            raise ValueError("callId is required")
        await runtime.relay.leave_call(connection, str(call_id))
        return None
    raise ValueError(f"Unknown event: {event}")


@router.websocket("/realtime")
async def realtime_endpoint(websocket: WebSocket) -> None:
    """Authenticate with ``?token=``, then exchange ``{event, data}`` envelopes."""

    await websocket.accept()
    try:
        principal = decode_token(websocket.query_params.get("token") or "")
    except InvalidTokenError:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="Invalid token")
        return

    runtime = get_ws_runtime(websocket)
    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    closing = asyncio.Event()

    async def enqueue(envelope: dict) -> None:
        outbox.put_nowait(envelope)

    async def request_close() -> None:
        closing.set()

    connection = Connection(
        connection_id=str(uuid4()),
        send=enqueue,
        user_id=principal.user_id,
        role=principal.role,
        close=request_close,
    )

    async def writer() -> None:
        while True:
            envelope = await outbox.get()
            await websocket.send_json(envelope)

    async def receiver() -> None:
        while True:
            raw = await websocket.receive_text()
            try:
                reply = await _handle_message(runtime, connection, json.loads(raw))
            except (ValueError, CallControlError) as exc:
                reply = {"event": "error", "data": {"message": str(exc)}}
            if reply is not None:
                outbox.put_nowait(reply)

    await runtime.relay.attach(connection)
    await runtime.presence.connect(connection)
    logger.info("Realtime client %s connected as %s (%s)", connection.connection_id, principal.user_id, principal.role)

    tasks = [
        asyncio.create_task(writer()),
        asyncio.create_task(receiver()),
        asyncio.create_task(closing.wait()),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Realtime connection %s failed: %s", connection.connection_id, exc)
        if closing.is_set():
            with suppress(Exception):
                await websocket.close(code=FORCED_CLOSE_CODE)
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task
        try:
            await runtime.relay.detach(connection)
        finally:
            await runtime.presence.disconnect(connection)
        logger.info("Realtime client %s disconnected", connection.connection_id)
