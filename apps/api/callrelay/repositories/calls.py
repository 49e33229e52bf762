"""Call repository helpers.

Status writes are single-row conditional updates: a row only changes when its
current status is a valid source for the target status, so out-of-order or
duplicate provider webhooks cannot move a call backwards.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.call import Call, CallDirection, CallStatus
from ..services.call_state import ACTIVE_STATUSES, allowed_sources


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def get_by_id(session: AsyncSession, call_id: str) -> Call | None:
    """Return a call record by identifier."""

    return await session.get(Call, call_id)


async def get_by_external_id(session: AsyncSession, external_call_id: str) -> Call | None:
    """Return the call that carries the provider's call identifier."""

    stmt: Select[tuple[Call]] = select(Call).where(Call.external_call_id == external_call_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_call(
    session: AsyncSession,
    *,
    direction: CallDirection,
    phone: str,
    status: CallStatus = CallStatus.INITIATED,
    agent_id: str | None = None,
    lead_id: str | None = None,
    campaign_id: str | None = None,
    external_call_id: str | None = None,
    started_at: datetime | None = None,
    answered_at: datetime | None = None,
) -> Call:
    """Insert a new call row and return it."""

    now = _now()
    call = Call(
        id=str(uuid4()),
        external_call_id=external_call_id,
        direction=direction,
        phone=phone,
        status=status,
        agent_id=agent_id,
        lead_id=lead_id,
        campaign_id=campaign_id,
        created_at=now,
        started_at=started_at or now,
        answered_at=answered_at,
        duration=0,
        talk_time=0,
        events=[{"event": status.value, "at": now.isoformat(), "data": {}}],
    )
    session.add(call)
    await session.flush()
    return call


async def set_external_id(session: AsyncSession, call_id: str, external_call_id: str) -> bool:
    """Attach the provider call id; it is written at most once."""

    stmt = (
        update(Call)
        .where(Call.id == call_id, Call.external_call_id.is_(None))
        .values(external_call_id=external_call_id)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def claim_call(session: AsyncSession, call_id: str, agent_id: str) -> bool:
    """Assign an unowned live call to ``agent_id``; only the first claim matches."""

    stmt = (
        update(Call)
        .where(Call.id == call_id, Call.agent_id.is_(None), Call.status.in_(ACTIVE_STATUSES))
        .values(agent_id=agent_id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return False
    await append_event(session, call_id, "answered", {"agentId": agent_id})
    return True


async def transition_status(
    session: AsyncSession,
    call_id: str,
    target: CallStatus,
    *,
    values: dict[str, Any] | None = None,
    event_data: dict[str, Any] | None = None,
) -> bool:
    """Move a call to ``target`` if, and only if, that is a forward transition."""

    stmt = (
        update(Call)
        .where(Call.id == call_id, Call.status.in_(allowed_sources(target)))
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return False
    await append_event(session, call_id, target.value, event_data)
    return True


async def record_end(
    session: AsyncSession,
    call_id: str,
    *,
    expected_status: CallStatus,
    status: CallStatus,
    ended_at: datetime,
    duration: int,
    talk_time: int,
    reason: str | None,
) -> bool:
    """Stamp end-of-call fields once; a second application matches no row."""

    stmt = (
        update(Call)
        .where(
            Call.id == call_id,
            Call.status == expected_status,
            Call.ended_at.is_(None),
        )
        .values(
            status=status,
            ended_at=ended_at,
            duration=duration,
            talk_time=talk_time,
            ended_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return False
    await append_event(session, call_id, "hangup", {"status": status.value, "reason": reason})
    return True


async def append_event(
    session: AsyncSession,
    call_id: str,
    event: str,
    data: dict[str, Any] | None = None,
) -> None:
    """Append an entry to the call's event log and refresh the loaded row."""

    call = await session.get(Call, call_id, populate_existing=True)
    if call is None:
        return
    entry = {"event": event, "at": _now().isoformat(), "data": data or {}}
    call.events = [*(call.events or []), entry]
    await session.flush()


async def list_active(session: AsyncSession) -> list[Call]:
    """Return calls still in flight, newest first."""

    stmt = select(Call).where(Call.status.in_(ACTIVE_STATUSES)).order_by(Call.created_at.desc())
    result = await session.execute(stmt)
    return list(result.scalars())


async def list_calls(
    session: AsyncSession,
    *,
    agent_id: str | None = None,
    status: CallStatus | None = None,
    campaign_id: str | None = None,
    limit: int = 50,
) -> list[Call]:
    """Return recent calls filtered by agent, status or campaign."""

    stmt = select(Call)
    if agent_id is not None:
        stmt = stmt.where(Call.agent_id == agent_id)
    if status is not None:
        stmt = stmt.where(Call.status == status)
    if campaign_id is not None:
        stmt = stmt.where(Call.campaign_id == campaign_id)
    stmt = stmt.order_by(Call.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars())


async def update_disposition(
    session: AsyncSession,
    call_id: str,
    *,
    disposition: str,
    notes: str | None,
) -> Call | None:
    """Record the agent's post-call disposition."""

    call = await session.get(Call, call_id)
    if call is None:
        return None
    call.disposition = disposition
    if notes is not None:
        call.notes = notes
    session.add(call)
    await session.flush()
    return call
