"""User presence persistence helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.user import AgentStatus, User


async def get_by_id(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def set_status(
    session: AsyncSession,
    user_id: str,
    status: AgentStatus,
    *,
    unless: Iterable[AgentStatus] = (),
) -> bool:
    """Persist an agent status, skipping rows currently in one of ``unless``."""

    stmt = update(User).where(User.id == user_id)
    excluded = list(unless)
    if excluded:
        stmt = stmt.where(User.status.not_in(excluded))
    stmt = stmt.values(status=status, status_changed_at=datetime.now(timezone.utc)).execution_options(
        synchronize_session=False
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
