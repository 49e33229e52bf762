"""Lead repository helpers."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.lead import Lead, LeadStatus


async def get_by_id(session: AsyncSession, lead_id: str) -> Lead | None:
    """Return a lead by identifier."""

    stmt: Select[tuple[Lead]] = select(Lead).where(Lead.id == lead_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_by_phone(session: AsyncSession, phone: str) -> Lead | None:
    """Return the oldest lead registered under a normalized phone number."""

    if not phone:
        return None
    stmt = select(Lead).where(Lead.phone == phone).order_by(Lead.created_at.asc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def mark_calling(session: AsyncSession, lead: Lead, *, at: datetime | None = None) -> Lead:
    """Stamp a dial attempt on the lead."""

    lead.status = LeadStatus.CALLING
    lead.attempts = (lead.attempts or 0) + 1
    lead.last_called_at = at or datetime.now(timezone.utc)
    session.add(lead)
    return lead


async def apply_disposition(
    session: AsyncSession,
    lead_id: str,
    *,
    disposition: str,
    next_callback_at: datetime | None = None,
) -> Lead | None:
    """Copy a call disposition onto its lead and schedule a callback if asked."""

    lead = await get_by_id(session, lead_id)
    if lead is None:
        return None
    lead.last_disposition = disposition
    if next_callback_at is not None:
        lead.status = LeadStatus.CALLBACK
        lead.next_callback_at = next_callback_at
    else:
        lead.status = LeadStatus.CONTACTED
    session.add(lead)
    return lead
