"""Shared fixtures: an in-memory database and seed helpers."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from callrelay.models import AgentStatus, Lead, LeadStatus, User
from callrelay.models.base import Base


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def seed(session_factory):
    """Insert users and leads: ``await seed(User(...), Lead(...))``."""

    async def _seed(*objects) -> None:
        async with session_factory() as session:
            async with session.begin():
                session.add_all(objects)

    return _seed


def make_user(user_id: str, role: str = "agent", status: AgentStatus = AgentStatus.OFFLINE) -> User:
    return User(id=user_id, email=f"{user_id}@example.com", role=role, status=status)


def make_lead(lead_id: str, phone: str, campaign_id: str = "campaign-1") -> Lead:
    return Lead(
        id=lead_id,
        first_name="Jordan",
        last_name="Reyes",
        phone=phone,
        campaign_id=campaign_id,
        status=LeadStatus.NEW,
        attempts=0,
        created_at=datetime(2025, 10, 1, tzinfo=timezone.utc),
    )
