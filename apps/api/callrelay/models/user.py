"""Console user model (agents, supervisors, admins)."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .call import Call


class AgentStatus(str, enum.Enum):
    AVAILABLE = "available"
    ON_CALL = "on-call"
    BREAK = "break"
    BUSY = "busy"
    OFFLINE = "offline"


class User(Base):
    """User account; the auth service owns credentials, we only track presence."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String)
    last_name: Mapped[str | None] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="agent", nullable=False)
    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus, name="agent_status", values_callable=enum_values),
        default=AgentStatus.OFFLINE,
        nullable=False,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    calls: Mapped[list["Call"]] = relationship("Call", back_populates="agent")
