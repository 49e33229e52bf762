"""Call model."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .lead import Lead
    from .user import User


class CallDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallStatus(str, enum.Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"


class Call(Base):
    """Persisted call with lifecycle status and the provider's call reference."""

    __tablename__ = "calls"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    external_call_id: Mapped[str | None] = mapped_column(String, unique=True, index=True)
    direction: Mapped[CallDirection] = mapped_column(
        Enum(CallDirection, name="call_direction", values_callable=enum_values), nullable=False
    )
    phone: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[CallStatus] = mapped_column(
        Enum(CallStatus, name="call_status", values_callable=enum_values),
        default=CallStatus.INITIATED,
        nullable=False,
        index=True,
    )
    agent_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    lead_id: Mapped[str | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"))
    campaign_id: Mapped[str | None] = mapped_column(String, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    talk_time: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ended_reason: Mapped[str | None] = mapped_column(String)

    disposition: Mapped[str | None] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text)
    transferred_to: Mapped[str | None] = mapped_column(String)
    transferred_by: Mapped[str | None] = mapped_column(String)
    events: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    lead: Mapped["Lead | None"] = relationship("Lead", back_populates="calls")
    agent: Mapped["User | None"] = relationship("User", back_populates="calls")
