"""Lead model."""
from __future__ import annotations

from datetime import datetime, timezone
import enum
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .call import Call


class LeadStatus(str, enum.Enum):
    NEW = "new"
    CALLING = "calling"
    CONTACTED = "contacted"
    CALLBACK = "callback"
    CLOSED = "closed"


class Lead(Base):
    """Lead owned by the campaign tooling; the relay only reads and stamps it."""

    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(String)
    last_name: Mapped[str | None] = mapped_column(String)
    phone: Mapped[str | None] = mapped_column(String, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String)
    status: Mapped[LeadStatus] = mapped_column(
        Enum(LeadStatus, name="lead_status", values_callable=enum_values),
        default=LeadStatus.NEW,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_called_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_disposition: Mapped[str | None] = mapped_column(String)
    next_callback_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    calls: Mapped[list["Call"]] = relationship("Call", back_populates="lead")
