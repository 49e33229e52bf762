"""Contracts for voice provider webhooks."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class WebhookEventType(str, enum.Enum):
    CALL_STARTED = "call-started"
    CALL_ENDED = "call-ended"
    TRANSCRIPT = "transcript"
    SPEECH_UPDATE = "speech-update"


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WebhookCustomer(_ProviderModel):
    number: str | None = None


class WebhookMonitor(_ProviderModel):
    listen_url: str | None = Field(default=None, alias="listenUrl")
    control_url: str | None = Field(default=None, alias="controlUrl")


class WebhookCall(_ProviderModel):
    id: str | None = None
    type: str | None = None
    customer: WebhookCustomer | None = None
    started_at: datetime | None = Field(default=None, alias="startedAt")
    ended_at: datetime | None = Field(default=None, alias="endedAt")
    ended_reason: str | None = Field(default=None, alias="endedReason")
    monitor: WebhookMonitor | None = None

    @property
    def is_inbound(self) -> bool:
        return "inbound" in (self.type or "").lower()

    @property
    def customer_number(self) -> str | None:
        return self.customer.number if self.customer else None

    @property
    def listen_url(self) -> str | None:
        return self.monitor.listen_url if self.monitor else None

    @property
    def control_url(self) -> str | None:
        return self.monitor.control_url if self.monitor else None


class WebhookEvent(_ProviderModel):
    type: str
    call: WebhookCall | None = None
    transcript: Any = None
    transcript_type: str | None = Field(default=None, alias="transcriptType")
    role: str | None = None
    status: str | None = None
    ended_reason: str | None = Field(default=None, alias="endedReason")

    @property
    def kind(self) -> WebhookEventType | None:
        try:
            return WebhookEventType(self.type)
        except ValueError:
            return None

    @property
    def external_call_id(self) -> str | None:
        return self.call.id if self.call else None


def parse_webhook(body: Any) -> WebhookEvent | None:
    """Parse a flat or ``{"message": {...}}``-wrapped webhook body; None if malformed."""

    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if isinstance(message, dict) and "type" in message:
        body = message
    try:
        return WebhookEvent.model_validate(body)
    except ValidationError:
        return None
