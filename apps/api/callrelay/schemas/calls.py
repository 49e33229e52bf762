"""Schemas for the call control REST surface."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models.call import CallDirection, CallStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class CallOut(CamelModel):
    id: str
    external_call_id: str | None = None
    direction: CallDirection
    phone: str
    status: CallStatus
    agent_id: str | None = None
    lead_id: str | None = None
    campaign_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    answered_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int = 0
    talk_time: int = 0
    ended_reason: str | None = None
    disposition: str | None = None
    notes: str | None = None
    transferred_to: str | None = None
    transferred_by: str | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)


class InitiateCallRequest(CamelModel):
    lead_id: str | None = None
    campaign_id: str | None = None
    phone_number: str | None = None
    agent_id: str | None = None


class InitiateCallResponse(CamelModel):
    success: bool = True
    call: CallOut
    external_call: dict[str, Any]
    listen_url: str | None = None
    control_url: str | None = None


class CallStatusResponse(CamelModel):
    success: bool = True
    call: CallOut
    control_endpoint: str | None = None
    session: dict[str, Any] | None = None
    provider: dict[str, Any] | None = None


class CallListResponse(CamelModel):
    success: bool = True
    count: int
    calls: list[CallOut]


class ActiveCall(CamelModel):
    call: CallOut
    session: dict[str, Any] | None = None


class ActiveCallsResponse(CamelModel):
    success: bool = True
    count: int
    calls: list[ActiveCall]


class TranscriptEntry(BaseModel):
    role: str
    content: str


class TranscriptResponse(CamelModel):
    success: bool = True
    call_id: str
    transcript: list[TranscriptEntry]


class ControlTarget(CamelModel):
    control_url: str | None = Field(default=None, description="Overrides the session's endpoint while unresolved")


class MessageCommandRequest(ControlTarget):
    message: str | None = None


class TransferRequest(ControlTarget):
    destination: str | None = None


class ControlRequest(ControlTarget):
    control: str | None = Field(default=None, description="mute | unmute | end")


class DispositionRequest(CamelModel):
    disposition: str | None = None
    notes: str | None = None
    next_callback: datetime | None = None
