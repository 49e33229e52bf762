"""HTTP gateway to the external voice-AI provider.

Creates outbound calls, fetches call snapshots and posts live-call control
commands. Provider failures are normalized into the typed errors from
:mod:`callrelay.core.errors`.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from ..core.config import settings
from ..core.errors import (
    CallValidationError,
    ControlEndpointGoneError,
    ControlEndpointUnavailableError,
    InvalidDestinationError,
    NotFoundError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

_SCHEME_MAP = {"wss": "https", "ws": "http"}


class ControlKind(str, enum.Enum):
    WHISPER = "whisper"
    BARGE = "barge"
    TRANSFER = "transfer"
    MUTE = "mute"
    UNMUTE = "unmute"
    END = "end"


@dataclass(slots=True)
class ControlCommand:
    """A command bound for a call's control endpoint."""

    kind: ControlKind
    payload: dict[str, Any]


def whisper_command(message: str) -> ControlCommand:
    """System message only the assistant hears."""

    return ControlCommand(
        ControlKind.WHISPER,
        {"type": "add-message", "message": {"role": "system", "content": message}},
    )


def barge_command(message: str) -> ControlCommand:
    """Utterance the assistant speaks aloud to the customer."""

    return ControlCommand(ControlKind.BARGE, {"type": "say", "content": message})


def transfer_command(destination: str) -> ControlCommand:
    return ControlCommand(
        ControlKind.TRANSFER,
        {"type": "transfer", "destination": {"type": "number", "number": destination}},
    )


def mute_command(muted: bool) -> ControlCommand:
    control = "mute-assistant" if muted else "unmute-assistant"
    kind = ControlKind.MUTE if muted else ControlKind.UNMUTE
    return ControlCommand(kind, {"type": "control", "control": control})


def end_command() -> ControlCommand:
    return ControlCommand(ControlKind.END, {"type": "end-call"})


def derive_control_url(listen_url: str | None) -> str | None:
    """Turn a monitor listen URL into the matching control URL.

    ``wss://host/<...>/listen/<...>`` becomes ``https://host/<...>/control/<...>``:
    the websocket scheme maps to its HTTP counterpart and the last ``listen``
    path segment is replaced by ``control``. Returns ``None`` when the URL has
    no ``listen`` segment.
    """

    if not listen_url:
        return None
    parts = urlsplit(listen_url.strip())
    if not parts.netloc:
        return None
    segments = parts.path.split("/")
    for index in range(len(segments) - 1, -1, -1):
        if segments[index] == "listen":
            segments[index] = "control"
            break
    else:
        return None
    scheme = _SCHEME_MAP.get(parts.scheme.lower(), parts.scheme.lower())
    return urlunsplit((scheme, parts.netloc, "/".join(segments), parts.query, ""))


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparseable provider timestamp %r", value)
        return None


@dataclass(slots=True)
class ProviderCall:
    """Point-in-time snapshot of a provider call."""

    external_call_id: str
    status: str | None = None
    call_type: str | None = None
    customer_number: str | None = None
    listen_url: str | None = None
    control_url: str | None = None
    ended_reason: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def ended(self) -> bool:
        return (self.status or "").lower() == "ended"

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "ProviderCall":
        monitor = data.get("monitor") or {}
        customer = data.get("customer") or {}
        listen_url = monitor.get("listenUrl")
        control_url = monitor.get("controlUrl") or derive_control_url(listen_url)
        messages = data.get("messages") or (data.get("artifact") or {}).get("messages") or []
        return cls(
            external_call_id=str(data.get("id") or ""),
            status=data.get("status"),
            call_type=data.get("type"),
            customer_number=customer.get("number"),
            listen_url=listen_url,
            control_url=control_url,
            ended_reason=data.get("endedReason"),
            started_at=_parse_timestamp(data.get("startedAt")),
            ended_at=_parse_timestamp(data.get("endedAt")),
            messages=list(messages) if isinstance(messages, list) else [],
            raw=data,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.external_call_id,
            "status": self.status,
            "type": self.call_type,
            "listenUrl": self.listen_url,
            "controlUrl": self.control_url,
            "endedReason": self.ended_reason,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    message = body.get("message") if isinstance(body, dict) else None
    if isinstance(message, list):
        message = "; ".join(str(item) for item in message)
    return str(message or response.reason_phrase)


class VoiceProviderClient:
    """Async client for the provider's REST API and per-call control endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        assistant_id: str,
        phone_number_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._assistant_id = assistant_id
        self._phone_number_id = phone_number_id
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Voice provider request %s %s failed: %s", method, url, exc)
            raise ProviderUnavailableError(f"Voice provider request failed: {exc}") from exc
        if response.status_code >= 500:
            logger.error("Voice provider %s %s returned %s", method, url, response.status_code)
            raise ProviderUnavailableError(f"Voice provider error: {_error_message(response)}")
        return response

    async def create_call(self, phone_number: str, *, metadata: dict[str, Any] | None = None) -> ProviderCall:
        """Place an outbound call; returns as soon as the provider accepted it."""

        payload = {
            "assistantId": self._assistant_id,
            "phoneNumberId": self._phone_number_id,
            "customer": {"number": phone_number},
            "metadata": metadata or {},
        }
        logger.info("Creating provider call to %s", phone_number)
        response = await self._request("POST", "/call/phone", json=payload)
        if response.status_code in (401, 403):
            raise ProviderUnavailableError("Voice provider rejected our credentials")
        if response.status_code >= 400:
            raise InvalidDestinationError(_error_message(response))
        call = ProviderCall.from_payload(response.json())
        if not call.external_call_id:
            raise ProviderUnavailableError("Voice provider response did not include a call id")
        return call

    async def get_call_details(self, external_call_id: str) -> ProviderCall:
        """Fetch the provider's current view of a call."""

        response = await self._request("GET", f"/call/{external_call_id}")
        if response.status_code == 404:
            raise NotFoundError(f"Provider call {external_call_id} not found")
        if response.status_code >= 400:
            raise ProviderUnavailableError(_error_message(response))
        return ProviderCall.from_payload(response.json())

    async def send_control_command(self, control_url: str, command: ControlCommand) -> dict[str, Any]:
        """Post a command to a live call's control endpoint."""

        try:
            response = await self._client.post(control_url, json=command.payload)
        except httpx.HTTPError as exc:
            logger.warning("Control command %s to %s failed: %s", command.kind.value, control_url, exc)
            raise ControlEndpointUnavailableError(f"Control endpoint unreachable: {exc}") from exc

        if response.status_code in (404, 410):
            raise ControlEndpointGoneError()
        if response.status_code >= 500:
            raise ControlEndpointUnavailableError(f"Control endpoint error: {_error_message(response)}")
        if response.status_code >= 400:
            raise CallValidationError(_error_message(response))
        if not response.content:
            return {"ok": True}
        try:
            body = response.json()
        except ValueError:
            return {"ok": True}
        return body if isinstance(body, dict) else {"ok": True, "result": body}


def build_provider_client(transport: httpx.AsyncBaseTransport | None = None) -> VoiceProviderClient:
    """Create a provider client from application settings."""

    return VoiceProviderClient(
        base_url=settings.vapi_base_url,
        api_key=settings.vapi_api_key,
        assistant_id=settings.vapi_assistant_id,
        phone_number_id=settings.vapi_phone_number_id,
        timeout=settings.vapi_timeout_seconds,
        transport=transport,
    )
