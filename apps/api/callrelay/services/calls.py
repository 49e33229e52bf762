"""Call control service behind the REST endpoints."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

from ..core.config import settings
from ..core.errors import (
    CallControlError,
    CallValidationError,
    ControlEndpointGoneError,
    NoControlEndpointError,
    NotFoundError,
)
from ..core.security import Principal
from ..db.session import SessionFactory
from ..models.call import Call, CallDirection, CallStatus
from ..models.user import AgentStatus
from ..repositories import calls as calls_repo
from ..repositories import leads as leads_repo
from ..repositories import users as users_repo
from .call_state import is_terminal
from .events import AGENT_STATUS_ROOMS, EventBus
from .phone import normalize_phone
from .provider import (
    ControlCommand,
    ControlKind,
    ProviderCall,
    VoiceProviderClient,
    barge_command,
    end_command,
    mute_command,
    transfer_command,
    whisper_command,
)
from .relay import EventRelay, normalize_transcript
from .session_registry import Resolution
from .tracker import CallSessionTracker

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 200


@dataclass(slots=True)
class InitiatedCall:
    call: Call
    provider_call: ProviderCall
    listen_url: str | None
    control_url: str | None


class CallControlService:
    """Initiate calls, read their state and relay supervisor commands."""

    def __init__(
        self,
        provider: VoiceProviderClient,
        tracker: CallSessionTracker,
        relay: EventRelay,
        bus: EventBus,
        session_factory: SessionFactory,
    ) -> None:
        self.provider = provider
        self.tracker = tracker
        self.relay = relay
        self.bus = bus
        self.locks = tracker.locks
        self._session_factory = session_factory

    async def initiate(
        self,
        principal: Principal,
        *,
        lead_id: str | None,
        phone: str | None,
        campaign_id: str | None,
        agent_id: str | None = None,
    ) -> InitiatedCall:
        """Record an outbound call, ask the provider to dial it, and start tracking."""

        if not campaign_id:
            raise CallValidationError("campaignId is required")
        if not lead_id and not phone:
            raise CallValidationError("phoneNumber or leadId is required")
        agent_id = agent_id or principal.user_id
        if agent_id != principal.user_id and principal.role == "agent":
            raise CallValidationError("Agents can only place calls for themselves")

        async with self._session_factory() as db:
            async with db.begin():
                lead = None
                if lead_id:
                    lead = await leads_repo.get_by_id(db, lead_id)
                    if lead is None:
                        raise NotFoundError(f"Lead {lead_id} not found")
                number = normalize_phone(phone or lead.phone, settings.default_country_code)
                call = await calls_repo.create_call(
                    db,
                    direction=CallDirection.OUTBOUND,
                    phone=number,
                    agent_id=agent_id,
                    lead_id=lead_id,
                    campaign_id=campaign_id,
                )
                if lead is not None:
                    await leads_repo.mark_calling(db, lead)
                call_id = call.id

        try:
            provider_call = await self.provider.create_call(
                number, metadata={"callId": call_id, "leadId": lead_id, "campaignId": campaign_id, "agentId": agent_id}
            )
        except CallControlError as exc:
            logger.warning("Provider refused call %s to %s: %s", call_id, number, exc.message)
            async with self._session_factory() as db:
                async with db.begin():
                    await calls_repo.transition_status(
                        db, call_id, CallStatus.FAILED, values={"ended_reason": exc.code}, event_data={"error": exc.message}
                    )
            raise

        external_call_id = provider_call.external_call_id
        async with self.locks.hold(external_call_id):
            async with self._session_factory() as db:
                async with db.begin():
                    await calls_repo.set_external_id(db, call_id, external_call_id)
                    on_call = await users_repo.set_status(db, agent_id, AgentStatus.ON_CALL)
                async with db.begin():
                    call = await calls_repo.get_by_id(db, call_id)
            session = self.tracker.track(
                external_call_id,
                call_id,
                agent_id=agent_id,
                listen_url=provider_call.listen_url,
                control_url=provider_call.control_url,
            )
            listen_url, control_url = session.listen_url, session.control_url

        logger.info("Call %s placed to %s as %s", call_id, number, external_call_id)
        if on_call:
            await self.bus.publish(
                AGENT_STATUS_ROOMS,
                "agent:statusChanged",
                {"agentId": agent_id, "status": AgentStatus.ON_CALL.value, "callId": call_id},
            )
        return InitiatedCall(call=call, provider_call=provider_call, listen_url=listen_url, control_url=control_url)

    async def get_call(self, call_id: str, principal: Principal | None = None) -> Call:
        async with self._session_factory() as db:
            call = await calls_repo.get_by_id(db, call_id)
        if call is None:
            raise NotFoundError(f"Call {call_id} not found")
        if principal is not None and principal.role == "agent" and call.agent_id not in (None, principal.user_id):
            raise NotFoundError(f"Call {call_id} not found")
        return call

    async def get_status(self, call_id: str, principal: Principal) -> dict[str, Any]:
        """Stored call plus live session and a best-effort provider snapshot."""

        call = await self.get_call(call_id, principal)
        session = self.tracker.find_by_call_id(call_id)
        details: dict[str, Any] | None = None
        if call.external_call_id:
            try:
                details = (await self.provider.get_call_details(call.external_call_id)).as_dict()
            except CallControlError as exc:
                logger.warning("Provider details for %s unavailable: %s", call.external_call_id, exc.message)
        return {
            "call": call,
            "controlEndpoint": session.control_url if session else None,
            "session": session.snapshot() if session else None,
            "provider": details,
        }

    async def transcript(self, call_id: str, principal: Principal) -> list[dict[str, str]]:
        """Live transcript from the session, else the provider's stored messages."""

        call = await self.get_call(call_id, principal)
        session = self.tracker.find_by_call_id(call_id)
        if session is not None and session.transcript:
            return list(session.transcript)
        if not call.external_call_id:
            return []
        try:
            details = await self.provider.get_call_details(call.external_call_id)
        except CallControlError as exc:
            logger.warning("Transcript fetch for %s failed: %s", call.external_call_id, exc.message)
            return []
        return normalize_transcript(details.messages)

    async def listen(self, call_id: str, principal: Principal) -> dict[str, Any]:
        call = await self.get_call(call_id, principal)
        session = self.tracker.find_by_call_id(call_id)
        if call.status is not CallStatus.IN_PROGRESS or session is None or not session.listen_url:
            raise NoControlEndpointError("Call is not live")
        return {
            "callId": call.id,
            "externalCallId": call.external_call_id,
            "listenUrl": session.listen_url,
            "controlUrl": session.control_url,
            "status": call.status.value,
        }

    async def active(self) -> list[dict[str, Any]]:
        async with self._session_factory() as db:
            calls = await calls_repo.list_active(db)
        results = []
        for call in calls:
            session = self.tracker.find_by_call_id(call.id)
            results.append({"call": call, "session": session.snapshot() if session else None})
        return results

    async def list_calls(
        self,
        principal: Principal,
        *,
        status: str | None = None,
        campaign_id: str | None = None,
        limit: int = 50,
    ) -> list[Call]:
        """Recent calls; agents only ever see their own."""

        try:
            status_filter = CallStatus(status) if status else None
        except ValueError as exc:
            raise CallValidationError(f"Unknown call status: {status}") from exc
        agent_id = principal.user_id if principal.role == "agent" else None
        async with self._session_factory() as db:
            return await calls_repo.list_calls(
                db,
                agent_id=agent_id,
                status=status_filter,
                campaign_id=campaign_id,
                limit=max(1, min(limit, MAX_LIST_LIMIT)),
            )

    async def disposition(
        self,
        call_id: str,
        principal: Principal,
        *,
        disposition: str | None,
        notes: str | None = None,
        next_callback: datetime | None = None,
    ) -> Call:
        """Record the wrap-up outcome on the call and its lead."""

        if not disposition:
            raise CallValidationError("disposition is required")
        await self.get_call(call_id, principal)
        if next_callback is not None and next_callback.tzinfo is None:
            next_callback = next_callback.replace(tzinfo=timezone.utc)
        async with self._session_factory() as db:
            async with db.begin():
                call = await calls_repo.update_disposition(db, call_id, disposition=disposition, notes=notes)
                if call is None:
                    raise NotFoundError(f"Call {call_id} not found")
                if call.lead_id:
                    await leads_repo.apply_disposition(
                        db, call.lead_id, disposition=disposition, next_callback_at=next_callback
                    )
        return call

    # -- live control ------------------------------------------------------

    async def whisper(self, call_id: str, message: str | None, principal: Principal, *, control_url: str | None = None):
        if not message or not message.strip():
            raise CallValidationError("message is required")
        logger.info("User %s whispering to call %s", principal.user_id, call_id)
        return await self.send_control(call_id, whisper_command(message.strip()), principal, control_url=control_url)

    async def barge(self, call_id: str, message: str | None, principal: Principal, *, control_url: str | None = None):
        if not message or not message.strip():
            raise CallValidationError("message is required")
        logger.info("User %s barging into call %s", principal.user_id, call_id)
        return await self.send_control(call_id, barge_command(message.strip()), principal, control_url=control_url)

    async def transfer(
        self, call_id: str, destination: str | None, principal: Principal, *, control_url: str | None = None
    ):
        if not destination:
            raise CallValidationError("destination is required")
        number = normalize_phone(destination, settings.default_country_code)
        return await self.send_control(call_id, transfer_command(number), principal, control_url=control_url)

    async def end(self, call_id: str, principal: Principal, *, control_url: str | None = None):
        return await self.send_control(call_id, end_command(), principal, control_url=control_url)

    async def control(
        self, call_id: str, action: str | None, principal: Principal, *, control_url: str | None = None
    ):
        if action == "mute":
            command = mute_command(True)
        elif action == "unmute":
            command = mute_command(False)
        elif action in ("end", "hangup"):
            command = end_command()
        else:
            raise CallValidationError(f"Unsupported control action: {action}")
        return await self.send_control(call_id, command, principal, control_url=control_url)

    async def send_control(
        self,
        call_id: str,
        command: ControlCommand,
        principal: Principal,
        *,
        control_url: str | None = None,
    ) -> dict[str, Any]:
        """Deliver a command to a call, resolving its endpoint first if needed."""

        call = await self.get_call(call_id, principal)
        external_call_id = call.external_call_id
        if not external_call_id:
            raise NoControlEndpointError()
        if control_url:
            self._check_control_host(control_url)

        async with self.locks.hold(external_call_id):
            session = self.tracker.get(external_call_id)
            if session is None:
                if is_terminal(call.status):
                    raise ControlEndpointGoneError()
                details = await self.provider.get_call_details(external_call_id)
                if details.ended:
                    raise ControlEndpointGoneError()
                session = self.tracker.track(
                    external_call_id,
                    call.id,
                    status=call.status,
                    agent_id=call.agent_id,
                    listen_url=details.listen_url,
                    control_url=details.control_url,
                )
            if control_url and session.resolution is Resolution.PENDING:
                self.tracker.resolve_endpoint(session, listen_url=session.listen_url, control_url=control_url)

        result = await self.tracker.dispatch(external_call_id, command)
        logger.info("Sent %s to call %s for %s", command.kind.value, call_id, principal.user_id)

        if command.kind is ControlKind.TRANSFER:
            destination = command.payload["destination"]["number"]
            await self.relay.record_transfer(call, destination, principal.user_id)
        return {"success": True, "callId": call_id, "command": command.kind.value, "result": result}

    @staticmethod
    def _check_control_host(control_url: str) -> None:
        host = (urlsplit(control_url).hostname or "").lower()
        provider_host = (urlsplit(settings.vapi_base_url).hostname or "").lower()
        domain = ".".join(provider_host.split(".")[-2:])
        if not host or not domain or not (host == domain or host.endswith(f".{domain}")):
            raise CallValidationError("controlUrl does not belong to the voice provider")
