"""Event relay: provider webhooks and client actions become room-scoped broadcasts.

Every event for one provider call is applied under that call's key lock, in
the order it reached :meth:`EventRelay.ingest`. Persisted status changes go
through conditional updates, so a duplicate ``call-ended`` or a late
``call-started`` matches no row and is dropped without a broadcast.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..core.config import settings
from ..core.errors import CallAlreadyAnsweredError, InvalidDestinationError, NotFoundError
from ..db.session import SessionFactory
from ..models.call import Call, CallDirection, CallStatus
from ..models.lead import Lead
from ..models.user import AgentStatus
from ..repositories import calls as calls_repo
from ..repositories import leads as leads_repo
from ..repositories import users as users_repo
from ..schemas.webhooks import WebhookEvent, WebhookEventType, parse_webhook
from .call_state import can_transition, is_terminal, status_for_ended_reason, status_for_provider_status
from .events import AGENT_ROOM, AGENT_STATUS_ROOMS, Connection, EventBus, call_room, role_room
from .phone import normalize_phone
from .provider import ProviderCall, derive_control_url
from .session_registry import CallSession, Resolution
from .tracker import CallSessionTracker

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent, str], Awaitable[None]]

CALL_ROOM_PREFIX = "call:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _seconds_between(start: datetime | None, end: datetime | None) -> int:
    start, end = _as_utc(start), _as_utc(end)
    if start is None or end is None:
        return 0
    return max(0, round((end - start).total_seconds()))


def normalize_transcript(entries: list[Any]) -> list[dict[str, str]]:
    """Coerce provider message lists into ``[{role, content}]``, dropping empty lines."""

    normalized: list[dict[str, str]] = []
    for entry in entries:
        if isinstance(entry, str):
            role, content = "assistant", entry
        elif isinstance(entry, dict):
            role = entry.get("role") or "assistant"
            content = entry.get("content") or entry.get("message") or entry.get("text") or ""
        else:
            continue
        if role == "bot":
            role = "assistant"
        if isinstance(content, str) and content.strip():
            normalized.append({"role": role, "content": content.strip()})
    return normalized


class EventRelay:
    """Apply provider events to the call store and fan them out to subscribers."""

    def __init__(self, bus: EventBus, tracker: CallSessionTracker, session_factory: SessionFactory) -> None:
        self.bus = bus
        self.tracker = tracker
        self.locks = tracker.locks
        self._session_factory = session_factory
        self._handlers: dict[WebhookEventType, Handler] = {
            WebhookEventType.CALL_STARTED: self._on_call_started,
            WebhookEventType.CALL_ENDED: self._on_call_ended,
            WebhookEventType.TRANSCRIPT: self._on_transcript,
            WebhookEventType.SPEECH_UPDATE: self._on_speech_update,
        }
        tracker.observer = self

    # -- webhook ingress -----------------------------------------------------

    async def ingest(self, body: Any) -> bool:
        """Apply one webhook body. Returns False when it was ignored; never raises."""

        event = parse_webhook(body)
        if event is None:
            logger.info("Ignoring malformed webhook body")
            return False
        kind = event.kind
        if kind is None:
            logger.info("Unhandled webhook event: %s", event.type)
            return False
        external_call_id = event.external_call_id
        if not external_call_id:
            logger.info("Ignoring %s webhook without call id", event.type)
            return False

        handler = self._handlers[kind]
        async with self.locks.hold(external_call_id):
            try:
                await handler(event, external_call_id)
            except Exception:  # noqa: BLE001 - ingestion must always acknowledge
                logger.exception("Webhook %s for call %s failed", event.type, external_call_id)
                return False
        return True

    async def _on_call_started(self, event: WebhookEvent, external_call_id: str) -> None:
        assert event.call is not None
        async with self._session_factory() as db:
            call = await calls_repo.get_by_external_id(db, external_call_id)
        if call is None:
            if event.call.is_inbound:
                await self._start_inbound(event, external_call_id)
            else:
                logger.info("call-started for unknown call %s ignored", external_call_id)
            return

        await self._connect(
            external_call_id,
            answered_at=_as_utc(event.call.started_at) or _utcnow(),
            listen_url=event.call.listen_url,
            control_url=event.call.control_url,
            source="webhook",
        )

    async def _start_inbound(self, event: WebhookEvent, external_call_id: str) -> None:
        assert event.call is not None
        raw_number = event.call.customer_number or ""
        try:
            phone = normalize_phone(raw_number, settings.default_country_code)
        except InvalidDestinationError:
            phone = raw_number or "unknown"

        lead = await self._match_lead(phone)
        answered_at = _as_utc(event.call.started_at) or _utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                call = await calls_repo.create_call(
                    db,
                    direction=CallDirection.INBOUND,
                    phone=phone,
                    status=CallStatus.IN_PROGRESS,
                    lead_id=lead.id if lead else None,
                    campaign_id=lead.campaign_id if lead else None,
                    external_call_id=external_call_id,
                    started_at=answered_at,
                    answered_at=answered_at,
                )
                call_id = call.id

        session = self.tracker.track(
            external_call_id,
            call_id,
            status=CallStatus.IN_PROGRESS,
            listen_url=event.call.listen_url,
            control_url=event.call.control_url,
        )
        session.announced = True
        session.announced_control_url = session.control_url
        logger.info("Inbound call %s from %s (lead %s)", external_call_id, phone, lead.id if lead else None)
        await self.bus.publish(
            AGENT_ROOM,
            "call:inbound",
            {
                "callId": call_id,
                "externalCallId": external_call_id,
                "phone": phone,
                "matchedLead": self._lead_summary(lead),
                "listenUrl": session.listen_url,
                "controlUrl": session.control_url,
            },
        )

    async def _match_lead(self, phone: str) -> Lead | None:
        """Best-effort lead lookup; a failed lookup must not fail the inbound flow."""

        try:
            async with self._session_factory() as db:
                return await leads_repo.find_by_phone(db, phone)
        except Exception:  # noqa: BLE001 - unmatched is a valid outcome
            logger.warning("Lead lookup for %s failed; continuing unmatched", phone, exc_info=True)
            return None

    @staticmethod
    def _lead_summary(lead: Lead | None) -> dict[str, Any] | None:
        if lead is None:
            return None
        return {
            "id": lead.id,
            "firstName": lead.first_name,
            "lastName": lead.last_name,
            "phone": lead.phone,
            "campaignId": lead.campaign_id,
        }

    async def _connect(
        self,
        external_call_id: str,
        *,
        answered_at: datetime,
        listen_url: str | None,
        control_url: str | None,
        source: str,
    ) -> None:
        """Move a known call to in-progress and announce it (caller holds the key lock)."""

        async with self._session_factory() as db:
            async with db.begin():
                call = await calls_repo.get_by_external_id(db, external_call_id)
                if call is None:
                    return
                accepted = await calls_repo.transition_status(
                    db,
                    call.id,
                    CallStatus.IN_PROGRESS,
                    values={"answered_at": answered_at},
                    event_data={"source": source},
                )
                status = CallStatus.IN_PROGRESS if accepted else call.status
                call_id, agent_id = call.id, call.agent_id

        if is_terminal(status):
            logger.debug("Late call-started for %s in status %s dropped", external_call_id, status.value)
            return

        session = self.tracker.get(external_call_id)
        if session is None:
            session = self.tracker.track(
                external_call_id,
                call_id,
                status=status,
                agent_id=agent_id,
                listen_url=listen_url,
                control_url=control_url,
            )
        else:
            session.status = status
            resolved_url = control_url or derive_control_url(listen_url)
            if resolved_url and resolved_url != session.control_url:
                self.tracker.resolve_endpoint(session, listen_url=listen_url, control_url=control_url)

        if not accepted and session.announced and session.announced_control_url == session.control_url:
            logger.debug("Duplicate call-started for %s", external_call_id)
            return
        session.announced = True
        session.announced_control_url = session.control_url
        await self.bus.publish(
            call_room(call_id),
            "call:connected",
            {
                "callId": call_id,
                "externalCallId": external_call_id,
                "status": status.value,
                "listenUrl": session.listen_url,
                "controlUrl": session.control_url,
            },
        )

    async def _on_call_ended(self, event: WebhookEvent, external_call_id: str) -> None:
        assert event.call is not None
        await self._apply_end(
            external_call_id,
            reason=event.call.ended_reason or event.ended_reason,
            started_at=event.call.started_at,
            ended_at=event.call.ended_at,
        )

    async def _apply_end(
        self,
        external_call_id: str,
        *,
        reason: str | None,
        started_at: datetime | None,
        ended_at: datetime | None,
    ) -> None:
        """Persist the terminal state once and broadcast ``call:ended`` (caller holds the key lock)."""

        started_at, ended_at = _as_utc(started_at), _as_utc(ended_at) or _utcnow()
        agent_freed = False
        async with self._session_factory() as db:
            async with db.begin():
                call = await calls_repo.get_by_external_id(db, external_call_id)
                if call is None:
                    logger.info("call-ended for unknown call %s ignored", external_call_id)
                    return
                if call.ended_at is not None or (is_terminal(call.status) and call.status is not CallStatus.TRANSFERRED):
                    logger.debug("Duplicate call-ended for %s ignored", external_call_id)
                    self._retire_session(external_call_id, call.status)
                    return

                answered = call.answered_at is not None or call.status in (
                    CallStatus.IN_PROGRESS,
                    CallStatus.TRANSFERRED,
                )
                if call.status is CallStatus.TRANSFERRED:
                    status = CallStatus.TRANSFERRED
                else:
                    status = status_for_ended_reason(reason, answered=answered)
                    if not can_transition(call.status, status):
                        status = CallStatus.COMPLETED
                duration = _seconds_between(started_at or call.started_at, ended_at)
                answered_ref = call.answered_at or started_at
                talk_time = _seconds_between(answered_ref, ended_at) if answered else 0

                recorded = await calls_repo.record_end(
                    db,
                    call.id,
                    expected_status=call.status,
                    status=status,
                    ended_at=ended_at,
                    duration=duration,
                    talk_time=talk_time,
                    reason=reason,
                )
                if not recorded:
                    logger.debug("call-ended for %s lost the conditional update", external_call_id)
                    return
                call_id, agent_id = call.id, call.agent_id
                if agent_id:
                    agent_freed = await users_repo.set_status(
                        db, agent_id, AgentStatus.AVAILABLE, unless=(AgentStatus.OFFLINE,)
                    )

        self._retire_session(external_call_id, status)
        logger.info("Call %s ended: %s after %ss (%s)", external_call_id, status.value, duration, reason)
        await self.bus.publish(
            call_room(call_id),
            "call:ended",
            {
                "callId": call_id,
                "externalCallId": external_call_id,
                "status": status.value,
                "duration": duration,
                "talkTime": talk_time,
                "reason": reason,
            },
        )
        if agent_freed:
            await self.bus.publish(
                AGENT_STATUS_ROOMS,
                "agent:statusChanged",
                {"agentId": agent_id, "status": AgentStatus.AVAILABLE.value},
            )

    def _retire_session(self, external_call_id: str, status: CallStatus) -> None:
        session = self.tracker.get(external_call_id)
        if session is None:
            return
        if session.resolution is Resolution.ENDED:
            session.status = status
        else:
            self.tracker.mark_ended(session, status)

    async def _on_transcript(self, event: WebhookEvent, external_call_id: str) -> None:
        session = self.tracker.get(external_call_id)
        if session is None:
            logger.debug("Transcript for untracked call %s dropped", external_call_id)
            return
        if (event.transcript_type or "").lower() == "partial":
            return

        if isinstance(event.transcript, list):
            session.transcript = normalize_transcript(event.transcript)
        elif isinstance(event.transcript, str) and event.transcript.strip():
            session.transcript.append({"role": event.role or "assistant", "content": event.transcript.strip()})
        else:
            return

        await self.bus.publish(
            call_room(session.call_id),
            "call:transcript",
            {
                "callId": session.call_id,
                "externalCallId": external_call_id,
                "transcript": list(session.transcript),
            },
        )

    async def _on_speech_update(self, event: WebhookEvent, external_call_id: str) -> None:
        session = self.tracker.get(external_call_id)
        if session is None:
            return
        await self.bus.publish(
            call_room(session.call_id),
            "call:speech",
            {
                "callId": session.call_id,
                "externalCallId": external_call_id,
                "role": event.role,
                "status": event.status,
            },
        )

    # -- tracker callbacks (key lock held) -----------------------------------

    async def on_endpoint_resolved(self, session: CallSession) -> None:
        await self._connect(
            session.external_call_id,
            answered_at=_utcnow(),
            listen_url=session.listen_url,
            control_url=session.control_url,
            source="poll",
        )

    async def on_provider_progress(self, session: CallSession, details: ProviderCall) -> None:
        target = status_for_provider_status(details.status)
        if target is not CallStatus.RINGING or not can_transition(session.status, target):
            return
        async with self._session_factory() as db:
            async with db.begin():
                accepted = await calls_repo.transition_status(
                    db, session.call_id, target, event_data={"source": "poll"}
                )
        if accepted:
            session.status = target

    async def on_provider_ended(self, session: CallSession, details: ProviderCall) -> None:
        await self._apply_end(
            session.external_call_id,
            reason=details.ended_reason,
            started_at=details.started_at,
            ended_at=details.ended_at,
        )

    # -- control-plane bookkeeping -------------------------------------------

    async def record_transfer(self, call: Call, destination: str, transferred_by: str) -> bool:
        """Mark a call transferred after the provider accepted the command."""

        external_call_id = call.external_call_id or ""
        async with self.locks.hold(external_call_id):
            async with self._session_factory() as db:
                async with db.begin():
                    accepted = await calls_repo.transition_status(
                        db,
                        call.id,
                        CallStatus.TRANSFERRED,
                        values={"transferred_to": destination, "transferred_by": transferred_by},
                        event_data={"to": destination, "by": transferred_by},
                    )
            if not accepted:
                logger.info("Transfer of %s not recorded: call is no longer in progress", call.id)
                return False
            self._retire_session(external_call_id, CallStatus.TRANSFERRED)
            await self.bus.publish(
                call_room(call.id),
                "call:transferred",
                {
                    "callId": call.id,
                    "externalCallId": call.external_call_id,
                    "destination": destination,
                    "by": transferred_by,
                },
            )
        return True

    # -- client subscriptions ------------------------------------------------

    async def attach(self, connection: Connection) -> None:
        """Join a freshly connected client to its role room."""

        if connection.role:
            await self.bus.subscribe(connection, role_room(connection.role))

    async def join_call(self, connection: Connection, call_id: str) -> CallSession | None:
        """Subscribe a client to ``call:<call_id>``."""

        room = call_room(call_id)
        await self.bus.subscribe(connection, room)
        return await self._sync_listeners(call_id)

    async def answer_call(self, connection: Connection, call_id: str) -> CallSession | None:
        """Claim an unowned inbound call for the connected agent; the first claim wins."""

        agent_id = connection.user_id
        if not agent_id or connection.role != "agent":
            raise ValueError("Only agents can answer calls")
        async with self._session_factory() as db:
            call = await calls_repo.get_by_id(db, call_id)
        if call is None:
            raise NotFoundError(f"Call {call_id} not found")

        async with self.locks.hold(call.external_call_id or call.id):
            async with self._session_factory() as db:
                async with db.begin():
                    if not await calls_repo.claim_call(db, call_id, agent_id):
                        raise CallAlreadyAnsweredError()
                    on_call = await users_repo.set_status(db, agent_id, AgentStatus.ON_CALL)
            session = self.tracker.find_by_call_id(call_id)
            if session is not None:
                session.agent_id = agent_id

        logger.info("Agent %s answered call %s", agent_id, call_id)
        await self.bus.subscribe(connection, call_room(call_id))
        session = await self._sync_listeners(call_id)
        await self.bus.publish(AGENT_STATUS_ROOMS, "call:answered", {"callId": call_id, "agentId": agent_id})
        if on_call:
            await self.bus.publish(
                AGENT_STATUS_ROOMS,
                "agent:statusChanged",
                {"agentId": agent_id, "status": AgentStatus.ON_CALL.value, "callId": call_id},
            )
        return session

    async def leave_call(self, connection: Connection, call_id: str) -> None:
        await self.bus.unsubscribe(connection.connection_id, call_room(call_id))
        await self._sync_listeners(call_id)

    async def detach(self, connection: Connection) -> None:
        """Drop every room membership of a departing client."""

        rooms = await self.bus.unsubscribe_all(connection.connection_id)
        for room in rooms:
            if room.startswith(CALL_ROOM_PREFIX):
                await self._sync_listeners(room[len(CALL_ROOM_PREFIX):])

    async def _sync_listeners(self, call_id: str) -> CallSession | None:
        session = self.tracker.find_by_call_id(call_id)
        if session is None:
            return None
        async with self.locks.hold(session.external_call_id):
            self.tracker.update_listeners(session, self.bus.room_size(call_room(call_id)))
        return session
