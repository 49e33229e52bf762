"""Call session tracking and control-endpoint resolution.

A provider call only publishes its control endpoint once the far end answers.
Until then the tracker polls the provider on a fixed interval and gives up
once ``max_attempts * poll_interval`` has elapsed, even mid-fetch. It queues
at most one control command per call (latest wins) and replays it the moment
the endpoint appears. Every mutation of a session runs under that
call's key in the shared :class:`KeyedLock`.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Protocol

from ..core.errors import (
    CallControlError,
    CommandSupersededError,
    ControlEndpointGoneError,
    ControlEndpointUnavailableError,
    NoControlEndpointError,
)
from ..models.call import CallStatus
from .call_state import is_terminal
from .provider import ControlCommand, ProviderCall, VoiceProviderClient, derive_control_url
from .session_registry import CallSession, KeyedLock, PendingCommand, Resolution, SessionRegistry

logger = logging.getLogger(__name__)


class SessionObserver(Protocol):
    """Callbacks invoked with the call's key lock already held."""

    async def on_endpoint_resolved(self, session: CallSession) -> None: ...

    async def on_provider_progress(self, session: CallSession, details: ProviderCall) -> None: ...

    async def on_provider_ended(self, session: CallSession, details: ProviderCall) -> None: ...


class CallSessionTracker:
    """Own the external-call-id -> session map and its background timers."""

    def __init__(
        self,
        provider: VoiceProviderClient,
        registry: SessionRegistry,
        locks: KeyedLock,
        *,
        poll_interval: float = 2.0,
        max_attempts: int = 30,
        retry_backoff: float = 0.5,
        grace_seconds: float = 30.0,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.locks = locks
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.grace_seconds = grace_seconds
        self.observer: SessionObserver | None = None
        self._replays: set[asyncio.Task] = set()

    # -- lookup -------------------------------------------------------------

    def get(self, external_call_id: str) -> CallSession | None:
        return self.registry.get(external_call_id)

    def find_by_call_id(self, call_id: str) -> CallSession | None:
        return self.registry.find_by_call_id(call_id)

    def sessions(self) -> list[CallSession]:
        return list(self.registry)

    # -- lifecycle (caller holds the key lock) -------------------------------

    def track(
        self,
        external_call_id: str,
        call_id: str,
        *,
        status: CallStatus = CallStatus.INITIATED,
        agent_id: str | None = None,
        listen_url: str | None = None,
        control_url: str | None = None,
        poll: bool = True,
    ) -> CallSession:
        """Register a session, resolving immediately or starting the endpoint poll."""

        session = self.registry.get(external_call_id)
        if session is None:
            session = CallSession(
                external_call_id=external_call_id,
                call_id=call_id,
                status=status,
                agent_id=agent_id,
            )
            self.registry.put(session)

        control_url = control_url or derive_control_url(listen_url)
        if control_url:
            session.listen_url = listen_url
            session.control_url = control_url
            session.resolution = Resolution.RESOLVED
        elif poll and session.poll_task is None and session.resolution is Resolution.PENDING:
            session.poll_task = asyncio.create_task(
                self._poll_for_endpoint(external_call_id), name=f"resolve-{external_call_id}"
            )
        return session

    def resolve_endpoint(
        self,
        session: CallSession,
        *,
        listen_url: str | None,
        control_url: str | None = None,
    ) -> bool:
        """Store the control endpoint and replay any queued command."""

        control_url = control_url or derive_control_url(listen_url)
        if not control_url or session.resolution is Resolution.ENDED:
            return False
        session.listen_url = listen_url or session.listen_url
        session.control_url = control_url
        session.resolution = Resolution.RESOLVED
        self._cancel_poll(session)

        pending, session.pending = session.pending, None
        if pending is not None and not pending.future.done():
            logger.info("Replaying queued %s for call %s", pending.command.kind.value, session.external_call_id)
            task = asyncio.create_task(self._replay(session, control_url, pending))
            self._replays.add(task)
            task.add_done_callback(self._replays.discard)
        return True

    def mark_ended(self, session: CallSession, status: CallStatus) -> None:
        """Retire a session's endpoint once the call reaches a terminal status."""

        session.status = status
        never_connected = session.resolution is not Resolution.RESOLVED
        session.resolution = Resolution.ENDED
        session.control_url = None
        self._cancel_poll(session)
        pending, session.pending = session.pending, None
        if pending is not None and not pending.future.done():
            error: CallControlError = NoControlEndpointError() if never_connected else ControlEndpointGoneError()
            pending.future.set_exception(error)
        self._schedule_release(session)

    def update_listeners(self, session: CallSession, count: int) -> None:
        """Record the call room's subscriber count; an ended call with none left is released."""

        session.listeners = max(0, count)
        if session.listeners == 0 and session.resolution is Resolution.ENDED:
            self._drop(session)

    # -- control commands ----------------------------------------------------

    async def dispatch(self, external_call_id: str, command: ControlCommand) -> dict[str, Any]:
        """Send a command to the call's endpoint, queueing it while resolution runs."""

        async with self.locks.hold(external_call_id):
            session = self.registry.get(external_call_id)
            if session is None:
                raise NoControlEndpointError()
            if session.resolution is Resolution.ENDED or is_terminal(session.status):
                raise ControlEndpointGoneError()
            if session.resolution is Resolution.UNAVAILABLE:
                raise NoControlEndpointError()
            if session.resolution is Resolution.RESOLVED and session.control_url:
                control_url = session.control_url
                future = None
            else:
                future = asyncio.get_running_loop().create_future()
                previous, session.pending = session.pending, PendingCommand(command=command, future=future)
                if previous is not None and not previous.future.done():
                    previous.future.set_exception(CommandSupersededError())
                logger.info("Queued %s for call %s until it connects", command.kind.value, external_call_id)

        if future is not None:
            return await future
        return await self.send(control_url, command, external_call_id=external_call_id)

    async def send(
        self,
        control_url: str,
        command: ControlCommand,
        *,
        external_call_id: str | None = None,
    ) -> dict[str, Any]:
        """Post a command, retrying once after a transient failure."""

        try:
            try:
                return await self.provider.send_control_command(control_url, command)
            except ControlEndpointUnavailableError:
                logger.warning("Retrying %s after transient control failure", command.kind.value)
                await asyncio.sleep(self.retry_backoff)
                return await self.provider.send_control_command(control_url, command)
        except ControlEndpointGoneError:
            if external_call_id is not None:
                async with self.locks.hold(external_call_id):
                    session = self.registry.get(external_call_id)
                    if session is not None and session.control_url == control_url:
                        self.mark_ended(session, session.status)
            raise

    async def _replay(self, session: CallSession, control_url: str, pending: PendingCommand) -> None:
        try:
            result = await self.send(control_url, pending.command, external_call_id=session.external_call_id)
        except Exception as exc:  # noqa: BLE001 - delivered to the waiting caller
            if not pending.future.done():
                pending.future.set_exception(exc)
            return
        if not pending.future.done():
            pending.future.set_result(result)

    # -- endpoint resolution poll --------------------------------------------

    async def _poll_for_endpoint(self, external_call_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_interval * self.max_attempts
        for attempt in range(1, self.max_attempts + 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                details = await asyncio.wait_for(
                    self.provider.get_call_details(external_call_id), timeout=remaining
                )
            except asyncio.TimeoutError:
                logger.info("Endpoint poll %s for %s ran past the resolution deadline", attempt, external_call_id)
                break
            except CallControlError as exc:
                logger.debug("Endpoint poll %s/%s for %s failed: %s", attempt, self.max_attempts, external_call_id, exc)
            else:
                async with self.locks.hold(external_call_id):
                    session = self.registry.get(external_call_id)
                    if session is None or session.resolution is not Resolution.PENDING:
                        return
                    if details.control_url:
                        session.poll_task = None
                        self.resolve_endpoint(session, listen_url=details.listen_url, control_url=details.control_url)
                        logger.info("Control endpoint for %s resolved after %s polls", external_call_id, attempt)
                        await self._notify("on_endpoint_resolved", session)
                        return
                    if details.ended:
                        session.poll_task = None
                        logger.info("Call %s ended before connecting", external_call_id)
                        await self._notify("on_provider_ended", session, details)
                        if session.resolution is not Resolution.ENDED:
                            self.mark_ended(session, session.status)
                        return
                    await self._notify("on_provider_progress", session, details)

            if attempt < self.max_attempts:
                await asyncio.sleep(max(0.0, min(self.poll_interval, deadline - loop.time())))

        async with self.locks.hold(external_call_id):
            session = self.registry.get(external_call_id)
            if session is None or session.resolution is not Resolution.PENDING:
                return
            session.poll_task = None
            session.resolution = Resolution.UNAVAILABLE
            pending, session.pending = session.pending, None
            if pending is not None and not pending.future.done():
                pending.future.set_exception(NoControlEndpointError())
            logger.warning(
                "No control endpoint for %s within %.1fs; control disabled",
                external_call_id,
                self.poll_interval * self.max_attempts,
            )

    async def _notify(self, hook: str, *args: Any) -> None:
        if self.observer is None:
            return
        try:
            await getattr(self.observer, hook)(*args)
        except Exception:  # noqa: BLE001 - a failing observer must not kill the poll
            logger.exception("Session observer %s failed", hook)

    # -- teardown ------------------------------------------------------------

    def _cancel_poll(self, session: CallSession) -> None:
        task, session.poll_task = session.poll_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _schedule_release(self, session: CallSession) -> None:
        if session.listeners == 0 and self.grace_seconds == 0:
            self._drop(session)
            return
        if session.release_task is None:
            session.release_task = asyncio.create_task(
                self._release_after_grace(session.external_call_id), name=f"release-{session.external_call_id}"
            )

    async def _release_after_grace(self, external_call_id: str) -> None:
        await asyncio.sleep(self.grace_seconds)
        async with self.locks.hold(external_call_id):
            session = self.registry.get(external_call_id)
            if session is None:
                return
            session.release_task = None
            # listeners still attached; the last one leaving releases it
            if session.resolution is Resolution.ENDED and session.listeners == 0:
                self._drop(session)

    def _drop(self, session: CallSession) -> None:
        self._cancel_poll(session)
        task, session.release_task = session.release_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if self.registry.get(session.external_call_id) is session:
            self.registry.remove(session.external_call_id)
            logger.debug("Released session for call %s", session.external_call_id)

    async def shutdown(self) -> None:
        """Cancel timers and fail queued commands on application shutdown."""

        tasks: list[asyncio.Task] = list(self._replays)
        for session in list(self.registry):
            for task in (session.poll_task, session.release_task):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
            if session.pending is not None and not session.pending.future.done():
                session.pending.future.set_exception(NoControlEndpointError("Relay is shutting down"))
            self.registry.remove(session.external_call_id)
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
