"""Process-wide service graph, built once per application lifespan."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request, WebSocket

from ..core.config import Settings
from ..db.session import SessionFactory
from .calls import CallControlService
from .events import EventBus
from .presence import PresenceTracker
from .provider import VoiceProviderClient
from .relay import EventRelay
from .session_registry import InMemorySessionRegistry, KeyedLock, SessionRegistry
from .tracker import CallSessionTracker


@dataclass
class Runtime:
    provider: VoiceProviderClient
    bus: EventBus
    tracker: CallSessionTracker
    relay: EventRelay
    presence: PresenceTracker
    calls: CallControlService

    async def aclose(self) -> None:
        await self.tracker.shutdown()
        await self.provider.aclose()


def build_runtime(
    settings: Settings,
    provider: VoiceProviderClient,
    session_factory: SessionFactory,
    *,
    registry: SessionRegistry | None = None,
) -> Runtime:
    """Wire the relay services around one bus, one lock table and one session map."""

    bus = EventBus()
    tracker = CallSessionTracker(
        provider,
        registry or InMemorySessionRegistry(),
        KeyedLock(),
        poll_interval=settings.control_poll_interval_seconds,
        max_attempts=settings.control_poll_max_attempts,
        retry_backoff=settings.control_retry_backoff_seconds,
        grace_seconds=settings.session_grace_seconds,
    )
    relay = EventRelay(bus, tracker, session_factory)
    presence = PresenceTracker(bus, session_factory)
    calls = CallControlService(provider, tracker, relay, bus, session_factory)
    return Runtime(provider=provider, bus=bus, tracker=tracker, relay=relay, presence=presence, calls=calls)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_call_service(request: Request) -> CallControlService:
    return get_runtime(request).calls


def get_ws_runtime(websocket: WebSocket) -> Runtime:
    return websocket.app.state.runtime
