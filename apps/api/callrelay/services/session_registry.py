"""In-memory registry of live provider call sessions."""
from __future__ import annotations

import asyncio
import enum
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterator, Optional, Protocol

from ..models.call import CallStatus
from .provider import ControlCommand


class Resolution(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    UNAVAILABLE = "endpoint-unavailable"
    ENDED = "ended"


@dataclass
class PendingCommand:
    """A control command waiting for the endpoint to resolve."""

    command: ControlCommand
    future: asyncio.Future


@dataclass
class CallSession:
    """Ephemeral state for one provider call, keyed by its external id."""

    external_call_id: str
    call_id: str
    status: CallStatus = CallStatus.INITIATED
    agent_id: Optional[str] = None
    listen_url: Optional[str] = None
    control_url: Optional[str] = None
    resolution: Resolution = Resolution.PENDING
    listeners: int = 0
    transcript: list[dict[str, str]] = field(default_factory=list)
    pending: Optional[PendingCommand] = None
    poll_task: Optional[asyncio.Task] = None
    release_task: Optional[asyncio.Task] = None
    announced: bool = False
    announced_control_url: Optional[str] = None

    def snapshot(self) -> dict:
        return {
            "externalCallId": self.external_call_id,
            "callId": self.call_id,
            "status": self.status.value,
            "listenUrl": self.listen_url,
            "controlUrl": self.control_url,
            "resolution": self.resolution.value,
            "listeners": self.listeners,
        }


class SessionRegistry(Protocol):
    """Storage seam for call sessions so tests can swap in their own."""

    def get(self, external_call_id: str) -> CallSession | None: ...

    def put(self, session: CallSession) -> None: ...

    def remove(self, external_call_id: str) -> CallSession | None: ...

    def find_by_call_id(self, call_id: str) -> CallSession | None: ...

    def __iter__(self) -> Iterator[CallSession]: ...


class InMemorySessionRegistry:
    """Single-process session map; mutations are serialized per key by the caller."""

    def __init__(self) -> None:
        self._sessions: Dict[str, CallSession] = {}

    def get(self, external_call_id: str) -> CallSession | None:
        return self._sessions.get(external_call_id)

    def put(self, session: CallSession) -> None:
        self._sessions[session.external_call_id] = session

    def remove(self, external_call_id: str) -> CallSession | None:
        return self._sessions.pop(external_call_id, None)

    def find_by_call_id(self, call_id: str) -> CallSession | None:
        for session in self._sessions.values():
            if session.call_id == call_id:
                return session
        return None

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)


class KeyedLock:
    """Per-key FIFO serialization without a global lock.

    Waiters on the same key run in arrival order; unrelated keys never block
    each other. Lock objects are dropped once nobody holds or awaits them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._locks
