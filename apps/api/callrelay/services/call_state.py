"""Call lifecycle state machine.

Statuses only move forward: ``initiated -> ringing -> in-progress -> terminal``.
A call may skip ``ringing`` and may end from any non-terminal status, but
``transferred`` is only reachable from ``in-progress`` and nothing leaves a
terminal status.
"""
from __future__ import annotations

from ..models.call import CallStatus

TERMINAL_STATUSES: frozenset[CallStatus] = frozenset(
    {
        CallStatus.COMPLETED,
        CallStatus.FAILED,
        CallStatus.NO_ANSWER,
        CallStatus.BUSY,
        CallStatus.TRANSFERRED,
    }
)

ACTIVE_STATUSES: tuple[CallStatus, ...] = (
    CallStatus.INITIATED,
    CallStatus.RINGING,
    CallStatus.IN_PROGRESS,
)

_TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.INITIATED: frozenset(
        {
            CallStatus.RINGING,
            CallStatus.IN_PROGRESS,
            CallStatus.COMPLETED,
            CallStatus.FAILED,
            CallStatus.NO_ANSWER,
            CallStatus.BUSY,
        }
    ),
    CallStatus.RINGING: frozenset(
        {
            CallStatus.IN_PROGRESS,
            CallStatus.COMPLETED,
            CallStatus.FAILED,
            CallStatus.NO_ANSWER,
            CallStatus.BUSY,
        }
    ),
    CallStatus.IN_PROGRESS: frozenset(
        {
            CallStatus.TRANSFERRED,
            CallStatus.COMPLETED,
            CallStatus.FAILED,
        }
    ),
}


def is_terminal(status: CallStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Return True if moving from ``current`` to ``target`` is a forward step."""

    return target in _TRANSITIONS.get(current, frozenset())


def allowed_sources(target: CallStatus) -> list[CallStatus]:
    """Statuses from which ``target`` may be entered, used for conditional updates."""

    return [source for source, targets in _TRANSITIONS.items() if target in targets]


def status_for_ended_reason(reason: str | None, *, answered: bool) -> CallStatus:
    """Map the provider's ``endedReason`` onto a terminal status.

    Once the far end answered, only ``completed``, ``failed`` and ``transferred``
    are meaningful.
    """

    lowered = (reason or "").lower()
    if "forward" in lowered or "transfer" in lowered:
        return CallStatus.TRANSFERRED if answered else CallStatus.COMPLETED
    if "error" in lowered or "failed" in lowered or "fault" in lowered:
        return CallStatus.FAILED
    if not answered:
        if "busy" in lowered:
            return CallStatus.BUSY
        if "did-not-answer" in lowered or "no-answer" in lowered or "voicemail" in lowered:
            return CallStatus.NO_ANSWER
    return CallStatus.COMPLETED


def status_for_provider_status(provider_status: str | None) -> CallStatus | None:
    """Map a provider call status (``queued``, ``ringing``...) to a non-terminal status."""

    mapping = {
        "queued": CallStatus.INITIATED,
        "ringing": CallStatus.RINGING,
        "in-progress": CallStatus.IN_PROGRESS,
        "forwarding": CallStatus.IN_PROGRESS,
    }
    return mapping.get((provider_status or "").lower())
