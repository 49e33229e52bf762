"""Tests for control-endpoint resolution and command dispatch."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from callrelay.core.errors import (
    CommandSupersededError,
    ControlEndpointGoneError,
    ControlEndpointUnavailableError,
    NoControlEndpointError,
    ProviderUnavailableError,
)
from callrelay.models.call import CallStatus
from callrelay.services.provider import ProviderCall, barge_command, end_command, whisper_command
from callrelay.services.session_registry import InMemorySessionRegistry, KeyedLock, Resolution
from callrelay.services.tracker import CallSessionTracker


class FakeProvider:
    def __init__(self) -> None:
        self.get_call_details = AsyncMock(return_value=ProviderCall(external_call_id="abc", status="queued"))
        self.send_control_command = AsyncMock(return_value={"ok": True})


class RecordingObserver:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def on_endpoint_resolved(self, session) -> None:
        self.calls.append(("resolved", session.external_call_id))

    async def on_provider_progress(self, session, details) -> None:
        self.calls.append(("progress", details.status))

    async def on_provider_ended(self, session, details) -> None:
        self.calls.append(("ended", details.ended_reason))


def make_tracker(provider: FakeProvider, **overrides) -> CallSessionTracker:
    options = {"poll_interval": 0.01, "max_attempts": 3, "retry_backoff": 0, "grace_seconds": 0}
    options.update(overrides)
    return CallSessionTracker(provider, InMemorySessionRegistry(), KeyedLock(), **options)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_resolution_gives_up_after_max_attempts():
    provider = FakeProvider()
    tracker = make_tracker(provider)

    session = tracker.track("abc", "call-1")
    poll = session.poll_task
    assert poll is not None
    await asyncio.wait_for(poll, timeout=1)

    assert provider.get_call_details.await_count == 3
    assert session.resolution is Resolution.UNAVAILABLE
    with pytest.raises(NoControlEndpointError):
        await tracker.dispatch("abc", whisper_command("hi"))
    provider.send_control_command.assert_not_awaited()


@pytest.mark.asyncio
async def test_slow_provider_cannot_stretch_resolution_past_ceiling():
    provider = FakeProvider()

    async def slow_details(external_call_id):
        await asyncio.sleep(0.3)
        return ProviderCall(external_call_id=external_call_id, status="queued")

    provider.get_call_details.side_effect = slow_details
    tracker = make_tracker(provider, poll_interval=0.05, max_attempts=3)
    loop = asyncio.get_running_loop()
    started = loop.time()
    tracker.track("abc", "call-1")

    with pytest.raises(NoControlEndpointError):
        await asyncio.wait_for(tracker.dispatch("abc", whisper_command("hi")), timeout=2)

    assert loop.time() - started <= 0.15 + 0.1
    assert tracker.get("abc").resolution is Resolution.UNAVAILABLE
    provider.send_control_command.assert_not_awaited()


@pytest.mark.asyncio
async def test_queued_command_fails_when_resolution_gives_up():
    provider = FakeProvider()
    provider.get_call_details.side_effect = ProviderUnavailableError()
    tracker = make_tracker(provider)
    tracker.track("abc", "call-1")

    with pytest.raises(NoControlEndpointError):
        await asyncio.wait_for(tracker.dispatch("abc", whisper_command("hi")), timeout=1)


@pytest.mark.asyncio
async def test_queued_command_replays_when_endpoint_resolves():
    provider = FakeProvider()
    provider.get_call_details.side_effect = [
        ProviderCall(external_call_id="abc", status="ringing"),
        ProviderCall(
            external_call_id="abc",
            status="in-progress",
            listen_url="wss://x/listen/abc",
            control_url="https://x/control/abc",
        ),
    ]
    observer = RecordingObserver()
    tracker = make_tracker(provider, max_attempts=5)
    tracker.observer = observer
    tracker.track("abc", "call-1")

    command = whisper_command("offer a discount")
    ack = await asyncio.wait_for(tracker.dispatch("abc", command), timeout=1)

    assert ack == {"ok": True}
    provider.send_control_command.assert_awaited_once_with("https://x/control/abc", command)
    assert observer.calls == [("progress", "ringing"), ("resolved", "abc")]
    assert tracker.get("abc").resolution is Resolution.RESOLVED


@pytest.mark.asyncio
async def test_latest_queued_command_wins():
    provider = FakeProvider()
    tracker = make_tracker(provider)
    session = tracker.track("abc", "call-1", poll=False)

    first = asyncio.create_task(tracker.dispatch("abc", barge_command("one")))
    await settle()
    second_command = barge_command("two")
    second = asyncio.create_task(tracker.dispatch("abc", second_command))
    await settle()

    with pytest.raises(CommandSupersededError):
        await first

    assert tracker.resolve_endpoint(session, listen_url="wss://x/listen/abc")
    assert await asyncio.wait_for(second, timeout=1) == {"ok": True}
    provider.send_control_command.assert_awaited_once_with("https://x/control/abc", second_command)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once():
    provider = FakeProvider()
    provider.send_control_command.side_effect = [ControlEndpointUnavailableError(), {"ok": True}]
    tracker = make_tracker(provider)
    tracker.track("abc", "call-1", control_url="https://x/control/abc")

    assert await tracker.dispatch("abc", end_command()) == {"ok": True}
    assert provider.send_control_command.await_count == 2


@pytest.mark.asyncio
async def test_retry_exhausted_surfaces_unavailable():
    provider = FakeProvider()
    provider.send_control_command.side_effect = ControlEndpointUnavailableError()
    tracker = make_tracker(provider)
    tracker.track("abc", "call-1", control_url="https://x/control/abc")

    with pytest.raises(ControlEndpointUnavailableError):
        await tracker.dispatch("abc", end_command())
    assert provider.send_control_command.await_count == 2
    assert tracker.get("abc").resolution is Resolution.RESOLVED


@pytest.mark.asyncio
async def test_gone_endpoint_fails_fast_afterwards():
    provider = FakeProvider()
    provider.send_control_command.side_effect = ControlEndpointGoneError()
    tracker = make_tracker(provider, grace_seconds=30)
    tracker.track("abc", "call-1", control_url="https://x/control/abc")

    with pytest.raises(ControlEndpointGoneError):
        await tracker.dispatch("abc", end_command())
    with pytest.raises(ControlEndpointGoneError):
        await tracker.dispatch("abc", end_command())
    assert provider.send_control_command.await_count == 1
    await tracker.shutdown()


@pytest.mark.asyncio
async def test_mark_ended_before_connect_fails_queued_command():
    provider = FakeProvider()
    tracker = make_tracker(provider, grace_seconds=30)
    session = tracker.track("abc", "call-1", poll=False)

    pending = asyncio.create_task(tracker.dispatch("abc", whisper_command("hi")))
    await settle()
    tracker.mark_ended(session, CallStatus.NO_ANSWER)

    with pytest.raises(NoControlEndpointError):
        await pending
    with pytest.raises(ControlEndpointGoneError):
        await tracker.dispatch("abc", whisper_command("hi"))
    await tracker.shutdown()


@pytest.mark.asyncio
async def test_poll_stops_when_provider_call_ends():
    provider = FakeProvider()
    provider.get_call_details.return_value = ProviderCall(
        external_call_id="abc", status="ended", ended_reason="customer-did-not-answer"
    )
    observer = RecordingObserver()
    tracker = make_tracker(provider)
    tracker.observer = observer

    session = tracker.track("abc", "call-1")
    await asyncio.wait_for(session.poll_task, timeout=1)

    assert provider.get_call_details.await_count == 1
    assert observer.calls == [("ended", "customer-did-not-answer")]
    assert session.resolution is Resolution.ENDED
    assert tracker.get("abc") is None


@pytest.mark.asyncio
async def test_ended_session_is_kept_while_listeners_remain():
    provider = FakeProvider()
    tracker = make_tracker(provider, grace_seconds=0)
    session = tracker.track("abc", "call-1", control_url="https://x/control/abc")
    tracker.update_listeners(session, 2)

    tracker.mark_ended(session, CallStatus.COMPLETED)
    assert tracker.find_by_call_id("call-1") is session

    tracker.update_listeners(session, 0)
    await settle()
    assert tracker.get("abc") is None
    await tracker.shutdown()


@pytest.mark.asyncio
async def test_shutdown_cancels_polls_and_fails_pending():
    provider = FakeProvider()
    tracker = make_tracker(provider, poll_interval=10)
    tracker.track("abc", "call-1")
    pending = asyncio.create_task(tracker.dispatch("abc", whisper_command("hi")))
    await settle()

    await tracker.shutdown()

    with pytest.raises(NoControlEndpointError):
        await pending
    assert tracker.sessions() == []
