"""
Unit Tests — Alert Dispatcher

Tests message content, per-channel gating, isolation of channel failures,
background submission, and the end-to-end dedup behaviour when wired to
the NodeHealthMonitor.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from alert_dispatcher import AlertDispatcher, DispatchOutcome, build_message
from node_monitor import NodeHealthMonitor, TransitionEvent, TransitionKind
from push_channel import InMemoryNotificationCenter, PermissionState, PushChannel
from sms_dispatcher import SmsDispatcher


def offline_event(node_id: str = "node-01", minutes: int = 5) -> TransitionEvent:
    return TransitionEvent(node_id=node_id, kind=TransitionKind.OFFLINE, minutes_offline=minutes)


def online_event(node_id: str = "node-01") -> TransitionEvent:
    return TransitionEvent(node_id=node_id, kind=TransitionKind.ONLINE)


def make_sms(handler=None) -> SmsDispatcher:
    if handler is None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"successful": True, "code": 100})
    return SmsDispatcher(
        api_key="key",
        secret_key="secret",
        sender_id="WALEKI",
        destination="255700000001",
        api_url="https://sms.test/v1/send",
        transport=httpx.MockTransport(handler),
    )


def make_push(permission: PermissionState = PermissionState.GRANTED) -> tuple[PushChannel, InMemoryNotificationCenter]:
    center = InMemoryNotificationCenter(permission)
    return PushChannel(center, display_seconds=5), center


# ─── Test: Message Content ────────────────────────────────

def test_offline_message_carries_node_and_minutes():
    message = build_message(offline_event("node-07", 12))

    assert "node-07" in message.title
    assert "12 minutes" in message.body
    assert "node-07" in message.sms_text
    assert "12 minutes" in message.sms_text
    assert message.tag == "node-07-offline"


def test_online_message_says_resumed():
    message = build_message(online_event("node-07"))

    assert "node-07" in message.title
    assert "resumed" in message.body
    assert "node-07" in message.sms_text
    assert "resumed" in message.sms_text
    assert message.tag == "node-07-online"


# ─── Test: Channel Gating ─────────────────────────────────

@pytest.mark.asyncio
async def test_both_channels_deliver():
    push, center = make_push()
    dispatcher = AlertDispatcher(push=push, sms=make_sms())

    record = await dispatcher.dispatch(offline_event())
    await dispatcher.close()

    assert record.push == DispatchOutcome.DELIVERED
    assert record.sms == DispatchOutcome.DELIVERED
    assert [n.tag for n in center.active()] == ["node-01-offline"]


@pytest.mark.asyncio
async def test_denied_push_still_sends_sms():
    push, center = make_push(PermissionState.DENIED)
    dispatcher = AlertDispatcher(push=push, sms=make_sms())

    record = await dispatcher.dispatch(offline_event())
    await dispatcher.close()

    assert record.push == DispatchOutcome.SKIPPED
    assert record.sms == DispatchOutcome.DELIVERED
    assert center.active() == []


@pytest.mark.asyncio
async def test_missing_sms_still_sends_push():
    push, center = make_push()
    dispatcher = AlertDispatcher(push=push, sms=None)

    record = await dispatcher.dispatch(offline_event())

    assert record.push == DispatchOutcome.DELIVERED
    assert record.sms == DispatchOutcome.SKIPPED


# ─── Test: Failure Isolation ──────────────────────────────

@pytest.mark.asyncio
async def test_sms_failure_does_not_affect_push():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("gateway down", request=request)

    push, center = make_push()
    dispatcher = AlertDispatcher(push=push, sms=make_sms(handler))

    record = await dispatcher.dispatch(offline_event())
    await dispatcher.close()

    assert record.sms == DispatchOutcome.FAILED
    assert record.push == DispatchOutcome.DELIVERED
    assert len(calls) == 1  # not retried
    assert len(center.active()) == 1


@pytest.mark.asyncio
async def test_push_failure_does_not_affect_sms():
    push, _ = make_push()
    dispatcher = AlertDispatcher(push=push, sms=make_sms())

    with patch.object(push, "send", AsyncMock(side_effect=RuntimeError("surface gone"))):
        record = await dispatcher.dispatch(offline_event())
    await dispatcher.close()

    assert record.push == DispatchOutcome.FAILED
    assert record.sms == DispatchOutcome.DELIVERED


@pytest.mark.asyncio
async def test_rejected_sms_is_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"code": 120}})

    dispatcher = AlertDispatcher(push=None, sms=make_sms(handler))
    record = await dispatcher.dispatch(offline_event())
    await dispatcher.close()

    assert record.sms == DispatchOutcome.FAILED
    assert dispatcher.metrics["sms"]["failed"] == 1


# ─── Test: Background Submission ──────────────────────────

@pytest.mark.asyncio
async def test_submit_does_not_wait_for_delivery():
    release = asyncio.Event()
    sms = make_sms()

    async def slow_send(text: str, reference: str = "") -> bool:
        await release.wait()
        return True

    dispatcher = AlertDispatcher(push=None, sms=sms)
    with patch.object(sms, "send", side_effect=slow_send):
        task = dispatcher.submit(offline_event())
        await asyncio.sleep(0)

        assert not task.done()
        assert dispatcher.pending == 1

        release.set()
        await dispatcher.drain()

    assert task.result().sms == DispatchOutcome.DELIVERED
    assert dispatcher.pending == 0


# ─── Test: History & Metrics ──────────────────────────────

@pytest.mark.asyncio
async def test_history_is_bounded():
    dispatcher = AlertDispatcher(push=None, sms=None, max_history=3)

    for i in range(10):
        await dispatcher.dispatch(offline_event(f"node-{i:02d}"))

    history = dispatcher.get_history(limit=10)
    assert len(history) == 3
    assert history[-1]["event"]["node_id"] == "node-09"
    assert dispatcher.metrics["total_alerts"] == 10
    assert dispatcher.metrics["push"]["skipped"] == 10


# ─── Test: Monitor Integration ────────────────────────────

class StepClock:
    def __init__(self, start: float = 1_769_274_645.0):
        self.t = start

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += seconds
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_failed_sms_still_counts_for_dedup():
    """An offline alert whose SMS leg failed is not re-sent on the next sweep."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"successful": False})

    clock = StepClock()
    monitor = NodeHealthMonitor(sweep_interval=60, offline_timeout=300, clock=clock)
    push, center = make_push()
    dispatcher = AlertDispatcher(push=push, sms=make_sms(handler))
    monitor.on_transition(dispatcher.submit)

    monitor.record_reading("node-01", datetime.fromtimestamp(clock.t, tz=timezone.utc))
    for _ in range(10):
        clock.t += 60
        monitor.sweep()
    await dispatcher.drain()

    assert len(calls) == 1
    history = dispatcher.get_history()
    assert len(history) == 1
    assert history[0]["sms"] == "failed"
    assert history[0]["push"] == "delivered"

    # Node comes back: exactly one recovery alert
    monitor.record_reading("node-01", datetime.fromtimestamp(clock.t, tz=timezone.utc))
    await dispatcher.drain()
    await dispatcher.close()

    kinds = [h["event"]["kind"] for h in dispatcher.get_history()]
    assert kinds == ["offline", "online"]
    assert sorted(n.tag for n in center.active()) == ["node-01-offline", "node-01-online"]
