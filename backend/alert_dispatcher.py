"""
Alert Dispatcher — Transition Events → Push + SMS

Turns Online/Offline transition events from the NodeHealthMonitor into
operator alerts on two independent channels:

  TransitionEvent ──build──▶ AlertMessage ──┬──▶ PushChannel   (permission-gated)
                                            └──▶ SmsDispatcher (credential-gated)

Channel rules:
  1. A channel that is unavailable is skipped; the other still fires.
  2. A delivery failure on one channel is logged and never affects the
     other, and is not retried.
  3. Dedup is the monitor's job: the dispatcher sends whatever it is
     handed, and a failed SMS leg still counts as sent for suppression.

submit() is what the monitor calls: it schedules delivery as a background
task so neither ingestion nor the sweep ever waits on network I/O.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import get_settings
from node_monitor import TransitionEvent, TransitionKind
from push_channel import PushChannel
from sms_dispatcher import SmsDispatcher

logger = logging.getLogger("well_monitor.alerts")


class DispatchOutcome(Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class AlertMessage:
    """Channel-specific renderings of one transition event."""
    title: str
    body: str
    tag: str
    sms_text: str


@dataclass
class AlertRecord:
    """Record of one dispatched transition and what each channel did with it."""
    alert_id: str
    event: TransitionEvent
    message: AlertMessage
    push: DispatchOutcome
    sms: DispatchOutcome
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "event": self.event.to_dict(),
            "title": self.message.title,
            "body": self.message.body,
            "push": self.push.value,
            "sms": self.sms.value,
            "timestamp": self.timestamp,
        }


def build_message(event: TransitionEvent) -> AlertMessage:
    """Offline messages name the node and minutes offline; Online ones say it resumed."""
    node = event.node_id
    if event.kind is TransitionKind.OFFLINE:
        minutes = event.minutes_offline or 0
        return AlertMessage(
            title=f"⚠️ {node} OFFLINE",
            body=f"No data for {minutes} minutes.",
            tag=event.key,
            sms_text=f"⚠️ SYSTEM DOWN\n{node} has been offline for {minutes} minutes.",
        )
    return AlertMessage(
        title=f"✅ {node} Back Online",
        body="Sensor has resumed data transmission.",
        tag=event.key,
        sms_text=f"✅ SYSTEM ONLINE\n{node} has resumed sending data.",
    )


class AlertDispatcher:
    """
    Fans each transition event out to the push and SMS channels.

    Usage:
        dispatcher = AlertDispatcher(push=PushChannel(center), sms=SmsDispatcher())
        monitor.on_transition(dispatcher.submit)
        ...
        await dispatcher.close()
    """

    def __init__(
        self,
        push: Optional[PushChannel] = None,
        sms: Optional[SmsDispatcher] = None,
        max_history: int = 0,
    ):
        settings = get_settings()
        self._push = push
        self._sms = sms
        self._max_history = max_history or settings.alert_history_size

        self._history: list[AlertRecord] = []
        self._pending: set[asyncio.Task] = set()

        # Metrics
        self._total_alerts = 0
        self._outcomes: dict[str, dict[str, int]] = {
            channel: {outcome.value: 0 for outcome in DispatchOutcome}
            for channel in ("push", "sms")
        }

    # ─── Entry Points ─────────────────────────────────────

    def submit(self, event: TransitionEvent) -> asyncio.Task:
        """Schedule dispatch in the background and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self.dispatch(event), name=f"alert-{event.key}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def dispatch(self, event: TransitionEvent) -> AlertRecord:
        """Deliver one event on both channels concurrently."""
        self._total_alerts += 1
        message = build_message(event)

        push_outcome, sms_outcome = await asyncio.gather(
            self._deliver_push(message),
            self._deliver_sms(message),
        )

        record = AlertRecord(
            alert_id=self._generate_alert_id(event),
            event=event,
            message=message,
            push=push_outcome,
            sms=sms_outcome,
        )
        self._outcomes["push"][push_outcome.value] += 1
        self._outcomes["sms"][sms_outcome.value] += 1

        logger.info(
            "Alert %s | %s | push: %s | sms: %s",
            record.alert_id,
            event.key,
            push_outcome.value,
            sms_outcome.value,
        )

        self._history.append(record)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        return record

    # ─── Channels ─────────────────────────────────────────

    async def _deliver_push(self, message: AlertMessage) -> DispatchOutcome:
        if self._push is None or not self._push.available:
            return DispatchOutcome.SKIPPED
        try:
            sent = await self._push.send(message.title, message.body, message.tag)
        except Exception as e:
            logger.error("Push delivery failed for %s: %s", message.tag, e)
            return DispatchOutcome.FAILED
        return DispatchOutcome.DELIVERED if sent else DispatchOutcome.FAILED

    async def _deliver_sms(self, message: AlertMessage) -> DispatchOutcome:
        if self._sms is None or not self._sms.available:
            return DispatchOutcome.SKIPPED
        try:
            sent = await self._sms.send(message.sms_text, reference=message.tag)
        except Exception as e:
            logger.error("SMS delivery failed for %s: %s", message.tag, e)
            return DispatchOutcome.FAILED
        return DispatchOutcome.DELIVERED if sent else DispatchOutcome.FAILED

    # ─── Lifecycle ────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._sms is not None:
            await self._sms.close()

    def _generate_alert_id(self, event: TransitionEvent) -> str:
        raw = f"{event.key}:{event.occurred_at}"
        return hashlib.md5(raw.encode()).hexdigest()[:12].upper()

    # ─── Queries ──────────────────────────────────────────

    def get_history(self, limit: int = 20) -> list[dict]:
        """Most recent alerts, oldest first."""
        return [r.to_dict() for r in self._history[-limit:]]

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def metrics(self) -> dict:
        return {
            "total_alerts": self._total_alerts,
            "pending": len(self._pending),
            "push": dict(self._outcomes["push"]),
            "sms": dict(self._outcomes["sms"]),
        }
