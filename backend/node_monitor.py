"""
Node Health Monitor — Data-Arrival Watchdog

Tracks, per node, the embedded timestamp of the newest reading seen and
sweeps periodically for nodes that have gone quiet:

  Unknown ──first reading──▶ Online ──silent > timeout (sweep)──▶ Offline
                               ▲                                    │
                               └──────────newer reading─────────────┘

  • Staleness is measured against the reading's own timestamp, never the
    wall-clock arrival time (telemetry can arrive late or in bursts).
  • One Offline event per offline episode: the sweep adds a suppression
    entry and skips nodes that already carry one.
  • The Online event fires on ingestion, not on the next sweep, and clears
    the suppression entry so a later episode can alert again.

The monitor knows nothing about water levels; a node can be Online and
Critical at the same time.

Usage:
    monitor = NodeHealthMonitor(sweep_interval=60, offline_timeout=300)
    monitor.on_transition(dispatcher.submit)
    await monitor.start()
    monitor.record_reading("node-01", reading.timestamp)
    await monitor.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from config import get_settings

logger = logging.getLogger("well_monitor.monitor")

OFFLINE_CONDITION = "offline"


class Clock(Protocol):
    def now(self) -> float:
        """Current time as epoch seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class NodeState(Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class TransitionKind(Enum):
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class TransitionEvent:
    node_id: str
    kind: TransitionKind
    minutes_offline: Optional[int] = None
    occurred_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        """Dedup key, e.g. "node-01-offline"."""
        return f"{self.node_id}-{self.kind.value}"

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "kind": self.kind.value,
            "minutes_offline": self.minutes_offline,
            "occurred_at": self.occurred_at,
            "key": self.key,
        }


@dataclass
class MonitoringEntry:
    """Last-seen record for one node. Created on first reading, never deleted."""
    node_id: str
    last_update_ms: int
    last_check_ms: int


class AlertSuppression:
    """(node_id, condition) pairs for which an alert already went out."""

    def __init__(self):
        self._entries: set[tuple[str, str]] = set()

    def add(self, node_id: str, condition: str = OFFLINE_CONDITION) -> bool:
        """Mark as alerted. Returns False if it already was."""
        key = (node_id, condition)
        if key in self._entries:
            return False
        self._entries.add(key)
        return True

    def discard(self, node_id: str, condition: str = OFFLINE_CONDITION) -> bool:
        """Clear the mark. Returns True if one was present."""
        key = (node_id, condition)
        if key not in self._entries:
            return False
        self._entries.remove(key)
        return True

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


TransitionListener = Callable[[TransitionEvent], None]


class NodeHealthMonitor:
    """
    Per-node staleness watchdog with a cancellable sweep task.

    Both mutation paths (record_reading and sweep) are synchronous and run
    on the event loop, so the entry map and suppression set need no lock.
    Listeners are called synchronously and must not block; alert delivery
    is expected to be scheduled in the background (AlertDispatcher.submit).
    """

    def __init__(
        self,
        sweep_interval: float = 0,
        offline_timeout: float = 0,
        clock: Optional[Clock] = None,
    ):
        settings = get_settings()
        self._sweep_interval = sweep_interval or settings.sweep_interval_seconds
        self._timeout_ms = int((offline_timeout or settings.offline_timeout_seconds) * 1000)
        self._clock = clock or SystemClock()

        self._entries: dict[str, MonitoringEntry] = {}
        self._suppression = AlertSuppression()
        self._listeners: list[TransitionListener] = []
        self._running = False
        self._sweep_task: Optional[asyncio.Task] = None

        # Metrics
        self._total_sweeps = 0
        self._total_offline_events = 0
        self._total_online_events = 0

    def on_transition(self, listener: TransitionListener) -> None:
        """Register a transition listener (typically AlertDispatcher.submit)."""
        self._listeners.append(listener)

    # ─── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic staleness sweep."""
        if self._running:
            logger.warning("Monitor already running")
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="node-monitor-sweep")
        logger.info(
            "Node monitor started (interval: %ss, timeout: %ss)",
            self._sweep_interval,
            self._timeout_ms // 1000,
        )

    async def stop(self) -> None:
        """
        Stop sweeping. No sweep runs once this returns.
        Per-node state is kept so a restart does not re-announce nodes.
        """
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Node monitor stopped")

    async def dispose(self) -> None:
        """Stop and forget every node and suppression entry."""
        await self.stop()
        self._entries.clear()
        self._suppression.clear()

    def clear_suppression(self) -> int:
        """
        Forget which nodes were already alerted, keeping last-seen state.
        Nodes that are still stale alert again on the next sweep.

        Returns:
            Number of suppression entries cleared
        """
        cleared = len(self._suppression)
        self._suppression.clear()
        logger.info("Monitor: cleared %d suppressed alerts", cleared)
        return cleared

    @property
    def running(self) -> bool:
        return self._running

    # ─── Ingestion ────────────────────────────────────────

    def record_reading(self, node_id: str, timestamp: datetime) -> list[TransitionEvent]:
        """
        Record a reading's embedded timestamp for a node.

        Last-seen only moves forward. A strictly newer reading for a node
        that has an outstanding offline alert fires an Online event.
        """
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        reading_ms = int(timestamp.timestamp() * 1000)
        now_ms = self._now_ms()

        entry = self._entries.get(node_id)
        if entry is None:
            self._entries[node_id] = MonitoringEntry(node_id, reading_ms, now_ms)
            logger.info("Monitor: tracking new node %s", node_id)
            return []

        entry.last_check_ms = now_ms
        if reading_ms <= entry.last_update_ms:
            return []
        entry.last_update_ms = reading_ms

        if not self._suppression.discard(node_id, OFFLINE_CONDITION):
            return []

        event = TransitionEvent(node_id=node_id, kind=TransitionKind.ONLINE, occurred_at=now_ms / 1000)
        self._total_online_events += 1
        logger.info("Monitor: node %s back online", node_id)
        self._emit(event)
        return [event]

    # ─── Sweep ────────────────────────────────────────────

    def sweep(self) -> list[TransitionEvent]:
        """Fire an Offline event for every stale node not already alerted."""
        self._total_sweeps += 1
        now_ms = self._now_ms()
        events: list[TransitionEvent] = []

        for node_id, entry in list(self._entries.items()):
            elapsed = now_ms - entry.last_update_ms
            if elapsed <= self._timeout_ms:
                continue
            if not self._suppression.add(node_id, OFFLINE_CONDITION):
                continue

            event = TransitionEvent(
                node_id=node_id,
                kind=TransitionKind.OFFLINE,
                minutes_offline=elapsed // 60_000,
                occurred_at=now_ms / 1000,
            )
            self._total_offline_events += 1
            logger.warning(
                "Monitor: node %s offline (no data for %d min)",
                node_id,
                event.minutes_offline,
            )
            events.append(event)
            self._emit(event)

        return events

    async def _sweep_loop(self) -> None:
        """Periodic sweep loop."""
        while self._running:
            try:
                await self._clock.sleep(self._sweep_interval)
                if not self._running:
                    break
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Sweep error: %s", e)

    def _emit(self, event: TransitionEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("Transition listener failed for %s: %s", event.key, e)

    def _now_ms(self) -> int:
        return int(self._clock.now() * 1000)

    # ─── Queries ──────────────────────────────────────────

    def node_state(self, node_id: str) -> NodeState:
        entry = self._entries.get(node_id)
        if entry is None:
            return NodeState.UNKNOWN
        if self._now_ms() - entry.last_update_ms > self._timeout_ms:
            return NodeState.OFFLINE
        return NodeState.ONLINE

    def entry(self, node_id: str) -> Optional[MonitoringEntry]:
        return self._entries.get(node_id)

    def is_suppressed(self, node_id: str) -> bool:
        return (node_id, OFFLINE_CONDITION) in self._suppression

    def get_status(self) -> dict:
        """Per-node recency report."""
        now_ms = self._now_ms()
        return {
            node_id: {
                "last_update": datetime.fromtimestamp(entry.last_update_ms / 1000, tz=timezone.utc).isoformat(),
                "minutes_offline": max(0, (now_ms - entry.last_update_ms) // 60_000),
                "is_online": now_ms - entry.last_update_ms <= self._timeout_ms,
                "offline_alert_sent": self.is_suppressed(node_id),
            }
            for node_id, entry in self._entries.items()
        }

    @property
    def metrics(self) -> dict:
        return {
            "tracked_nodes": len(self._entries),
            "suppressed_nodes": len(self._suppression),
            "total_sweeps": self._total_sweeps,
            "total_offline_events": self._total_offline_events,
            "total_online_events": self._total_online_events,
            "running": self._running,
        }
