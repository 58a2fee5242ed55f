"""
Telemetry Feed — Subscription Snapshots → Parser → Derivation + Monitor

Consumes the live telemetry store, which is delivered as whole snapshots
(subscribe-and-replace):

  {
    "LoRaSensor": { "<node>": { "<timestamp key>": <payload>, ... }, ... },
    "config":     { "nodes": { "<node>": {"activated", "h1_m", "location", "region"} } }
  }

Each snapshot replaces the node configuration and reading history, every
reading is parsed, forwarded to the NodeHealthMonitor in chronological
order (older timestamps are ignored there), and derived against the
node's current configuration for display consumers.

Losing the subscription is reported to the caller but never resets the
monitor: stale nodes simply keep ageing toward their offline timeout.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import tzinfo
from typing import Any, AsyncIterable, Mapping, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from derivation import (
    DerivedReading,
    FleetSummary,
    NodeConfig,
    NodeHistoryStats,
    derive,
    summarize_fleet,
    summarize_history,
)
from node_monitor import NodeHealthMonitor
from reading_parser import SensorReading, parse_reading

logger = logging.getLogger("well_monitor.feed")

READINGS_ROOT = "LoRaSensor"
CONFIG_ROOT = "config"
NODES_KEY = "nodes"

MAX_HISTORY_PER_NODE = 1000


class TelemetryFeed:
    """
    Usage:
        feed = TelemetryFeed(monitor)
        feed.apply_snapshot(snapshot)       # subscription callback
        await feed.consume(subscription)    # or drive it from an async stream
        feed.latest(); feed.fleet_summary()
    """

    def __init__(
        self,
        monitor: NodeHealthMonitor,
        tz: Optional[tzinfo] = None,
        max_history: int = MAX_HISTORY_PER_NODE,
    ):
        settings = get_settings()
        self._monitor = monitor
        self._tz = tz or ZoneInfo(settings.reading_timezone)
        self._max_history = max_history

        self._configs: dict[str, NodeConfig] = {}
        self._history: dict[str, list[DerivedReading]] = {}

        # Metrics
        self._total_snapshots = 0
        self._total_parsed = 0
        self._total_discarded = 0
        self._total_disconnects = 0

    # ─── Subscription ─────────────────────────────────────

    def apply_snapshot(self, snapshot: Any) -> list[DerivedReading]:
        """
        Replace the current view with a new store snapshot.

        Returns:
            The latest derived reading of every node with valid data
        """
        if not isinstance(snapshot, Mapping):
            logger.warning("Ignoring snapshot of type %s", type(snapshot).__name__)
            return self.latest()

        self._total_snapshots += 1
        self._configs = self._parse_configs(snapshot.get(CONFIG_ROOT))

        sensors = snapshot.get(READINGS_ROOT) or {}
        if not isinstance(sensors, Mapping):
            logger.warning("Ignoring %s of type %s", READINGS_ROOT, type(sensors).__name__)
            sensors = {}

        history: dict[str, list[DerivedReading]] = {}
        for node_id, entries in sensors.items():
            node_id = str(node_id)
            if not isinstance(entries, Mapping):
                logger.warning("Ignoring readings for %s: not a keyed collection", node_id)
                continue

            readings = sorted(
                (r for r in (self._parse(node_id, key, payload) for key, payload in entries.items()) if r),
                key=lambda r: r.timestamp,
            )
            for reading in readings:
                self._monitor.record_reading(node_id, reading.timestamp)

            derived = [self._derive(r) for r in reversed(readings)]
            if derived:
                history[node_id] = derived[: self._max_history]

        self._history = history
        logger.debug("Snapshot applied: %d nodes, %d configs", len(history), len(self._configs))
        return self.latest()

    def ingest(self, node_id: str, timestamp_key: str, payload: Any) -> Optional[DerivedReading]:
        """Apply a single pushed reading without replacing the rest of the view."""
        reading = self._parse(node_id, timestamp_key, payload)
        if reading is None:
            return None

        self._monitor.record_reading(node_id, reading.timestamp)
        derived = self._derive(reading)

        history = [r for r in self._history.get(node_id, []) if r.timestamp_key != reading.timestamp_key]
        history.append(derived)
        history.sort(key=lambda r: r.timestamp, reverse=True)
        self._history[node_id] = history[: self._max_history]
        return derived

    async def consume(self, stream: AsyncIterable[Any]) -> None:
        """Apply every snapshot from an async subscription until it ends."""
        try:
            async for snapshot in stream:
                self.apply_snapshot(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._total_disconnects += 1
            logger.error("Telemetry subscription lost: %s", e)
            raise
        logger.info("Telemetry subscription ended")

    # ─── Internals ────────────────────────────────────────

    def _parse_configs(self, config_root: Any) -> dict[str, NodeConfig]:
        nodes = config_root.get(NODES_KEY) if isinstance(config_root, Mapping) else None
        if not isinstance(nodes, Mapping):
            return {}
        return {
            str(node_id): NodeConfig.from_mapping(str(node_id), data)
            for node_id, data in nodes.items()
            if isinstance(data, Mapping)
        }

    def _parse(self, node_id: str, key: Any, payload: Any) -> Optional[SensorReading]:
        reading = parse_reading(node_id, str(key), payload, tz=self._tz)
        if reading is None:
            self._total_discarded += 1
        else:
            self._total_parsed += 1
        return reading

    def _derive(self, reading: SensorReading) -> DerivedReading:
        return DerivedReading(
            node_id=reading.node_id,
            timestamp_key=reading.timestamp_key,
            timestamp=reading.timestamp,
            metrics=derive(self.config_for(reading.node_id), reading.depth),
        )

    # ─── Queries ──────────────────────────────────────────

    def config_for(self, node_id: str) -> NodeConfig:
        return self._configs.get(node_id) or NodeConfig(node_id=node_id)

    def latest(self) -> list[DerivedReading]:
        return [readings[0] for readings in self._history.values() if readings]

    def history(self, node_id: str) -> list[DerivedReading]:
        """Derived readings for a node, newest first."""
        return list(self._history.get(node_id, []))

    def fleet_summary(self) -> FleetSummary:
        return summarize_fleet(r.metrics for r in self.latest())

    def node_stats(self) -> list[NodeHistoryStats]:
        return [summarize_history(node_id, readings) for node_id, readings in self._history.items()]

    @property
    def metrics(self) -> dict:
        return {
            "total_snapshots": self._total_snapshots,
            "total_parsed": self._total_parsed,
            "total_discarded": self._total_discarded,
            "total_disconnects": self._total_disconnects,
            "nodes": len(self._history),
            "configured_nodes": len(self._configs),
        }
