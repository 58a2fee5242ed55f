"""
Unit Tests — Telemetry Feed

Tests snapshot application (subscribe-and-replace), derivation against the
current node configuration, forwarding to the health monitor, single
reading ingestion, and subscription loss handling.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from derivation import NodeStatus
from node_monitor import NodeHealthMonitor, NodeState, TransitionEvent, TransitionKind
from telemetry_feed import TelemetryFeed

# 2026-01-24 17:15:00 UTC
NOW = datetime(2026, 1, 24, 17, 15, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, start: float = NOW):
        self.t = start

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += seconds
        await asyncio.sleep(0)


def make_feed() -> tuple[TelemetryFeed, NodeHealthMonitor, FakeClock, list[TransitionEvent]]:
    clock = FakeClock()
    monitor = NodeHealthMonitor(sweep_interval=60, offline_timeout=300, clock=clock)
    events: list[TransitionEvent] = []
    monitor.on_transition(events.append)
    return TelemetryFeed(monitor, tz=timezone.utc), monitor, clock, events


def make_snapshot() -> dict:
    return {
        "LoRaSensor": {
            "node-01": {
                "2026-01-24_17-10-45": {"RawData": "Depth=45.0m"},
                "2026-01-24_17-00-00": {"RawData": "Depth=48.0m"},
                "garbage-key": {"RawData": "Depth=1.0m"},
            },
            "node-02": {
                "2026-01-24_17-12-00": {"depth_m": 52.0},
            },
            "node-03": {
                "1769274000": {"Depth": 3.0},
            },
        },
        "config": {
            "nodes": {
                "node-01": {"activated": True, "h1_m": 50, "location": "Tanzania", "region": "Arusha"},
                "node-02": {"activated": True, "h1_m": 50},
            },
        },
    }


# ─── Test: Snapshot Application ───────────────────────────

def test_snapshot_derives_latest_reading_per_node():
    feed, _, _, _ = make_feed()

    latest = {r.node_id: r for r in feed.apply_snapshot(make_snapshot())}

    assert latest["node-01"].timestamp_key == "2026-01-24_17-10-45"
    assert latest["node-01"].metrics.water_height == 5.0
    assert latest["node-01"].metrics.status == NodeStatus.WARNING
    assert latest["node-02"].metrics.water_height == 0.0
    assert latest["node-02"].metrics.status == NodeStatus.CRITICAL
    assert latest["node-03"].metrics.status == NodeStatus.NOT_ACTIVATED


def test_malformed_readings_never_reach_output():
    feed, _, _, _ = make_feed()
    feed.apply_snapshot(make_snapshot())

    keys = [r.timestamp_key for r in feed.history("node-01")]
    assert keys == ["2026-01-24_17-10-45", "2026-01-24_17-00-00"]
    assert feed.metrics["total_discarded"] == 1


def test_snapshot_forwards_newest_timestamp_to_monitor():
    feed, monitor, _, _ = make_feed()
    feed.apply_snapshot(make_snapshot())

    expected = datetime(2026, 1, 24, 17, 10, 45, tzinfo=timezone.utc).timestamp() * 1000
    assert monitor.entry("node-01").last_update_ms == int(expected)
    assert monitor.node_state("node-01") == NodeState.ONLINE


def test_config_change_rederives_on_next_snapshot():
    feed, _, _, _ = make_feed()
    snapshot = make_snapshot()
    feed.apply_snapshot(snapshot)

    snapshot["config"]["nodes"]["node-01"]["h1_m"] = 60
    latest = {r.node_id: r for r in feed.apply_snapshot(snapshot)}

    assert latest["node-01"].metrics.water_height == 15.0
    assert latest["node-01"].metrics.status == NodeStatus.ACTIVE


def test_snapshot_replaces_previous_view():
    feed, _, _, _ = make_feed()
    feed.apply_snapshot(make_snapshot())

    feed.apply_snapshot({"LoRaSensor": {"node-02": {"2026-01-24_17-14-00": {"depth_m": 40.0}}}, "config": {}})

    assert [r.node_id for r in feed.latest()] == ["node-02"]
    assert feed.config_for("node-02").activated is False


@pytest.mark.parametrize("snapshot", [None, [], "x", {"LoRaSensor": "bad"}, {"LoRaSensor": {"node-01": 5}}])
def test_malformed_snapshots_are_tolerated(snapshot):
    feed, _, _, _ = make_feed()
    assert feed.apply_snapshot(snapshot) == []


# ─── Test: Monitor Interaction ────────────────────────────

def test_repeated_snapshot_does_not_fake_recovery():
    """Re-delivery of an unchanged snapshot is not new data."""
    feed, monitor, clock, events = make_feed()
    snapshot = make_snapshot()
    feed.apply_snapshot(snapshot)

    clock.t += 600
    monitor.sweep()
    offline = [e.node_id for e in events if e.kind == TransitionKind.OFFLINE]
    assert sorted(offline) == ["node-01", "node-02", "node-03"]

    feed.apply_snapshot(snapshot)
    assert [e for e in events if e.kind == TransitionKind.ONLINE] == []


def test_new_reading_in_snapshot_fires_online():
    feed, monitor, clock, events = make_feed()
    snapshot = make_snapshot()
    feed.apply_snapshot(snapshot)
    clock.t += 600
    monitor.sweep()

    snapshot["LoRaSensor"]["node-01"]["2026-01-24_17-25-00"] = {"RawData": "Depth=44.0m"}
    feed.apply_snapshot(snapshot)

    online = [e.node_id for e in events if e.kind == TransitionKind.ONLINE]
    assert online == ["node-01"]


# ─── Test: Single Reading Ingestion ───────────────────────

def test_ingest_single_reading():
    feed, monitor, _, _ = make_feed()
    feed.apply_snapshot(make_snapshot())

    derived = feed.ingest("node-01", "2026-01-24_17-14-00", {"depth_m": 38.0})

    assert derived is not None
    assert derived.metrics.water_height == 12.0
    assert feed.history("node-01")[0].timestamp_key == "2026-01-24_17-14-00"
    assert len(feed.history("node-01")) == 3


def test_ingest_discards_unparseable_reading():
    feed, monitor, _, _ = make_feed()

    assert feed.ingest("node-01", "nope", {"depth_m": 1.0}) is None
    assert monitor.entry("node-01") is None


# ─── Test: Aggregates ─────────────────────────────────────

def test_fleet_summary_and_node_stats():
    feed, _, _, _ = make_feed()
    feed.apply_snapshot(make_snapshot())

    summary = feed.fleet_summary()
    assert summary.total_nodes == 3
    assert summary.alerts == 2
    assert summary.not_activated == 1
    assert summary.total_water_height == 5.0

    stats = {s.node_id: s for s in feed.node_stats()}
    assert stats["node-01"].count == 2
    assert stats["node-01"].max_water_height == 5.0
    assert stats["node-01"].min_water_height == 2.0


# ─── Test: Subscription ───────────────────────────────────

@pytest.mark.asyncio
async def test_consume_applies_every_snapshot():
    feed, _, _, _ = make_feed()

    async def subscription():
        yield make_snapshot()
        yield {"LoRaSensor": {"node-09": {"2026-01-24_17-14-00": {"depth": 1.0}}}}

    await feed.consume(subscription())

    assert feed.metrics["total_snapshots"] == 2
    assert [r.node_id for r in feed.latest()] == ["node-09"]


@pytest.mark.asyncio
async def test_disconnect_propagates_and_keeps_monitor_state():
    feed, monitor, clock, events = make_feed()

    async def subscription():
        yield make_snapshot()
        raise ConnectionError("socket closed")

    with pytest.raises(ConnectionError):
        await feed.consume(subscription())

    assert feed.metrics["total_disconnects"] == 1
    assert monitor.entry("node-01") is not None

    clock.t += 600
    monitor.sweep()
    assert {e.node_id for e in events} == {"node-01", "node-02", "node-03"}
