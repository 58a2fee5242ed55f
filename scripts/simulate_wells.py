#!/usr/bin/env python3
"""
Well Fleet Simulator — Synthetic Telemetry Replay

Generates telemetry store snapshots for a fleet of well sensor nodes,
lets some of them go silent (and optionally come back), and reports the
derived water heights and the alerts the engine raised.

Modes:
  --simulate     Runs the engine in-memory on a simulated clock (no server)
  --live         Posts snapshots to a live FastAPI server at --target URL

Usage:
  python simulate_wells.py --simulate --nodes 6 --minutes 20 --silent 2
  python simulate_wells.py --live --target http://localhost:8000 --interval 5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Add backend to path for simulation mode
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

KEY_FORMAT = "%Y-%m-%d_%H-%M-%S"
STEP_SECONDS = 60

console = Console()


@dataclass
class FleetPlan:
    """Which nodes report, and when."""
    nodes: int = 6
    minutes: int = 20
    silent: int = 2
    silent_after: int = 3
    resume_at: int = 0
    h1: float = 50.0
    seed: int = 7
    node_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.node_ids = [f"node-{i + 1:02d}" for i in range(self.nodes)]

    def reports(self, node_id: str, minute: int) -> bool:
        if self.node_ids.index(node_id) >= self.silent:
            return True
        if minute < self.silent_after:
            return True
        return bool(self.resume_at) and minute >= self.resume_at


class SimulatedClock:
    """Clock advanced by the simulation loop rather than wall time."""

    def __init__(self, start: float):
        self.t = start

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.t += seconds
        await asyncio.sleep(0)


class SnapshotBuilder:
    """Accumulates readings the way the telemetry store does."""

    def __init__(self, plan: FleetPlan):
        self.plan = plan
        self.rng = random.Random(plan.seed)
        self.readings: dict[str, dict[str, dict]] = {n: {} for n in plan.node_ids}
        self.config = {
            node_id: {
                "activated": i != len(plan.node_ids) - 1,
                "h1_m": plan.h1,
                "location": "Tanzania",
                "region": "Arusha",
            }
            for i, node_id in enumerate(plan.node_ids)
        }

    def payload(self, depth: float) -> dict:
        # Mix the payload shapes seen in the field
        shape = self.rng.randrange(3)
        if shape == 0:
            return {"RawData": f"Depth={depth:.2f}m"}
        if shape == 1:
            return {"depth_m": round(depth, 2)}
        return {"H2": round(depth, 2)}

    def step(self, minute: int, epoch: float) -> dict:
        key = datetime.fromtimestamp(epoch, tz=timezone.utc).strftime(KEY_FORMAT)
        for node_id in self.plan.node_ids:
            if not self.plan.reports(node_id, minute):
                continue
            depth = self.rng.uniform(self.plan.h1 * 0.6, self.plan.h1 * 0.99)
            self.readings[node_id][key] = self.payload(depth)
        return {
            "LoRaSensor": {n: dict(r) for n, r in self.readings.items() if r},
            "config": {"nodes": self.config},
        }


# ═══════════════════════════════════════════════════════════
#  SIMULATION MODE (In-memory engine)
# ═══════════════════════════════════════════════════════════

async def run_simulation(plan: FleetPlan, offline_timeout: int) -> tuple[list[dict], list[dict]]:
    """Replay the plan through the in-memory engine on a simulated clock."""
    from alert_dispatcher import AlertDispatcher
    from node_monitor import NodeHealthMonitor
    from push_channel import InMemoryNotificationCenter, PermissionState, PushChannel
    from telemetry_feed import TelemetryFeed

    clock = SimulatedClock(start=float(int(time.time())))
    monitor = NodeHealthMonitor(sweep_interval=STEP_SECONDS, offline_timeout=offline_timeout, clock=clock)
    center = InMemoryNotificationCenter(PermissionState.GRANTED)
    dispatcher = AlertDispatcher(push=PushChannel(center, display_seconds=1), sms=None)
    monitor.on_transition(dispatcher.submit)
    feed = TelemetryFeed(monitor, tz=timezone.utc)
    builder = SnapshotBuilder(plan)

    with console.status("Replaying fleet telemetry..."):
        for minute in range(plan.minutes):
            feed.apply_snapshot(builder.step(minute, clock.now()))
            clock.t += STEP_SECONDS
            monitor.sweep()
            await dispatcher.drain()

    await dispatcher.close()
    nodes = [r.to_dict() for r in feed.latest()]
    return nodes, dispatcher.get_history(limit=1000)


# ═══════════════════════════════════════════════════════════
#  LIVE MODE (Against running server)
# ═══════════════════════════════════════════════════════════

async def run_live(plan: FleetPlan, target: str, interval: float) -> tuple[list[dict], list[dict]]:
    """Post one snapshot per step to a live server, then read back its view."""
    builder = SnapshotBuilder(plan)

    async with httpx.AsyncClient(base_url=target, timeout=httpx.Timeout(30.0)) as client:
        with console.status(f"Posting snapshots to {target}..."):
            for minute in range(plan.minutes):
                response = await client.post("/api/snapshot", json=builder.step(minute, time.time()))
                if response.status_code != 200:
                    console.print(f"[red]Snapshot {minute} rejected: HTTP {response.status_code}[/red]")
                await asyncio.sleep(interval)

        nodes = (await client.get("/api/nodes")).json()["nodes"]
        alerts = (await client.get("/api/alerts", params={"limit": 1000})).json()["alerts"]
    return nodes, alerts


# ═══════════════════════════════════════════════════════════
#  REPORTING
# ═══════════════════════════════════════════════════════════

STATUS_STYLE = {
    "Active": "green",
    "Warning": "yellow",
    "Low": "dark_orange",
    "Critical": "bold red",
    "Not Activated": "dim",
}


def print_results(nodes: list[dict], alerts: list[dict], mode: str, output_file: str = ""):
    console.print()
    console.print(Panel.fit(
        f"[bold cyan]💧 Well Fleet Simulation ({mode.upper()})[/bold cyan]",
        border_style="cyan",
    ))

    table = Table(title="Latest Derived Metrics", show_header=True, header_style="bold magenta")
    table.add_column("Node", style="cyan")
    table.add_column("Reading")
    table.add_column("H1 (m)", justify="right")
    table.add_column("H2 (m)", justify="right")
    table.add_column("Water (m)", justify="right", style="green")
    table.add_column("Water (ft)", justify="right")
    table.add_column("Status")

    for node in sorted(nodes, key=lambda n: n["node_id"]):
        status = node["status"]
        style = STATUS_STYLE.get(status, "white")
        table.add_row(
            node["node_id"],
            node["timestamp_key"],
            f"{node['h1_m']:.2f}",
            f"{node['h2_m']:.2f}",
            f"{node['water_height_m']:.2f}",
            f"{node['water_height_ft']:.2f}",
            f"[{style}]{status}[/{style}]",
        )
    console.print(table)

    alert_table = Table(title="Alerts Raised", show_header=True, header_style="bold red")
    alert_table.add_column("Alert ID", style="dim")
    alert_table.add_column("Node", style="cyan")
    alert_table.add_column("Kind")
    alert_table.add_column("Minutes Offline", justify="right")
    alert_table.add_column("Push")
    alert_table.add_column("SMS")

    for alert in alerts:
        event = alert["event"]
        minutes = event.get("minutes_offline")
        alert_table.add_row(
            alert["alert_id"],
            event["node_id"],
            event["kind"],
            "" if minutes is None else str(minutes),
            alert["push"],
            alert["sms"],
        )
    console.print(alert_table)
    console.print()

    if output_file:
        Path(output_file).write_text(json.dumps({"mode": mode, "nodes": nodes, "alerts": alerts}, indent=2))
        console.print(f"  Results exported to: {output_file}")


# ═══════════════════════════════════════════════════════════
#  MAIN
# ═══════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(
        description="Well Fleet Simulator — synthetic telemetry replay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Two of six nodes go silent after 3 minutes and come back at minute 15
  python simulate_wells.py --simulate --nodes 6 --silent 2 --resume-at 15

  # Drive a running server, one snapshot every 5 seconds
  python simulate_wells.py --live --target http://localhost:8000 --interval 5
        """,
    )
    parser.add_argument("--simulate", action="store_true", help="Run in simulation mode (no server)")
    parser.add_argument("--live", action="store_true", help="Run against a live server")
    parser.add_argument("--target", default="http://localhost:8000", help="Target server URL (live mode)")
    parser.add_argument("--nodes", type=int, default=6, help="Number of well nodes")
    parser.add_argument("--minutes", type=int, default=20, help="Simulated minutes (one snapshot each)")
    parser.add_argument("--silent", type=int, default=2, help="Nodes that stop reporting")
    parser.add_argument("--silent-after", type=int, default=3, help="Minute at which silent nodes stop")
    parser.add_argument("--resume-at", type=int, default=0, help="Minute at which silent nodes resume (0 = never)")
    parser.add_argument("--offline-timeout", type=int, default=300, help="Offline timeout in seconds (simulation)")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between snapshots (live mode)")
    parser.add_argument("--seed", type=int, default=7, help="Random seed for depths")
    parser.add_argument("--output", default="", help="Export results to JSON file")

    args = parser.parse_args()

    if not args.simulate and not args.live:
        args.simulate = True  # Default to simulation

    plan = FleetPlan(
        nodes=args.nodes,
        minutes=args.minutes,
        silent=min(args.silent, args.nodes),
        silent_after=args.silent_after,
        resume_at=args.resume_at,
        seed=args.seed,
    )

    console.print(f"\n🚀 Simulating {plan.nodes} wells for {plan.minutes} minutes ({plan.silent} going silent)\n")

    if args.simulate:
        nodes, alerts = asyncio.run(run_simulation(plan, args.offline_timeout))
        print_results(nodes, alerts, "simulation", args.output)
    elif args.live:
        nodes, alerts = asyncio.run(run_live(plan, args.target, args.interval))
        print_results(nodes, alerts, "live", args.output)


if __name__ == "__main__":
    main()
