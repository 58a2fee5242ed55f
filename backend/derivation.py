"""
Derivation & Classifier — Depth → Water Height → Node Status

  h1 = cable length (surface → cable end), configured per node
  h2 = sensor depth reading (surface → water surface)

  water height = h1 - h2   when the node is activated, h1 > 0 and h2 < h1
               = 0         otherwise (h2 >= h1 means no water or a sensor fault)

Status thresholds (metres of water above the cable end):

  not activated            → Not Activated
  height <= 0              → Critical
  0 < height < 5           → Low
  5 <= height < 10         → Warning
  height >= 10             → Active

Everything here is pure; derive() is memoised on (h1, h2, activated).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional

WATER_HEIGHT_PRECISION = 2
METRES_TO_FEET = 3.28084

LOW_THRESHOLD_M = 5.0
ACTIVE_THRESHOLD_M = 10.0


class NodeStatus(Enum):
    NOT_ACTIVATED = "Not Activated"
    CRITICAL = "Critical"
    LOW = "Low"
    WARNING = "Warning"
    ACTIVE = "Active"

    @property
    def is_alert(self) -> bool:
        return self in (NodeStatus.CRITICAL, NodeStatus.LOW, NodeStatus.WARNING)


@dataclass(frozen=True)
class NodeConfig:
    """Node configuration as owned by the external settings store (read-only here)."""
    node_id: str
    activated: bool = False
    h1: float = 0.0
    location: str = ""
    region: str = ""

    @classmethod
    def from_mapping(cls, node_id: str, data: Optional[Mapping[str, Any]]) -> "NodeConfig":
        """Build from a store entry shaped {activated, h1_m, location, region}."""
        if not data:
            return cls(node_id=node_id)
        try:
            h1 = float(data.get("h1_m") or 0)
        except (TypeError, ValueError):
            h1 = 0.0
        if math.isnan(h1) or h1 < 0:
            h1 = 0.0
        return cls(
            node_id=node_id,
            activated=bool(data.get("activated", False)),
            h1=h1,
            location=str(data.get("location") or ""),
            region=str(data.get("region") or ""),
        )


@dataclass(frozen=True)
class DerivedMetrics:
    node_id: str
    activated: bool
    h1: float
    h2: float
    water_height: float
    status: NodeStatus

    @property
    def water_height_ft(self) -> float:
        return round(self.water_height * METRES_TO_FEET, WATER_HEIGHT_PRECISION)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "activated": self.activated,
            "h1_m": self.h1,
            "h2_m": self.h2,
            "water_height_m": self.water_height,
            "water_height_ft": self.water_height_ft,
            "status": self.status.value,
        }


def _raw_height(activated: bool, h1: float, h2: float) -> float:
    if not activated or h1 <= 0 or h2 >= h1:
        return 0.0
    return h1 - h2


def water_height(activated: bool, h1: float, h2: float) -> float:
    """Water above the cable end at display precision; saturates at 0 for h2 >= h1."""
    return round(_raw_height(activated, h1, h2), WATER_HEIGHT_PRECISION)


def classify(activated: bool, height: float) -> NodeStatus:
    if not activated:
        return NodeStatus.NOT_ACTIVATED
    if height <= 0:
        return NodeStatus.CRITICAL
    if height < LOW_THRESHOLD_M:
        return NodeStatus.LOW
    if height < ACTIVE_THRESHOLD_M:
        return NodeStatus.WARNING
    return NodeStatus.ACTIVE


@lru_cache(maxsize=4096)
def _evaluate(h1: float, h2: float, activated: bool) -> tuple[float, NodeStatus]:
    # Status follows the unrounded height; only the reported value is rounded
    height = _raw_height(activated, h1, h2)
    return round(height, WATER_HEIGHT_PRECISION), classify(activated, height)


def derive(config: NodeConfig, depth: float) -> DerivedMetrics:
    """Derive water height and status for one reading of a node."""
    height, status = _evaluate(config.h1, depth, config.activated)
    return DerivedMetrics(
        node_id=config.node_id,
        activated=config.activated,
        h1=config.h1,
        h2=depth,
        water_height=height,
        status=status,
    )


# ═══════════════════════════════════════════════════════════
#  AGGREGATES
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DerivedReading:
    """A parsed reading together with the metrics derived from it."""
    node_id: str
    timestamp_key: str
    timestamp: datetime
    metrics: DerivedMetrics

    def to_dict(self) -> dict:
        return {
            "timestamp_key": self.timestamp_key,
            "timestamp": self.timestamp.isoformat(),
            **self.metrics.to_dict(),
        }


@dataclass(frozen=True)
class FleetSummary:
    total_nodes: int
    active_nodes: int
    alerts: int
    not_activated: int
    total_water_height: float
    avg_water_height: float

    def to_dict(self) -> dict:
        return {
            "total_nodes": self.total_nodes,
            "active_nodes": self.active_nodes,
            "alerts": self.alerts,
            "not_activated": self.not_activated,
            "total_water_height_m": self.total_water_height,
            "avg_water_height_m": self.avg_water_height,
        }


def summarize_fleet(metrics: Iterable[DerivedMetrics]) -> FleetSummary:
    """Dashboard headline numbers across the latest metrics of every node."""
    nodes = list(metrics)
    activated = [m for m in nodes if m.activated]
    total = sum(m.water_height for m in activated)
    avg = total / len(activated) if activated else 0.0
    return FleetSummary(
        total_nodes=len(nodes),
        active_nodes=sum(1 for m in nodes if m.status is NodeStatus.ACTIVE),
        alerts=sum(1 for m in nodes if m.status.is_alert),
        not_activated=sum(1 for m in nodes if not m.activated),
        total_water_height=round(total, WATER_HEIGHT_PRECISION),
        avg_water_height=round(avg, WATER_HEIGHT_PRECISION),
    )


@dataclass(frozen=True)
class NodeHistoryStats:
    node_id: str
    count: int
    avg_water_height: float
    max_water_height: float
    min_water_height: float
    latest_status: NodeStatus
    last_reading: Optional[str]

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "count": self.count,
            "avg_water_height_m": self.avg_water_height,
            "max_water_height_m": self.max_water_height,
            "min_water_height_m": self.min_water_height,
            "latest_status": self.latest_status.value,
            "last_reading": self.last_reading,
        }


def summarize_history(node_id: str, readings: Iterable[DerivedReading]) -> NodeHistoryStats:
    """
    Per-node statistics over a reading history.

    The average only counts readings taken while the node was activated;
    max/min cover every reading.
    """
    history = list(readings)
    if not history:
        return NodeHistoryStats(node_id, 0, 0.0, 0.0, 0.0, NodeStatus.NOT_ACTIVATED, None)

    heights = [r.metrics.water_height for r in history]
    activated = [r.metrics.water_height for r in history if r.metrics.activated]
    latest = max(history, key=lambda r: r.timestamp)
    return NodeHistoryStats(
        node_id=node_id,
        count=len(history),
        avg_water_height=round(sum(activated) / len(activated), WATER_HEIGHT_PRECISION) if activated else 0.0,
        max_water_height=max(heights),
        min_water_height=min(heights),
        latest_status=latest.metrics.status,
        last_reading=latest.timestamp_key,
    )
