"""
Well Telemetry Alerting Engine — FastAPI Backend

Derives water height and node status from remote well sensors and alerts
the operator (push + SMS) when a node stops reporting.

Endpoints:
  POST /api/snapshot               — Apply a telemetry store snapshot
  POST /api/readings               — Ingest a single pushed reading
  GET  /api/nodes                  — Latest derived metrics per node
  GET  /api/nodes/{node_id}/history — Derived reading history for a node
  GET  /api/fleet                  — Fleet summary + per-node statistics
  GET  /api/monitoring             — Online/offline recency per node
  POST /api/monitoring/clear-alerts — Forget which offline alerts were sent
  GET  /api/alerts                 — Alert dispatch history
  GET  /api/notifications          — Push notifications currently shown
  POST /api/push/permission        — Record the operator's push permission
  GET  /api/metrics                — System metrics

Architecture:
  store snapshot → Parser → Derivation ───────────────▶ /api/nodes, /api/fleet
                      └──▶ NodeHealthMonitor ─sweep─▶ AlertDispatcher ─┬─▶ Push
                                                                       └─▶ SMS
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from alert_dispatcher import AlertDispatcher
from config import get_settings, configure_logging
from node_monitor import NodeHealthMonitor
from push_channel import InMemoryNotificationCenter, PermissionState, PushChannel
from sms_dispatcher import SmsDispatcher
from telemetry_feed import TelemetryFeed

# ─── Configure Logging ───────────────────────────────────
logger = configure_logging()

# ─── Global Components ───────────────────────────────────
settings = get_settings()
monitor: Optional[NodeHealthMonitor] = None
notification_center: Optional[InMemoryNotificationCenter] = None
push: Optional[PushChannel] = None
sms: Optional[SmsDispatcher] = None
dispatcher: Optional[AlertDispatcher] = None
feed: Optional[TelemetryFeed] = None


# ─── Request / Response Models ────────────────────────────

class SnapshotRequest(BaseModel):
    """Full telemetry store snapshot."""
    LoRaSensor: dict[str, dict[str, Any]] = Field(default_factory=dict, description="node → key → payload")
    node_config: dict[str, Any] = Field(default_factory=dict, alias="config", description='{"nodes": {node: {...}}}')


class ReadingRequest(BaseModel):
    """A single reading pushed by the store."""
    node_id: str
    timestamp_key: str = Field(..., description="Key the reading is stored under")
    payload: Any = Field(default_factory=dict, description="Sensor payload or descriptive string")


class PermissionRequest(BaseModel):
    permission: PermissionState


class ApiResponse(BaseModel):
    """Standard API response."""
    success: bool
    message: str
    data: dict = {}


# ─── Application Lifecycle ────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle manager."""
    global monitor, notification_center, push, sms, dispatcher, feed

    logger.info("Well telemetry engine starting")

    monitor = NodeHealthMonitor()
    notification_center = InMemoryNotificationCenter()
    push = PushChannel(notification_center)
    sms = SmsDispatcher()
    dispatcher = AlertDispatcher(push=push, sms=sms)
    feed = TelemetryFeed(monitor)

    monitor.on_transition(dispatcher.submit)
    await push.request_permission()
    if not sms.available:
        logger.warning("SMS gateway not configured — SMS alerts disabled")

    await monitor.start()
    logger.info("✅ All systems initialized")

    yield  # App is running

    # ─── Graceful Shutdown ────────────────────────────────
    logger.info("Shutting down gracefully...")

    await monitor.stop()
    await dispatcher.close()

    logger.info("✅ Shutdown complete")


# ─── FastAPI Application ──────────────────────────────────

app = FastAPI(
    title="Well Telemetry Alerting Engine",
    description="Water-well sensor derivation, node health monitoring and alerting",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_feed() -> TelemetryFeed:
    if not feed:
        raise HTTPException(status_code=503, detail="Telemetry feed not initialized")
    return feed


# ═══════════════════════════════════════════════════════════
#  ENDPOINTS
# ═══════════════════════════════════════════════════════════

@app.post("/api/snapshot", response_model=ApiResponse)
async def receive_snapshot(request: SnapshotRequest):
    """Apply a full store snapshot (subscribe-and-replace)."""
    latest = _require_feed().apply_snapshot(request.model_dump(by_alias=True))
    return ApiResponse(
        success=True,
        message=f"Snapshot applied ({len(latest)} nodes)",
        data={"nodes": [r.to_dict() for r in latest]},
    )


@app.post("/api/readings", response_model=ApiResponse)
async def receive_reading(request: ReadingRequest):
    """Ingest one reading. Unparseable readings are dropped, not rejected."""
    derived = _require_feed().ingest(request.node_id, request.timestamp_key, request.payload)
    if derived is None:
        return ApiResponse(success=False, message=f"Reading {request.timestamp_key} discarded")
    return ApiResponse(success=True, message="Reading recorded", data=derived.to_dict())


@app.get("/api/nodes")
async def get_nodes():
    return {"nodes": [r.to_dict() for r in _require_feed().latest()]}


@app.get("/api/nodes/{node_id}/history")
async def get_node_history(node_id: str, limit: int = 100):
    history = _require_feed().history(node_id)
    if not history:
        raise HTTPException(status_code=404, detail=f"No readings for node {node_id}")
    return {"node_id": node_id, "readings": [r.to_dict() for r in history[:limit]]}


@app.get("/api/fleet")
async def get_fleet():
    current = _require_feed()
    return {
        "summary": current.fleet_summary().to_dict(),
        "nodes": [s.to_dict() for s in current.node_stats()],
    }


@app.get("/api/monitoring")
async def get_monitoring():
    """Recency of each node as seen by the health monitor."""
    if not monitor:
        return {"status": "starting", "timestamp": time.time()}
    return {"timestamp": time.time(), "nodes": monitor.get_status()}


@app.post("/api/monitoring/clear-alerts", response_model=ApiResponse)
async def clear_monitoring_alerts():
    """Reset sent-alert tracking so nodes that are still offline alert again."""
    if not monitor:
        raise HTTPException(status_code=503, detail="Monitor not initialized")
    cleared = monitor.clear_suppression()
    return ApiResponse(success=True, message=f"Cleared {cleared} suppressed alerts")


@app.get("/api/alerts")
async def get_alerts(limit: int = 20):
    if not dispatcher:
        return {"alerts": [], "count": 0}
    alerts = dispatcher.get_history(limit=limit)
    return {"alerts": alerts, "count": len(alerts)}


@app.get("/api/notifications")
async def get_notifications():
    if not notification_center:
        return {"permission": PermissionState.DEFAULT.value, "notifications": []}
    return {
        "permission": notification_center.permission.value,
        "notifications": [n.to_dict() for n in notification_center.active()],
    }


@app.post("/api/push/permission", response_model=ApiResponse)
async def set_push_permission(request: PermissionRequest):
    if not notification_center:
        raise HTTPException(status_code=503, detail="Push channel not initialized")
    notification_center.set_permission(request.permission)
    return ApiResponse(success=True, message=f"Push permission {request.permission.value}")


@app.get("/api/metrics")
async def get_metrics():
    """Aggregate metrics from all subsystems."""
    return {
        "timestamp": time.time(),
        "feed": feed.metrics if feed else {},
        "monitor": monitor.metrics if monitor else {},
        "alerts": dispatcher.metrics if dispatcher else {},
        "push": push.metrics if push else {},
        "sms": sms.metrics if sms else {},
    }


# ─── Root ─────────────────────────────────────────────────

@app.get("/")
async def root():
    return {
        "service": "Well Telemetry Alerting Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "monitoring": "/api/monitoring",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="warning")
