"""
Push Channel — Interactive Notifications

Delivers alert notifications through a NotificationSurface, the capability
behind the operator's notification tray. Delivery only happens while the
surface permission is "granted"; "default" and "denied" skip silently.

Every notification carries a tag (the transition key, e.g. "node-01-offline")
so a newer notification for the same key replaces the older one, and is
closed automatically after a fixed display duration.

The bundled InMemoryNotificationCenter keeps the active notifications for
the dashboard to poll over HTTP; the operator's permission decision is set
through the API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from config import get_settings

logger = logging.getLogger("well_monitor.push")


class PermissionState(Enum):
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    tag: str
    icon: str = ""
    badge: str = ""
    auto_close_seconds: float = 8.0
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "body": self.body,
            "tag": self.tag,
            "icon": self.icon,
            "badge": self.badge,
            "created_at": self.created_at,
        }


class NotificationHandle(Protocol):
    def close(self) -> None:
        ...


class NotificationSurface(Protocol):
    @property
    def permission(self) -> PermissionState:
        ...

    async def request_permission(self) -> PermissionState:
        ...

    def display(self, notification: Notification) -> Optional[NotificationHandle]:
        ...


class _ActiveNotification:
    def __init__(self, center: "InMemoryNotificationCenter", notification: Notification):
        self._center = center
        self.notification = notification

    def close(self) -> None:
        self._center._close(self)


class InMemoryNotificationCenter:
    """NotificationSurface holding the currently visible notifications, keyed by tag."""

    def __init__(self, permission: PermissionState = PermissionState.DEFAULT):
        self._permission = permission
        self._active: dict[str, _ActiveNotification] = {}

    @property
    def permission(self) -> PermissionState:
        return self._permission

    def set_permission(self, permission: PermissionState) -> None:
        """Record the operator's decision."""
        if permission is not self._permission:
            logger.info("Push permission: %s → %s", self._permission.value, permission.value)
        self._permission = permission

    async def request_permission(self) -> PermissionState:
        return self._permission

    def display(self, notification: Notification) -> _ActiveNotification:
        handle = _ActiveNotification(self, notification)
        self._active[notification.tag] = handle
        return handle

    def _close(self, handle: _ActiveNotification) -> None:
        # A replaced notification must not close its replacement.
        if self._active.get(handle.notification.tag) is handle:
            del self._active[handle.notification.tag]

    def active(self) -> list[Notification]:
        return [h.notification for h in self._active.values()]


class PushChannel:
    """
    Permission-gated push delivery with auto-dismiss.

    Usage:
        channel = PushChannel(InMemoryNotificationCenter())
        await channel.request_permission()
        if channel.available:
            await channel.send("⚠️ node-01 OFFLINE", "No data for 5 minutes.", "node-01-offline")
    """

    name = "push"

    def __init__(
        self,
        surface: NotificationSurface,
        display_seconds: float = 0,
        icon: str = "",
        badge: str = "",
    ):
        settings = get_settings()
        self._surface = surface
        self._display_seconds = display_seconds or settings.push_display_seconds
        self._icon = icon or settings.push_icon
        self._badge = badge or settings.push_badge

        # Metrics
        self._total_sent = 0
        self._total_skipped = 0

    @property
    def permission(self) -> PermissionState:
        return self._surface.permission

    @property
    def available(self) -> bool:
        return self._surface.permission is PermissionState.GRANTED

    async def request_permission(self) -> PermissionState:
        permission = await self._surface.request_permission()
        logger.info("Push permission is %s", permission.value)
        return permission

    async def send(self, title: str, body: str, tag: str) -> bool:
        """Display a notification. Returns False when permission is not granted."""
        if not self.available:
            self._total_skipped += 1
            logger.debug("Push skipped for %s (permission %s)", tag, self.permission.value)
            return False

        notification = Notification(
            title=title,
            body=body,
            tag=tag,
            icon=self._icon,
            badge=self._badge,
            auto_close_seconds=self._display_seconds,
        )
        handle = self._surface.display(notification)
        if handle is not None:
            asyncio.get_running_loop().call_later(self._display_seconds, handle.close)

        self._total_sent += 1
        logger.info("Push: displayed %s", tag)
        return True

    @property
    def metrics(self) -> dict:
        return {
            "permission": self.permission.value,
            "total_sent": self._total_sent,
            "total_skipped": self._total_skipped,
        }
