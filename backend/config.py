"""
Configuration Management — Well Telemetry Alerting Engine

Loads all configuration from environment variables with Pydantic Settings.
SMS credentials and destination numbers are never written to the logs.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field


class WellSettings(BaseSettings):
    """
    Centralized configuration loaded from environment variables.
    All sensitive values are loaded at runtime, never hardcoded.
    """

    # ─── Node Health Monitor ────────────────────────────────
    sweep_interval_seconds: float = Field(default=60, description="Staleness sweep interval")
    offline_timeout_seconds: float = Field(default=300, description="Silence before a node is offline")
    reading_timezone: str = Field(default="UTC", description="Zone for timestamp keys without an offset")

    # ─── Push Notifications ─────────────────────────────────
    push_display_seconds: float = Field(default=8, description="Auto-dismiss delay for notifications")
    push_icon: str = Field(default="/waleki-logo.png", description="Notification icon")
    push_badge: str = Field(default="/waleki-badge.png", description="Notification badge")

    # ─── SMS Gateway (Beem Africa) ──────────────────────────
    sms_api_url: str = Field(default="https://api.beem.africa/v1/send", description="SMS gateway endpoint")
    sms_api_key: str = Field(default="", description="SMS gateway API key")
    sms_secret_key: str = Field(default="", description="SMS gateway secret key")
    sms_sender_id: str = Field(default="", description="Approved sender id")
    sms_destination: str = Field(default="", description="Destination number (no +)")
    sms_timeout_seconds: float = Field(default=15.0, description="HTTP timeout for one SMS attempt")

    # ─── Alert History ──────────────────────────────────────
    alert_history_size: int = Field(default=100, description="Alert records kept in memory")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache()
def get_settings() -> WellSettings:
    """Cached singleton for settings to avoid re-reading .env on every call."""
    return WellSettings()


def configure_logging() -> logging.Logger:
    """
    Configure the `well_monitor` logger hierarchy.

    Logs go to stdout only. Only metadata (node ids, timestamps, status
    codes) is logged; SMS credentials and phone numbers never are.
    """
    logger = logging.getLogger("well_monitor")
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)

    # Suppress verbose library logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logger
