"""
Reading Parser — Sensor Payload → Depth + Timestamp

Turns one entry of the telemetry store (`timestamp key → payload`) into a
SensorReading. Both halves are driven by ordered strategy lists so new
payload shapes can be supported by appending a strategy:

  Depth (first non-zero result wins, otherwise 0.0):
    1. Direct numeric fields:  depth_m, Depth, depth, H2, h2
    2. RawData text:           "Depth=1.23m", then the short "D: 1.23" form

  Timestamp (first valid result wins, otherwise the reading is dropped):
    1. ISO-8601 key            "2026-01-24T17:10:45Z", "2026-01-24 17:10:45"
    2. Underscore key          "2026-01-24_17-10-45"
    3. Integer epoch key       "1769274645" (s) or "1769274645000" (ms)
    4. Payload "Timestamp" field, through the three rules above

Dropped readings are logged as warnings and never raised.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

logger = logging.getLogger("well_monitor.parser")

# Epoch values below this are taken as seconds, anything larger as milliseconds.
EPOCH_SECONDS_CEILING = 100_000_000_000

RAW_TEXT_FIELD = "RawData"
TIMESTAMP_FIELD = "Timestamp"

_LEADING_NUMBER = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+))")
_INTEGER_KEY = re.compile(r"^\s*\d+\s*$")


@dataclass(frozen=True)
class SensorReading:
    """One parsed telemetry event. Immutable once created."""
    node_id: str
    timestamp_key: str
    timestamp: datetime
    depth: float
    raw_payload: Any = field(default=None, compare=False, repr=False)

    @property
    def epoch_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)


def coerce_depth(value: Any) -> Optional[float]:
    """Numeric value of a depth field, or None when it is not a usable number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if not match:
            return None
        number = float(match.group(1))
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


# ═══════════════════════════════════════════════════════════
#  DEPTH EXTRACTION
# ═══════════════════════════════════════════════════════════

class DepthExtractor(Protocol):
    def extract(self, payload: Mapping[str, Any]) -> Optional[float]:
        ...


class FieldDepthExtractor:
    """Reads the first present field from a fixed priority list."""

    def __init__(self, fields: Sequence[str] = ("depth_m", "Depth", "depth", "H2", "h2")):
        self.fields = tuple(fields)

    def extract(self, payload: Mapping[str, Any]) -> Optional[float]:
        for name in self.fields:
            if payload.get(name) is not None:
                return coerce_depth(payload[name])
        return None


class PatternDepthExtractor:
    """Pulls a depth out of the free-text RawData field, primary pattern first."""

    def __init__(
        self,
        patterns: Sequence[str] = (r"Depth\s*[=:]\s*([\d.]+)", r"D\s*[=:]\s*([\d.]+)"),
        source_field: str = RAW_TEXT_FIELD,
    ):
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.source_field = source_field

    def extract(self, payload: Mapping[str, Any]) -> Optional[float]:
        text = payload.get(self.source_field)
        if not isinstance(text, str):
            return None
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return coerce_depth(match.group(1))
        return None


DEFAULT_DEPTH_EXTRACTORS: tuple[DepthExtractor, ...] = (
    FieldDepthExtractor(),
    PatternDepthExtractor(),
)


def extract_depth(
    payload: Mapping[str, Any],
    extractors: Sequence[DepthExtractor] = DEFAULT_DEPTH_EXTRACTORS,
) -> float:
    """Run the extractors in order; a missing or zero result falls through."""
    for extractor in extractors:
        depth = extractor.extract(payload)
        if depth:
            return depth
    return 0.0


# ═══════════════════════════════════════════════════════════
#  TIMESTAMP NORMALIZATION
# ═══════════════════════════════════════════════════════════

TimestampNormalizer = Callable[[str], Optional[datetime]]


def _from_iso(key: str) -> Optional[datetime]:
    # Bare integers are epochs, not compact ISO dates like "20260124".
    if _INTEGER_KEY.match(key) or "_" in key:
        return None
    try:
        return datetime.fromisoformat(key.strip())
    except ValueError:
        return None


def _from_underscore_key(key: str) -> Optional[datetime]:
    parts = key.strip().split("_")
    if len(parts) != 2 or "-" not in parts[1]:
        return None
    date_part, time_part = parts
    try:
        return datetime.fromisoformat(f"{date_part}T{time_part.replace('-', ':')}")
    except ValueError:
        return None


def _from_epoch(key: str) -> Optional[datetime]:
    if not _INTEGER_KEY.match(key):
        return None
    value = int(key)
    seconds = value if value < EPOCH_SECONDS_CEILING else value / 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


TIMESTAMP_NORMALIZERS: tuple[TimestampNormalizer, ...] = (
    _from_iso,
    _from_underscore_key,
    _from_epoch,
)


def normalize_timestamp(value: Any, tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """Aware datetime for a timestamp key or field value, or None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        value = str(int(value))
    if not isinstance(value, str) or not value.strip():
        return None

    for normalizer in TIMESTAMP_NORMALIZERS:
        parsed = normalizer(value)
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=tz)
            return parsed
    return None


def parse_timestamp(
    key: str,
    payload: Optional[Mapping[str, Any]] = None,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """Normalize the store key, falling back to the payload's own Timestamp field."""
    parsed = normalize_timestamp(key, tz)
    if parsed is None and payload is not None:
        parsed = normalize_timestamp(payload.get(TIMESTAMP_FIELD), tz)
    return parsed


# ═══════════════════════════════════════════════════════════
#  READING
# ═══════════════════════════════════════════════════════════

def parse_reading(
    node_id: str,
    timestamp_key: str,
    payload: Any,
    tz: tzinfo = timezone.utc,
    extractors: Sequence[DepthExtractor] = DEFAULT_DEPTH_EXTRACTORS,
) -> Optional[SensorReading]:
    """
    Parse one telemetry entry.

    Args:
        node_id: Node the reading belongs to
        timestamp_key: Key the reading is stored under
        payload: Mapping of sensor fields, or a bare descriptive string
        tz: Zone assumed for timestamps that carry no offset

    Returns:
        SensorReading, or None when the reading must be discarded
    """
    if isinstance(payload, str):
        fields: Mapping[str, Any] = {RAW_TEXT_FIELD: payload}
    elif isinstance(payload, Mapping):
        fields = payload
    else:
        logger.warning(
            "Discarding reading %s/%s: unsupported payload type %s",
            node_id,
            timestamp_key,
            type(payload).__name__,
        )
        return None

    timestamp = parse_timestamp(str(timestamp_key), fields, tz)
    if timestamp is None:
        logger.warning("Discarding reading %s/%s: unrecognized timestamp", node_id, timestamp_key)
        return None

    return SensorReading(
        node_id=node_id,
        timestamp_key=str(timestamp_key),
        timestamp=timestamp,
        depth=extract_depth(fields, extractors),
        raw_payload=payload,
    )
