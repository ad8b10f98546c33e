from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping

from cm_core.errors import ConfigurationError
from cm_core.types import KEY_FIELD, CandleType

_RESOLUTION_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}

_COMPOSITE_FIELDS = ("year", "month", "day", "hour", "minute")


def parse_candle_type(value: Any) -> CandleType:
    if isinstance(value, CandleType):
        return value
    try:
        return CandleType(str(value or "").strip().lower())
    except ValueError as exc:
        allowed = ", ".join(t.value for t in CandleType)
        raise ConfigurationError(f"Unknown candle type {value!r}. Expected one of: {allowed}") from exc


def resolution_seconds(resolution: str) -> int:
    try:
        return _RESOLUTION_SECONDS[resolution]
    except KeyError as exc:
        allowed = ", ".join(_RESOLUTION_SECONDS)
        raise ConfigurationError(f"Unsupported resolution {resolution!r}. Expected one of: {allowed}") from exc


def floor_to_resolution(ts: int, resolution: str) -> int:
    step = resolution_seconds(resolution)
    return int(ts) - int(ts) % step


def _composite_to_epoch(parts: Mapping[str, Any]) -> int:
    try:
        dt = datetime(*(int(parts[name]) for name in _COMPOSITE_FIELDS), tzinfo=timezone.utc)
    except (KeyError, TypeError) as exc:
        raise ValueError(f"incomplete composite timestamp: {dict(parts)!r}") from exc
    return int(dt.timestamp())


def bucket_start(raw: Mapping[str, Any]) -> int:
    """Bucket start of a raw provider candle in epoch seconds (UTC).

    Accepts a scalar epoch, a ``{"seconds": ...}`` timestamp message, or the
    provider's composite year/month/day/hour/minute form, either nested under
    ``start_time`` or carried on the candle itself.
    """
    value = raw.get("start_time")
    if value is None:
        if all(name in raw for name in _COMPOSITE_FIELDS):
            return _composite_to_epoch(raw)
        raise ValueError("candle has no start_time")
    if isinstance(value, Mapping):
        if "seconds" in value:
            return int(value["seconds"])
        return _composite_to_epoch(value)
    return int(value)


def make_key(candle_type: CandleType, ts: int, resolution: str, asset: str) -> str:
    return f"{candle_type.value}_{int(ts)}_{resolution}_{asset}"


def normalize(raw: Mapping[str, Any], candle_type: CandleType) -> Dict[str, Any]:
    """Canonical sink record for a raw candle.

    The key depends only on (type, bucket start, resolution, asset), so the
    backfill and live paths produce the same key for the same bucket.
    """
    ctype = parse_candle_type(candle_type)
    ts = bucket_start(raw)
    asset = raw.get("asset")
    resolution = raw.get("resolution")
    if not asset or not resolution:
        raise ValueError(f"candle missing asset/resolution: asset={asset!r} resolution={resolution!r}")

    record: Dict[str, Any] = {k: v for k, v in raw.items() if k not in _COMPOSITE_FIELDS}
    record["asset"] = str(asset)
    record["resolution"] = str(resolution)
    record["start_time"] = ts
    record["updated"] = bool(raw.get("updated", False))
    record["type"] = ctype.value
    record[KEY_FIELD] = make_key(ctype, ts, str(resolution), str(asset))
    return record
