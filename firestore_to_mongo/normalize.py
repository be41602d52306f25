"""
Value normalization for Firestore documents.

Firestore hands back timestamps in several shapes depending on how the
document was written: DatetimeWithNanoseconds objects, protobuf-style
Timestamp objects, and plain ``{_seconds, _nanoseconds}`` maps left behind
by JSON exports. Everything becomes epoch milliseconds (int) so MongoDB
sees one representation. ``normalize`` is total and idempotent; anything it
does not recognise is returned unchanged.
"""

import math
import numbers
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)

_SECONDS_KEYS = ("_seconds", "seconds")
_NANOS_FOR = {"_seconds": "_nanoseconds", "seconds": "nanoseconds"}

# BSON int64
_MILLIS_RANGE = (-(2 ** 63), 2 ** 63 - 1)


def _is_number(value: Any) -> bool:
    """Finite real number. NaN and infinities are valid Firestore doubles but never timestamps."""
    if not isinstance(value, numbers.Real) or isinstance(value, bool):
        return False
    return isinstance(value, numbers.Integral) or math.isfinite(value)


def _floor(value: float, scale: int = 1, divisor: int = 1) -> Optional[int]:
    if isinstance(value, numbers.Integral):
        return int(value) * scale // divisor
    scaled = value * scale / divisor
    return math.floor(scaled) if math.isfinite(scaled) else None


def _millis(seconds: float, nanos: float = 0, millis: float = 0) -> Optional[int]:
    parts = (_floor(seconds, scale=1000), _floor(nanos, divisor=1_000_000), _floor(millis))
    if None in parts:
        return None
    total = sum(parts)
    if not _MILLIS_RANGE[0] <= total <= _MILLIS_RANGE[1]:
        return None
    return total


def _datetime_to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // ONE_MS


def _timestamp_map_to_millis(value: Mapping) -> Optional[int]:
    """``{_seconds, _nanoseconds}`` or ``{seconds, nanoseconds}`` -> millis, else None."""
    for seconds_key in _SECONDS_KEYS:
        if seconds_key not in value:
            continue
        nanos_key = _NANOS_FOR[seconds_key]
        if set(value) - {seconds_key, nanos_key}:
            return None
        seconds = value[seconds_key]
        nanos = value.get(nanos_key, 0 if seconds_key == "_seconds" else None)
        if not _is_number(seconds) or not _is_number(nanos):
            return None
        return _millis(seconds, nanos)
    return None


def _timestamp_object_to_millis(value: Any) -> Optional[int]:
    """Protobuf / google.cloud Timestamp objects (``seconds`` + ``nanos`` attributes)."""
    seconds = getattr(value, "seconds", None)
    nanos = getattr(value, "nanos", None)
    if _is_number(seconds) and _is_number(nanos):
        return _millis(seconds, nanos)
    return None


def _is_document_reference(value: Any) -> bool:
    return hasattr(value, "path") and hasattr(value, "id") and hasattr(value, "parent")


def _is_geo_point(value: Any) -> bool:
    return hasattr(value, "latitude") and hasattr(value, "longitude") and not isinstance(value, Mapping)


def to_millis(value: Any) -> Optional[int]:
    """Epoch millis for any timestamp variant, or None when ``value`` is not one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _datetime_to_millis(value)
    if _is_number(value):
        return _millis(0, millis=value)
    if isinstance(value, Mapping):
        return _timestamp_map_to_millis(value)
    return _timestamp_object_to_millis(value)


def normalize(value: Any) -> Any:
    """Recursively rewrite timestamps to epoch millis; unknown shapes pass through."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, numbers.Number):
        return value
    if isinstance(value, datetime):
        return _datetime_to_millis(value)
    if isinstance(value, Mapping):
        millis = _timestamp_map_to_millis(value)
        if millis is not None:
            return millis
        return {key: normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    millis = _timestamp_object_to_millis(value)
    if millis is not None:
        return millis
    if _is_document_reference(value):
        return value.path
    if _is_geo_point(value):
        return {"latitude": value.latitude, "longitude": value.longitude}
    return value


def normalize_fields(fields: Optional[Mapping[str, Any]]) -> dict:
    """Normalize a whole document field map."""
    return {key: normalize(item) for key, item in (fields or {}).items()}
