"""Small helpers with no pipeline knowledge."""

import hashlib
from datetime import date, datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def json_serializer(obj: Any) -> Any:
    """``default=`` hook for json.dumps handling datetimes, dates and sets."""
    if isinstance(obj, datetime):
        return ensure_utc(obj).isoformat().replace("+00:00", "Z")
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def stable_digest(*parts: str) -> str:
    """SHA-256 hex digest of ``|``-joined parts."""
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
