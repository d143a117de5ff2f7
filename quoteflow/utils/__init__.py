"""Shared utility helpers used across services."""

import uuid
from datetime import datetime, timezone


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None:
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def parse_datetime(value) -> datetime | None:
    """ISO-8601 string (with or without trailing Z) or datetime -> aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return utc(value)
    try:
        return utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except (ValueError, TypeError):
        return None


def generate_id(prefix: str) -> str:
    """Collision-resistant prefixed identifier."""
    return f"{prefix}{uuid.uuid4()}"
