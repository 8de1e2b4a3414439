"""Small helpers shared across the tracking, analysis and session modules."""

import hashlib
from datetime import datetime


def hash_string(value: str, length: int = 12) -> str:
    """Deterministic, non-reversible digest of a string"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def anonymized_id(user_id: str) -> str:
    return f"anon-{hash_string(user_id)[:8]}"


def format_hour(hour: int) -> str:
    """Map an hour of day to a coarse time-of-day bucket"""
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def naive_local(moment: datetime) -> datetime:
    """Timezone-aware values converted to naive local time; naive values unchanged"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))
