"""
Quarter-hour slot clock. All slot math is done in UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

SLOT_MINUTES = 15


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slot_start(at: datetime) -> datetime:
    """Start of the 15-minute slot containing *at* (e.g. 07:34:12 -> 07:30:00)."""
    at = at.astimezone(timezone.utc)
    minute = (at.minute // SLOT_MINUTES) * SLOT_MINUTES
    return at.replace(minute=minute, second=0, microsecond=0)


def slot_key(at: datetime) -> str:
    """Stable slot identifier, also used in per-slot log file names."""
    return slot_start(at).strftime("%Y-%m-%d_%H-%M")


def minutes_since_slot_start(at: datetime) -> float:
    return (at.astimezone(timezone.utc) - slot_start(at)).total_seconds() / 60.0


def seconds_until(at: datetime, minutes_past: float) -> float:
    """Seconds from *at* until *minutes_past* into its slot (0 if already past)."""
    target = slot_start(at) + timedelta(minutes=minutes_past)
    return max(0.0, (target - at.astimezone(timezone.utc)).total_seconds())


def updown_slug(asset: str, at: datetime) -> str:
    """Polymarket slug of the 15-minute up/down market open at *at*."""
    return f"{asset}-updown-15m-{int(slot_start(at).timestamp())}"


def iso_timestamp(at: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix."""
    at = at.astimezone(timezone.utc)
    return at.strftime("%Y-%m-%dT%H:%M:%S.") + f"{at.microsecond // 1000:03d}Z"
