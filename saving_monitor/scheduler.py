"""
Adaptive poll cadence.

New saving sessions are usually announced on weekday afternoons (UK time), so
the monitor polls hard then, moderately during business hours, and backs off
overnight, at weekends and after a run of empty polls. Everything here is a
pure function of its inputs so tests can pass any (hour, weekday) pair.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .constants import (
    DEFAULT_CHECK_INTERVAL,
    INTERVAL_AFTER_NEW_SESSION,
    INTERVAL_BUSINESS_HOURS,
    INTERVAL_EVENT_DRIVEN_BASE,
    INTERVAL_EVENT_DRIVEN_INCREMENT,
    INTERVAL_OFF_PEAK,
    INTERVAL_PEAK_ANNOUNCEMENT,
    UK_BUSINESS_END_HOUR,
    UK_BUSINESS_START_HOUR,
    UK_PEAK_END_HOUR,
    UK_PEAK_START_HOUR,
    UK_TZ,
)
from .models import format_ts, parse_ts


class Tier(str, enum.Enum):
    PEAK = "peak"
    BUSINESS = "business"
    OFF_PEAK = "off_peak"


def _uk_zone() -> tzinfo:
    try:
        return ZoneInfo(UK_TZ)
    except ZoneInfoNotFoundError:
        # no tz database available; UTC is at most an hour off
        return timezone.utc


def uk_local(now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_uk_zone())


def session_tier(hour: int, weekday: int) -> Tier:
    """Classify a UK local (hour, weekday) where weekday 0 is Monday."""
    if weekday >= 5:
        return Tier.OFF_PEAK
    if UK_PEAK_START_HOUR <= hour < UK_PEAK_END_HOUR:
        return Tier.PEAK
    if UK_BUSINESS_START_HOUR <= hour < UK_BUSINESS_END_HOUR:
        return Tier.BUSINESS
    return Tier.OFF_PEAK


def tier_at(now: datetime) -> Tier:
    local = uk_local(now)
    return session_tier(local.hour, local.weekday())


def empty_poll_backoff(consecutive_empty: int) -> timedelta:
    backoff = INTERVAL_EVENT_DRIVEN_BASE + INTERVAL_EVENT_DRIVEN_INCREMENT * consecutive_empty
    return min(backoff, INTERVAL_OFF_PEAK)


def next_interval(
    now: datetime,
    last_new_session_at: Optional[datetime],
    consecutive_empty: int,
    smart_enabled: bool,
    fixed_interval: timedelta = DEFAULT_CHECK_INTERVAL,
) -> timedelta:
    if not smart_enabled:
        return fixed_interval

    # a batch of sessions may still be arriving
    if last_new_session_at is not None and (now - last_new_session_at) < INTERVAL_AFTER_NEW_SESSION:
        return INTERVAL_PEAK_ANNOUNCEMENT

    tier = tier_at(now)
    if tier is Tier.PEAK:
        return INTERVAL_PEAK_ANNOUNCEMENT
    if tier is Tier.BUSINESS:
        return INTERVAL_BUSINESS_HOURS

    if consecutive_empty > 0:
        return empty_poll_backoff(consecutive_empty)
    return INTERVAL_OFF_PEAK


@dataclass
class PollSchedule:
    last_new_session_at: Optional[datetime] = None
    consecutive_empty: int = 0

    def record_tick(self, found_new: bool, now: datetime) -> None:
        if found_new:
            self.last_new_session_at = now
            self.consecutive_empty = 0
        else:
            self.consecutive_empty += 1

    def next_interval(self, now: datetime, smart_enabled: bool, fixed_interval: timedelta = DEFAULT_CHECK_INTERVAL) -> timedelta:
        return next_interval(now, self.last_new_session_at, self.consecutive_empty, smart_enabled, fixed_interval)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_new_session_at": format_ts(self.last_new_session_at),
            "consecutive_empty": self.consecutive_empty,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "PollSchedule":
        raw = raw or {}
        try:
            empty = max(0, int(raw.get("consecutive_empty", 0)))
        except (TypeError, ValueError):
            empty = 0
        return cls(last_new_session_at=parse_ts(raw.get("last_new_session_at")), consecutive_empty=empty)
