"""
Per-resource read-through cache over AppState.cache.

A read is served from the stored entry while `now - entry.timestamp` is below
the resource's TTL; the saving-session TTL also depends on the UK time of day.
Entries are replaced wholesale on a successful fetch and left untouched when
the fetch fails.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from .config import CACHE_KINDS
from .constants import (
    CACHE_ACCOUNT_INFO,
    CACHE_CAMPAIGN_STATUS,
    CACHE_FREE_ELECTRICITY,
    CACHE_METER_DEVICES,
    CACHE_OCTOPOINTS,
    CACHE_SAVING_SESSIONS_BUSINESS,
    CACHE_SAVING_SESSIONS_OFF_PEAK,
    CACHE_SAVING_SESSIONS_PEAK,
    CACHE_USAGE_MEASUREMENTS,
    CACHE_WHEEL_SPINS,
)
from .errors import CacheError
from .metrics import emit
from .models import CacheEntry
from .scheduler import Tier, tier_at
from .state import AppState

FIXED_TTLS: Dict[str, timedelta] = {
    "meter_devices": CACHE_METER_DEVICES,
    "usage_measurements": CACHE_USAGE_MEASUREMENTS,
    "wheel_spins": CACHE_WHEEL_SPINS,
    "account_info": CACHE_ACCOUNT_INFO,
    "campaign_status": CACHE_CAMPAIGN_STATUS,
    "octopoints": CACHE_OCTOPOINTS,
    "free_electricity": CACHE_FREE_ELECTRICITY,
}

SAVING_SESSION_TTLS: Dict[Tier, timedelta] = {
    Tier.PEAK: CACHE_SAVING_SESSIONS_PEAK,
    Tier.BUSINESS: CACHE_SAVING_SESSIONS_BUSINESS,
    Tier.OFF_PEAK: CACHE_SAVING_SESSIONS_OFF_PEAK,
}


def ttl(kind: str, now: datetime) -> timedelta:
    if kind == "saving_sessions":
        return SAVING_SESSION_TTLS[tier_at(now)]
    try:
        return FIXED_TTLS[kind]
    except KeyError:
        raise KeyError(f"unknown cache kind: {kind}") from None


def is_valid(entry: Optional[CacheEntry], kind: str, now: datetime) -> bool:
    if entry is None:
        return False
    return (now - entry.timestamp) < ttl(kind, now)


def covers(entry: CacheEntry, depth: Optional[int]) -> bool:
    """An entry built for N days of history serves any request for <= N days."""
    if depth is None:
        return True
    return entry.depth is not None and entry.depth >= depth


class TieredCache:
    def __init__(self, state: AppState, stale_fallback: Iterable[str] = ()):
        self.state = state
        self.stale_fallback = frozenset(stale_fallback)
        unknown = self.stale_fallback.difference(CACHE_KINDS)
        if unknown:
            raise ValueError(f"unknown cache kinds: {', '.join(sorted(unknown))}")

    ttl = staticmethod(ttl)
    is_valid = staticmethod(is_valid)

    async def get_or_fetch(
        self,
        kind: str,
        now: datetime,
        fetch: Callable[[], Awaitable[Any]],
        *,
        depth: Optional[int] = None,
    ) -> Any:
        async with self.state.lock:
            entry = self.state.cache.get(kind)
            if entry is not None and covers(entry, depth) and is_valid(entry, kind, now):
                emit("cache_hit", {"cache": kind})
                return entry.value

        emit("cache_miss", {"cache": kind})
        try:
            value = await fetch()
        except Exception as e:
            emit("cache_error", {"cache": kind, "error": str(e)})
            if kind in self.stale_fallback:
                async with self.state.lock:
                    stale = self.state.cache.get(kind)
                if stale is not None and covers(stale, depth):
                    age = int((now - stale.timestamp).total_seconds())
                    print(f"[cache/WARN] {kind} refresh failed ({e}); serving stale value ({age}s old)")
                    return stale.value
            raise CacheError(kind, "fetch", e) from e

        async with self.state.lock:
            self.state.cache[kind] = CacheEntry(value=value, timestamp=now, depth=depth)
        return value

    async def invalidate(self, kind: str) -> bool:
        async with self.state.lock:
            return self.state.cache.pop(kind, None) is not None

    def peek(self, kind: str) -> Optional[Any]:
        """Last stored value regardless of age, without fetching."""
        entry = self.state.cache.get(kind)
        return entry.value if entry is not None else None

    def ages(self, now: datetime) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for kind, entry in self.state.cache.items():
            out[kind] = {
                "age_sec": int((now - entry.timestamp).total_seconds()),
                "fresh": is_valid(entry, kind, now),
                "depth": entry.depth,
            }
        return out
