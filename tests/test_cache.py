import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import WEDNESDAY_1405
from saving_monitor.cache import TieredCache, is_valid, ttl
from saving_monitor.errors import APIError, CacheError
from saving_monitor.models import CacheEntry
from saving_monitor.state import AppState


class CountingFetch:
    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        value = self.values.pop(0)
        if isinstance(value, BaseException):
            raise value
        return value


def test_validity_boundary_is_exclusive():
    ts = WEDNESDAY_1405
    entry = CacheEntry(value=1, timestamp=ts)
    limit = ttl("octopoints", ts)
    assert is_valid(entry, "octopoints", ts + limit - timedelta(seconds=1))
    assert not is_valid(entry, "octopoints", ts + limit)


def test_saving_session_ttl_follows_uk_time_of_day():
    # January: UK local == UTC
    assert ttl("saving_sessions", datetime(2025, 1, 15, 14, 30, tzinfo=timezone.utc)) == timedelta(minutes=10)
    assert ttl("saving_sessions", datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)) == timedelta(minutes=30)
    assert ttl("saving_sessions", datetime(2025, 1, 15, 20, 0, tzinfo=timezone.utc)) == timedelta(hours=2)
    assert ttl("saving_sessions", datetime(2025, 1, 18, 14, 30, tzinfo=timezone.utc)) == timedelta(hours=2)
    # July: 13:30 UTC is 14:30 BST
    assert ttl("saving_sessions", datetime(2025, 7, 16, 13, 30, tzinfo=timezone.utc)) == timedelta(minutes=10)


def test_fixed_ttls():
    now = WEDNESDAY_1405
    assert ttl("meter_devices", now) == timedelta(days=7)
    assert ttl("usage_measurements", now) == timedelta(minutes=30)
    assert ttl("free_electricity", now) == timedelta(minutes=5)
    with pytest.raises(KeyError):
        ttl("unknown", now)


def test_peak_window_hit_then_miss():
    cache = TieredCache(AppState())
    fetch = CountingFetch("first", "second")
    stored_at = WEDNESDAY_1405

    async def scenario():
        a = await cache.get_or_fetch("saving_sessions", stored_at, fetch)
        b = await cache.get_or_fetch("saving_sessions", stored_at + timedelta(minutes=7), fetch)
        c = await cache.get_or_fetch("saving_sessions", stored_at + timedelta(minutes=15), fetch)
        return a, b, c

    assert asyncio.run(scenario()) == ("first", "first", "second")
    assert fetch.calls == 2


def test_failed_fetch_keeps_stale_entry_and_raises():
    state = AppState()
    cache = TieredCache(state)
    cause = APIError(500, "octopoints", "down")
    fetch = CountingFetch(10, cause)

    async def scenario():
        await cache.get_or_fetch("octopoints", WEDNESDAY_1405, fetch)
        await cache.get_or_fetch("octopoints", WEDNESDAY_1405 + timedelta(hours=2), fetch)

    with pytest.raises(CacheError) as exc:
        asyncio.run(scenario())
    assert exc.value.kind == "octopoints"
    assert exc.value.cause is cause
    assert state.cache["octopoints"].value == 10
    assert state.cache["octopoints"].timestamp == WEDNESDAY_1405


def test_stale_fallback_is_per_resource():
    state = AppState()
    state.cache["octopoints"] = CacheEntry(value=10, timestamp=WEDNESDAY_1405 - timedelta(days=1))
    cache = TieredCache(state, stale_fallback=["octopoints"])
    value = asyncio.run(cache.get_or_fetch("octopoints", WEDNESDAY_1405, CountingFetch(APIError(503, "x", "y"))))
    assert value == 10


def test_unknown_stale_fallback_kind_rejected():
    with pytest.raises(ValueError):
        TieredCache(AppState(), stale_fallback=["nope"])


def test_depth_covering_entry_serves_shallower_reads_only():
    state = AppState()
    cache = TieredCache(state)
    fetch = CountingFetch(["7 days"], ["30 days"])

    async def scenario():
        await cache.get_or_fetch("usage_measurements", WEDNESDAY_1405, fetch, depth=7)
        shallow = await cache.get_or_fetch("usage_measurements", WEDNESDAY_1405, fetch, depth=3)
        deep = await cache.get_or_fetch("usage_measurements", WEDNESDAY_1405, fetch, depth=30)
        return shallow, deep

    assert asyncio.run(scenario()) == (["7 days"], ["30 days"])
    assert state.cache["usage_measurements"].depth == 30


def test_invalidate_and_ages():
    state = AppState()
    cache = TieredCache(state)
    state.cache["wheel_spins"] = CacheEntry(value=None, timestamp=WEDNESDAY_1405 - timedelta(minutes=2))
    ages = cache.ages(WEDNESDAY_1405)
    assert ages["wheel_spins"]["age_sec"] == 120
    assert ages["wheel_spins"]["fresh"] is True
    assert asyncio.run(cache.invalidate("wheel_spins")) is True
    assert cache.peek("wheel_spins") is None
