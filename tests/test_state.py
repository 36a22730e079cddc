from datetime import timedelta

import orjson
import pytest

from conftest import WEDNESDAY_1405
from saving_monitor.alerts import AlertStage
from saving_monitor.errors import StateError
from saving_monitor.models import (
    CacheEntry,
    Credential,
    FreeElectricitySession,
    SavingSession,
    SavingSessionsSnapshot,
    UsageMeasurement,
    WheelSpins,
)
from saving_monitor.monitor import load_or_fresh
from saving_monitor.state import AppState, load_state, save_state, state_path


def _populated() -> AppState:
    state = AppState()
    state.credential = Credential("tok", WEDNESDAY_1405 + timedelta(hours=1))
    state.known_sessions = {3, 1}
    state.known_free_electricity = {"FE-1"}
    state.alerts.evaluate(
        FreeElectricitySession("FE-1", WEDNESDAY_1405 + timedelta(hours=30), WEDNESDAY_1405 + timedelta(hours=31)),
        WEDNESDAY_1405,
    )
    state.schedule.record_tick(False, WEDNESDAY_1405)
    session = SavingSession(1, WEDNESDAY_1405 + timedelta(hours=3), WEDNESDAY_1405 + timedelta(hours=4), 150)
    state.cache["saving_sessions"] = CacheEntry(SavingSessionsSnapshot((session,), 900, True), WEDNESDAY_1405)
    state.cache["wheel_spins"] = CacheEntry(WheelSpins(1, 2), WEDNESDAY_1405)
    state.cache["usage_measurements"] = CacheEntry(
        [UsageMeasurement(WEDNESDAY_1405, WEDNESDAY_1405 + timedelta(minutes=30), 0.25)], WEDNESDAY_1405, depth=7
    )
    return state


def test_save_and_load(tmp_path):
    state = _populated()
    path = save_state(state, "A-1", str(tmp_path), now=WEDNESDAY_1405)
    assert path == state_path("A-1", str(tmp_path))
    assert [p.name for p in tmp_path.iterdir()] == ["state_A-1.json"]

    loaded = load_state("A-1", str(tmp_path))
    assert loaded.credential == state.credential
    assert loaded.known_sessions == {1, 3}
    assert loaded.known_free_electricity == {"FE-1"}
    assert loaded.alerts.get("FE-1").fired == {AlertStage.INITIAL}
    assert loaded.schedule.consecutive_empty == 1
    assert loaded.last_updated == WEDNESDAY_1405
    assert loaded.cache["saving_sessions"].value == state.cache["saving_sessions"].value
    assert loaded.cache["wheel_spins"] == state.cache["wheel_spins"]
    assert loaded.cache["usage_measurements"].depth == 7
    assert loaded.cache["usage_measurements"].value[0].value == 0.25


def test_missing_file_gives_fresh_state(tmp_path):
    state = load_state("A-1", str(tmp_path / "nowhere"))
    assert state.known_sessions == set()
    assert state.credential.token == ""


@pytest.mark.parametrize(
    "content",
    [
        b"{not json",
        b"[1, 2, 3]",
        b'{"alert_states": ["FE-1"]}',
        b'{"schedule": "x"}',
        b'{"known_sessions": 5}',
        b'{"cache": {"octopoints": {"data": 1, "timestamp": "2025-01-15T14:00:00Z", "depth": "7d"}}}',
    ],
)
def test_corrupt_file_raises_state_error(tmp_path, content):
    state_path("A-1", str(tmp_path)).write_bytes(content)
    with pytest.raises(StateError):
        load_state("A-1", str(tmp_path))


def test_partial_and_legacy_files_load(tmp_path):
    raw = {
        "jwt_token": "old",
        "known_sessions": {"5": True, "6": False, "x": True},
        "alert_states": {"FE-2": {"code": "FE-2", "initial_alert": True, "day_of_alert": True}},
        "cache": {
            "octopoints": {"data": 420, "timestamp": "2025-01-15T14:00:00Z"},
            "wheel_spins": {"data": "garbage", "timestamp": "2025-01-15T14:00:00Z"},
            "mystery": {"data": 1, "timestamp": "2025-01-15T14:00:00Z"},
        },
    }
    state_path("A-1", str(tmp_path)).write_bytes(orjson.dumps(raw))
    state = load_state("A-1", str(tmp_path))
    assert state.credential == Credential("old", None)
    assert state.known_sessions == {5}
    assert state.alerts.get("FE-2").highest is AlertStage.DAY_OF
    assert state.cache["octopoints"].value == 420
    assert set(state.cache) == {"octopoints"}
    assert state.schedule.consecutive_empty == 0


def test_save_replaces_existing_file(tmp_path):
    state = AppState()
    state.known_sessions = {1}
    save_state(state, "A-1", str(tmp_path))
    state.known_sessions = {1, 2}
    save_state(state, "A-1", str(tmp_path))
    assert load_state("A-1", str(tmp_path)).known_sessions == {1, 2}
    assert len(list(tmp_path.iterdir())) == 1


def test_monitor_starts_fresh_from_mistyped_state_file(cfg, tmp_path):
    cfg = cfg.with_overrides(state_dir=str(tmp_path))
    state_path(cfg.account_id, cfg.state_dir).write_bytes(b'{"known_sessions": [4], "alert_states": ["FE-1"]}')
    state = load_or_fresh(cfg)
    assert state.known_sessions == set()
    assert len(state.alerts) == 0
