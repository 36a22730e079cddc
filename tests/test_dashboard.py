from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import WEDNESDAY_1405, FakeClient, make_monitor
from dashboard.app import _days, create_app
from saving_monitor.errors import APIError
from saving_monitor.models import FreeElectricitySession, SavingSession, UsageMeasurement, WheelSpins


def _usage(n):
    out = []
    for i in range(n):
        start = WEDNESDAY_1405 - timedelta(hours=i + 1)
        out.append(UsageMeasurement(start_at=start, end_at=start + timedelta(minutes=30), value=0.1 * (i + 1)))
    return out


@pytest.fixture
def fake():
    start = WEDNESDAY_1405 + timedelta(hours=3)
    past = WEDNESDAY_1405 - timedelta(days=1)
    return FakeClient(
        sessions=[
            SavingSession(1, start, start + timedelta(hours=1), 150),
            SavingSession(2, past, past + timedelta(hours=1), 80),
        ],
        points=900,
        free=[FreeElectricitySession("FE-1", start, start + timedelta(hours=1))],
        spins=WheelSpins(electricity=2, gas=1),
        usage=_usage(4),
    )


@pytest.fixture
def monitor(cfg, clock, fake):
    return make_monitor(cfg, clock, fake)


@pytest.fixture
def web(monitor):
    return TestClient(create_app(monitor))


@pytest.mark.parametrize("raw, days", [(None, 7), ("3", 3), ("0", 7), ("-4", 7), ("abc", 7), ("90", 30)])
def test_days_parameter(raw, days):
    assert _days(raw) == days


def test_sessions_overview(web):
    body = web.get("/api/sessions").json()
    assert body["current_points"] == 900
    assert body["account_balance"] == 12.5
    assert body["wheel_of_fortune_spins"] == {"electricity_spins": 2, "gas_spins": 1}
    assert [s["eventId"] for s in body["saving_sessions"]] == [1]
    assert [s["code"] for s in body["free_electricity_sessions"]] == ["FE-1"]
    assert body["campaign_status"]["saving_sessions_enabled"] is True


def test_sessions_overview_degrades_per_resource(web, fake):
    fake.spins = APIError(500, "wheel_spins", "boom")
    fake.account = APIError(500, "account_info", "boom")
    resp = web.get("/api/sessions")
    assert resp.status_code == 200
    body = resp.json()
    assert body["wheel_of_fortune_spins"] == {"electricity_spins": 0, "gas_spins": 0}
    assert body["account_balance"] == 0.0
    assert body["current_points"] == 900


def test_usage_and_refresh(web, fake, monitor):
    body = web.get("/api/usage", params={"days": "2"}).json()
    assert body["success"] is True
    assert body["days"] == 2
    assert body["measurements"] == 4
    assert body["cache_age"] == 0
    assert {"timestamp", "datetime", "value", "unit", "cost", "duration"} <= set(body["data"][0])

    web.get("/api/usage", params={"days": "1"})
    assert fake.fetches["usage_measurements"] == 1

    fake.measurements = _usage(1)
    body = web.post("/api/usage/refresh", params={"days": "2"}).json()
    assert body["refreshed"] is True
    assert body["measurements"] == 1
    assert fake.fetches["usage_measurements"] == 2
    # the device list is cached separately and survives a usage refresh
    assert fake.fetches["meter_devices"] == 1


def test_usage_failure_returns_500(web, fake):
    fake.measurements = APIError(404, "usage", "no smart meter devices found")
    resp = web.get("/api/usage")
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_state_view_does_not_mutate(web, monitor):
    web.get("/api/sessions")
    resp = web.get("/api/state")
    assert resp.status_code == 200
    body = resp.json()
    assert body["account_id"] == "A-1234ABCD"
    assert body["known_sessions"] == 0
    assert body["alerts"] == {}
    assert "saving_sessions" in body["cache"]
    assert monitor.state.known_sessions == set()
    assert len(monitor.state.alerts) == 0


def test_healthz(web):
    assert web.get("/healthz").json() == {"ok": True, "ticks": 0}
