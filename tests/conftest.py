import os

# before the package reads its config
os.environ["METRICS_ENABLED"] = "0"
os.environ["PRETTY"] = "0"
os.environ["DEBUG"] = "0"

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import orjson
import pytest

from saving_monitor.config import Config
from saving_monitor.models import AccountInfo, Credential, SavingSessionsSnapshot, SpinResult, WheelSpins
from saving_monitor.monitor import SavingSessionMonitor
from saving_monitor.octopus_client import OctopusClient
from saving_monitor.state import AppState

# Wednesday 14:05 UTC in winter, so UK local time is the same
WEDNESDAY_1405 = datetime(2025, 1, 15, 14, 5, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status: int = 200, body: Any = "", headers: Optional[Dict[str, str]] = None):
        self.status = status
        self._body = body if isinstance(body, str) else orjson.dumps(body).decode()
        self.headers = headers or {}

    async def text(self) -> str:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stand-in for aiohttp.ClientSession; `handler(method, url, kwargs)` returns a FakeResponse or an exception."""

    def __init__(self, handler: Callable[[str, str, Dict[str, Any]], Any]):
        self.handler = handler
        self.calls: List[tuple] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        result = self.handler(method, url, kwargs)
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        self.closed = True


def queued(*responses):
    """Handler that serves `responses` in order."""
    pending = list(responses)

    def handler(method, url, kwargs):
        if not pending:
            raise AssertionError(f"unexpected request {method} {url}")
        return pending.pop(0)

    return handler


def gql(data: Any = None, errors: Optional[list] = None, status: int = 200) -> FakeResponse:
    body: Dict[str, Any] = {"data": data}
    if errors is not None:
        body["errors"] = errors
    return FakeResponse(status, body)


def token_response(token: str = "jwt-new", expires_in: int = 3600) -> FakeResponse:
    return gql({"obtainKrakenToken": {"token": token, "refreshToken": "r", "refreshExpiresIn": expires_in}})


def query_of(kwargs: Dict[str, Any]) -> str:
    return ((kwargs.get("json") or {}).get("query")) or ""


class Clock:
    def __init__(self, now: datetime = WEDNESDAY_1405):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now = self.now + timedelta(**kw)


class Sleeper:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def cfg() -> Config:
    return Config().with_overrides(
        account_id="A-1234ABCD",
        api_key="sk_test_key",
        min_points=0,
        min_req_interval_ms=0,
        max_retries=3,
        base_backoff=1.0,
        auto_spin=0,
        smart_intervals=1,
        check_interval_min=15,
        stale_fallback=(),
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


def fresh_state(now: datetime = WEDNESDAY_1405) -> AppState:
    state = AppState()
    state.credential = Credential(token="jwt-cached", expiry=now + timedelta(hours=1))
    return state


def make_client(state: AppState, handler, cfg: Config, clock: Clock, sleeper: Sleeper, **kw) -> OctopusClient:
    session = FakeSession(handler)
    return OctopusClient(
        state,
        cfg.account_id,
        cfg.api_key,
        cfg=cfg,
        session=session,
        sleep=sleeper,
        clock=clock,
        monotonic=kw.pop("monotonic", lambda: 0.0),
        rng=kw.pop("rng", lambda: 0.0),
        **kw,
    )


class FakeCredentials:
    def status(self) -> Dict[str, Any]:
        return {"has_token": True, "expires_at": None, "seconds_remaining": None}


class FakeClient:
    """In-memory OctopusClient. Set an attribute to an exception instance to make that call fail."""

    def __init__(
        self,
        sessions=(),
        points: int = 0,
        free=(),
        campaigns: Optional[Dict[str, bool]] = None,
        spins: Optional[WheelSpins] = None,
        usage=(),
    ):
        self.snapshot = SavingSessionsSnapshot(sessions=tuple(sessions), points=points, has_joined_campaign=True)
        self.free = list(free)
        self.campaigns = campaigns if campaigns is not None else {"octoplus": True, "octoplus-saving-sessions": True, "free_electricity": True}
        self.account = AccountInfo(balance=12.5, account_type="DOMESTIC")
        self.spins = spins or WheelSpins()
        self.devices = ["00-AA-11"]
        self.measurements = list(usage)
        self.join_error: Optional[Exception] = None
        self.joined: List[int] = []
        self.spun: List[WheelSpins] = []
        self.fetches: Dict[str, int] = {}
        self.credentials = FakeCredentials()

    def _hit(self, name: str, value: Any) -> Any:
        self.fetches[name] = self.fetches.get(name, 0) + 1
        if isinstance(value, BaseException):
            raise value
        return value

    async def get_saving_sessions(self):
        return self._hit("saving_sessions", self.snapshot)

    async def get_free_electricity_sessions(self):
        return self._hit("free_electricity", self.free)

    async def get_campaign_status(self):
        return self._hit("campaign_status", self.campaigns)

    async def get_account_info(self):
        return self._hit("account_info", self.account)

    async def get_wheel_spins(self):
        return self._hit("wheel_spins", self.spins)

    async def get_smart_meter_devices(self):
        return self._hit("meter_devices", self.devices)

    async def get_usage_measurements(self, device_ids, days):
        return self._hit("usage_measurements", self.measurements)

    async def join_saving_session(self, event_id: int) -> None:
        self.joined.append(event_id)
        if self.join_error is not None:
            raise self.join_error

    async def spin_all_available(self, spins: WheelSpins):
        self.spun.append(spins)
        return [SpinResult("ELECTRICITY", 5)] * spins.electricity, []

    def request_stats(self) -> Dict[str, Any]:
        return {"total": sum(self.fetches.values()), "by_status": {}}

    async def close(self) -> None:
        pass


def make_monitor(cfg: Config, clock: Clock, client: FakeClient, state: Optional[AppState] = None):
    return SavingSessionMonitor(cfg, state=state or AppState(), client=client, clock=clock, persist=False)
