"""
Flat records for the resources the monitor reads, plus the per-kind codecs the
state file uses to persist cached values.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple


def parse_ts(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _int(v: Any, default: int = 0) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _float(v: Any, default: float = 0.0) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class SavingSession:
    event_id: int
    start_at: datetime
    end_at: datetime
    octopoints: int = 0

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "SavingSession":
        start = parse_ts(raw.get("startAt") or raw.get("start_at"))
        end = parse_ts(raw.get("endAt") or raw.get("end_at"))
        if start is None or end is None:
            raise ValueError(f"saving session without start/end: {raw!r}")
        return cls(
            event_id=_int(raw.get("eventId", raw.get("event_id"))),
            start_at=start,
            end_at=end,
            octopoints=_int(raw.get("octopoints", raw.get("octoPoints"))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "startAt": format_ts(self.start_at),
            "endAt": format_ts(self.end_at),
            "octopoints": self.octopoints,
        }

    @property
    def duration(self):
        return self.end_at - self.start_at


@dataclass(frozen=True)
class FreeElectricitySession:
    code: str
    start_at: datetime
    end_at: datetime

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "FreeElectricitySession":
        start = parse_ts(raw.get("start") or raw.get("startAt"))
        end = parse_ts(raw.get("end") or raw.get("endAt"))
        if start is None or end is None:
            raise ValueError(f"free electricity session without start/end: {raw!r}")
        return cls(code=str(raw.get("code") or ""), start_at=start, end_at=end)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "start": format_ts(self.start_at), "end": format_ts(self.end_at)}

    @property
    def duration(self):
        return self.end_at - self.start_at

    def is_active(self, now: datetime) -> bool:
        return self.start_at <= now < self.end_at

    def has_ended(self, now: datetime) -> bool:
        return self.end_at <= now


@dataclass(frozen=True)
class SavingSessionsSnapshot:
    sessions: Tuple[SavingSession, ...] = ()
    points: int = 0
    has_joined_campaign: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": [s.to_dict() for s in self.sessions],
            "points": self.points,
            "has_joined_campaign": self.has_joined_campaign,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SavingSessionsSnapshot":
        return cls(
            sessions=tuple(SavingSession.from_api(s) for s in raw.get("sessions") or []),
            points=_int(raw.get("points")),
            has_joined_campaign=bool(raw.get("has_joined_campaign")),
        )


@dataclass(frozen=True)
class AccountInfo:
    balance: float = 0.0
    account_type: str = ""


@dataclass(frozen=True)
class WheelSpins:
    electricity: int = 0
    gas: int = 0

    @property
    def total(self) -> int:
        return self.electricity + self.gas


@dataclass(frozen=True)
class SpinResult:
    fuel_type: str
    prize: int


@dataclass(frozen=True)
class UsageMeasurement:
    start_at: datetime
    end_at: datetime
    value: float
    unit: str = "kWh"
    duration_sec: int = 1800
    cost_estimate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["start_at"] = format_ts(self.start_at)
        d["end_at"] = format_ts(self.end_at)
        return d

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "UsageMeasurement":
        start = parse_ts(raw.get("start_at"))
        end = parse_ts(raw.get("end_at"))
        if start is None or end is None:
            raise ValueError(f"usage measurement without start/end: {raw!r}")
        return cls(
            start_at=start,
            end_at=end,
            value=_float(raw.get("value")),
            unit=str(raw.get("unit") or "kWh"),
            duration_sec=_int(raw.get("duration_sec"), 1800),
            cost_estimate=_float(raw.get("cost_estimate")),
        )


@dataclass
class Credential:
    token: str = ""
    expiry: Optional[datetime] = None

    def is_fresh(self, now: datetime, buffer) -> bool:
        return bool(self.token) and self.expiry is not None and (self.expiry - now) > buffer


@dataclass
class CacheEntry:
    value: Any
    timestamp: datetime
    depth: Optional[int] = None  # e.g. days of usage history covered


# --- Codecs for persisting cache values ----------------------------------------

Codec = Tuple[Callable[[Any], Any], Callable[[Any], Any]]

CACHE_CODECS: Dict[str, Codec] = {
    "saving_sessions": (lambda v: v.to_dict(), SavingSessionsSnapshot.from_dict),
    "octopoints": (int, _int),
    "free_electricity": (
        lambda v: [s.to_dict() for s in v],
        lambda raw: [FreeElectricitySession.from_api(s) for s in raw or []],
    ),
    "campaign_status": (dict, lambda raw: {str(k): bool(v) for k, v in (raw or {}).items()}),
    "account_info": (asdict, lambda raw: AccountInfo(_float(raw.get("balance")), str(raw.get("account_type") or ""))),
    "wheel_spins": (asdict, lambda raw: WheelSpins(_int(raw.get("electricity")), _int(raw.get("gas")))),
    "meter_devices": (list, lambda raw: [str(d) for d in raw or []]),
    "usage_measurements": (
        lambda v: [m.to_dict() for m in v],
        lambda raw: [UsageMeasurement.from_dict(m) for m in raw or []],
    ),
}


def encode_value(kind: str, value: Any) -> Any:
    return CACHE_CODECS[kind][0](value)


def decode_value(kind: str, raw: Any) -> Any:
    return CACHE_CODECS[kind][1](raw)


def upcoming(items: List[Any], now: datetime) -> List[Any]:
    return [s for s in items if s.end_at > now]
