"""
Multi-stage alerts for free electricity windows.

Each session code walks INITIAL -> DAY_OF -> TWELVE_HOUR -> SIX_HOUR -> FINAL.
A stage may only fire if it is later than every stage already fired, and at
most one stage fires per evaluation, so a window produces a short, strictly
advancing series of reminders instead of one per poll.
"""

from __future__ import annotations
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Set

from .constants import (
    ALERT_DAY_OF,
    ALERT_FINAL,
    ALERT_SIX_HOUR,
    ALERT_TWELVE_HOUR,
    STATE_CLEANUP_AGE,
)
from .models import FreeElectricitySession


class AlertStage(enum.IntEnum):
    INITIAL = 1
    DAY_OF = 2
    TWELVE_HOUR = 3
    SIX_HOUR = 4
    FINAL = 5


# tightest first
STAGE_THRESHOLDS = (
    (AlertStage.FINAL, ALERT_FINAL, "STARTING SOON"),
    (AlertStage.SIX_HOUR, ALERT_SIX_HOUR, "6-HOUR REMINDER"),
    (AlertStage.TWELVE_HOUR, ALERT_TWELVE_HOUR, "12-HOUR REMINDER"),
    (AlertStage.DAY_OF, ALERT_DAY_OF, "DAY-OF REMINDER"),
)
ACTIVE_LABEL = "ACTIVE NOW"
INITIAL_LABEL = "INITIAL ALERT"

# on-disk flag names, kept stable for older state files
_FLAG_NAMES = {
    AlertStage.INITIAL: "initial_alert",
    AlertStage.DAY_OF: "day_of_alert",
    AlertStage.TWELVE_HOUR: "twelve_hour_alert",
    AlertStage.SIX_HOUR: "six_hour_alert",
    AlertStage.FINAL: "final_alert",
}


@dataclass
class AlertRecord:
    code: str
    fired: Set[AlertStage] = field(default_factory=set)

    @property
    def highest(self) -> Optional[AlertStage]:
        return max(self.fired) if self.fired else None

    def can_fire(self, stage: AlertStage) -> bool:
        top = self.highest
        return top is None or stage > top

    def fire(self, stage: AlertStage) -> None:
        if not self.can_fire(stage):
            raise ValueError(f"alert stage {stage.name} cannot fire after {self.highest.name} for {self.code}")
        self.fired.add(stage)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code}
        for stage, name in _FLAG_NAMES.items():
            out[name] = stage in self.fired
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], code: str = "") -> "AlertRecord":
        fired = {stage for stage, name in _FLAG_NAMES.items() if raw.get(name)}
        return cls(code=str(raw.get("code") or code), fired=fired)


@dataclass(frozen=True)
class AlertDecision:
    code: str
    stage: AlertStage
    label: str
    active: bool
    time_until: timedelta


class AlertBook:
    """Alert records keyed by session code."""

    def __init__(self, records: Optional[Dict[str, AlertRecord]] = None):
        self.records: Dict[str, AlertRecord] = records if records is not None else {}

    def __contains__(self, code: str) -> bool:
        return code in self.records

    def __len__(self) -> int:
        return len(self.records)

    def get(self, code: str) -> Optional[AlertRecord]:
        return self.records.get(code)

    def evaluate(self, session: FreeElectricitySession, now: datetime) -> Optional[AlertDecision]:
        code = session.code
        if session.has_ended(now):
            self.records.pop(code, None)
            return None

        record = self.records.get(code)
        if record is None:
            record = self.records[code] = AlertRecord(code=code)

        if session.is_active(now):
            if record.can_fire(AlertStage.FINAL):
                record.fire(AlertStage.FINAL)
                return AlertDecision(code, AlertStage.FINAL, ACTIVE_LABEL, True, timedelta(0))
            return None

        time_until = session.start_at - now
        for stage, threshold, label in STAGE_THRESHOLDS:
            if time_until <= threshold and record.can_fire(stage):
                record.fire(stage)
                return AlertDecision(code, stage, label, False, time_until)
        if not record.fired:
            record.fire(AlertStage.INITIAL)
            return AlertDecision(code, AlertStage.INITIAL, INITIAL_LABEL, False, time_until)
        return None

    def forget(self, code: str) -> None:
        self.records.pop(code, None)

    def cleanup(self, present_codes: Iterable[str]) -> int:
        """Drop records for codes no longer present in the feed."""
        keep = set(present_codes)
        gone = [code for code in self.records if code not in keep]
        for code in gone:
            del self.records[code]
        return len(gone)

    def sweep_stale(self, last_updated: Optional[datetime], now: datetime) -> int:
        """Drop everything when the state has not been touched for a week."""
        if last_updated is None or (now - last_updated) <= STATE_CLEANUP_AGE:
            return 0
        n = len(self.records)
        self.records.clear()
        return n

    def to_dict(self) -> Dict[str, Any]:
        return {code: rec.to_dict() for code, rec in self.records.items()}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "AlertBook":
        records: Dict[str, AlertRecord] = {}
        for code, rec in (raw or {}).items():
            if isinstance(rec, dict):
                records[str(code)] = AlertRecord.from_dict(rec, code=str(code))
        return cls(records)
