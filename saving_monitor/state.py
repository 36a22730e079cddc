"""Process state aggregate and its on-disk JSON file."""

from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Set

import orjson

from .alerts import AlertBook
from .config import CACHE_KINDS
from .errors import StateError
from .models import CacheEntry, Credential, decode_value, encode_value, format_ts, parse_ts
from .pretty import debug_log
from .scheduler import PollSchedule


@dataclass
class AppState:
    credential: Credential = field(default_factory=Credential)
    cache: Dict[str, CacheEntry] = field(default_factory=dict)
    known_sessions: Set[int] = field(default_factory=set)
    known_free_electricity: Set[str] = field(default_factory=set)
    alerts: AlertBook = field(default_factory=AlertBook)
    schedule: PollSchedule = field(default_factory=PollSchedule)
    last_updated: Optional[datetime] = None
    # guards every field above; never held across an await
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        cache: Dict[str, Any] = {}
        for kind, entry in self.cache.items():
            cache[kind] = {
                "data": encode_value(kind, entry.value),
                "timestamp": format_ts(entry.timestamp),
                "depth": entry.depth,
            }
        return {
            "jwt_token": self.credential.token,
            "jwt_token_expiry": format_ts(self.credential.expiry),
            "known_sessions": sorted(self.known_sessions),
            "known_free_electricity_sessions": sorted(self.known_free_electricity),
            "alert_states": self.alerts.to_dict(),
            "schedule": self.schedule.to_dict(),
            "cache": cache,
            "last_updated": format_ts(self.last_updated),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AppState":
        state = cls()
        state.credential = Credential(
            token=str(raw.get("jwt_token") or ""),
            expiry=parse_ts(raw.get("jwt_token_expiry")),
        )
        state.known_sessions = _id_set(raw.get("known_sessions"), int)
        state.known_free_electricity = _id_set(raw.get("known_free_electricity_sessions"), str)
        state.alerts = AlertBook.from_dict(raw.get("alert_states"))
        state.schedule = PollSchedule.from_dict(raw.get("schedule"))
        state.last_updated = parse_ts(raw.get("last_updated"))

        for kind, entry in (raw.get("cache") or {}).items():
            if kind not in CACHE_KINDS or not isinstance(entry, dict):
                continue
            ts = parse_ts(entry.get("timestamp"))
            if ts is None:
                continue
            try:
                value = decode_value(kind, entry.get("data"))
            except (TypeError, ValueError, AttributeError) as e:
                debug_log(f"dropping unreadable cache entry {kind}: {e}")
                continue
            depth = entry.get("depth")
            state.cache[kind] = CacheEntry(value=value, timestamp=ts, depth=int(depth) if depth is not None else None)
        return state


def _id_set(raw: Any, conv) -> set:
    # older files stored {"id": true} maps instead of lists
    if isinstance(raw, dict):
        raw = [k for k, v in raw.items() if v]
    out = set()
    for item in raw or []:
        try:
            out.add(conv(item))
        except (TypeError, ValueError):
            continue
    return out


def state_path(account_id: str, state_dir: str) -> Path:
    return Path(state_dir).expanduser() / f"state_{account_id}.json"


def load_state(account_id: str, state_dir: str) -> AppState:
    """Return the saved state, or a fresh one when no file exists yet."""
    path = state_path(account_id, state_dir)
    if not path.exists():
        return AppState()
    try:
        raw = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise StateError(f"corrupt state file {path}: {e}") from e
    except OSError as e:
        raise StateError(f"cannot read state file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise StateError(f"corrupt state file {path}: top level is not an object")
    try:
        return AppState.from_dict(raw)
    except (TypeError, ValueError, AttributeError) as e:
        # valid JSON with a mistyped section
        raise StateError(f"corrupt state file {path}: {e}") from e


def save_state(state: AppState, account_id: str, state_dir: str, now: Optional[datetime] = None) -> Path:
    """Atomically write the state file. Caller holds state.lock."""
    path = state_path(account_id, state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    state.last_updated = now or datetime.now(timezone.utc)
    payload = orjson.dumps(state.to_dict(), option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)

    fd, tmp_path = tempfile.mkstemp(prefix="state_", suffix=".json", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as tmp_file:
            tmp_file.write(payload)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
    return path
