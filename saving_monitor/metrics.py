"""
JSONL event log: one `{"ts", "kind", ...payload}` line per event. Per-kind
counts for the running process are kept in memory for /api/state, even when
writing is disabled.
"""

from __future__ import annotations

import sys
import time
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List

import orjson

from .config import CONFIG


class EventLog:
    def __init__(self, path: str, enabled: bool = True) -> None:
        self.path = path
        self.enabled = enabled
        self.counts: Counter = Counter()
        self._fallback_warned = False

    def _paths(self) -> List[Path]:
        primary = Path(self.path).expanduser()
        paths = [primary]
        if primary.is_absolute():
            fallback = Path.cwd() / primary.name
            if fallback != primary:
                paths.append(fallback)
        return paths

    @staticmethod
    def _append(path: Path, line: bytes) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("ab") as fh:
                fh.write(line)
        except OSError:
            return False
        return True

    def emit(self, kind: str, payload: Dict[str, Any]) -> None:
        self.counts[kind] += 1
        if not self.enabled:
            return
        line = orjson.dumps({"ts": int(time.time()), "kind": kind, **payload}, default=str) + b"\n"
        paths = self._paths()
        for candidate in paths:
            if not self._append(candidate, line):
                continue
            if candidate != paths[0] and not self._fallback_warned:
                print(f"[metrics/WARN] '{paths[0]}' not writable, logging events to '{candidate}'", file=sys.stderr)
                self._fallback_warned = True
            return

    def summary(self) -> Dict[str, int]:
        return dict(sorted(self.counts.items()))


EVENTS = EventLog(CONFIG.metrics_path, bool(CONFIG.metrics_enabled))


def emit(kind: str, payload: Dict[str, Any]) -> None:
    EVENTS.emit(kind, payload)
