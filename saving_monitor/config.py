"""
Centralized config with ENV overrides.
Defaults suit one household account; override via environment variables, a .env
file, or command-line flags (see runner.py).
"""

from __future__ import annotations
import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from dotenv import find_dotenv, load_dotenv

from .constants import HTTP_BASE_BACKOFF_SEC, HTTP_MAX_RETRIES, HTTP_MIN_INTERVAL_SEC, HTTP_TIMEOUT_SEC
from .errors import ValidationError


# --- Load .env early so os.getenv sees the values ---------------------------------
def _load_env():
    """
    Load environment variables from:
      1) ENV_FILE if provided, else nearest .env (found via python-dotenv)
      2) .env.local in the same directory (overrides .env), if present
    Process environment variables already set take precedence over .env values.
    """
    explicit = os.getenv("ENV_FILE")
    path = explicit or find_dotenv(usecwd=True)
    if not path:
        return
    # main .env (no override so existing exports win)
    load_dotenv(dotenv_path=path, override=False)
    # optional .env.local (override=True so local can tweak)
    local_path = os.path.join(os.path.dirname(path), ".env.local")
    if os.path.exists(local_path):
        load_dotenv(dotenv_path=local_path, override=True)


_load_env()
# -----------------------------------------------------------------------------------


def _get_list(env: str, default: List[str]) -> List[str]:
    raw = os.getenv(env, "")
    if not raw.strip():
        return default
    return [s.strip() for s in raw.split(",") if s.strip()]


def _default_state_dir() -> str:
    return str(Path.home() / ".config" / "saving-monitor")


CACHE_KINDS = (
    "saving_sessions",
    "octopoints",
    "free_electricity",
    "campaign_status",
    "account_info",
    "wheel_spins",
    "meter_devices",
    "usage_measurements",
)


@dataclass(frozen=True)
class Config:
    # Account
    account_id: str = os.getenv("OCTOPUS_ACCOUNT_ID", "")
    api_key: str = os.getenv("OCTOPUS_API_KEY", "")

    # Join policy
    min_points: int = int(os.getenv("MIN_POINTS", "0"))  # 0 = join every session
    auto_spin: int = int(os.getenv("AUTO_SPIN", "1"))  # spin free wheels each tick

    # Scheduling
    smart_intervals: int = int(os.getenv("SMART_INTERVALS", "1"))  # 0/1
    check_interval_min: int = int(os.getenv("CHECK_INTERVAL_MINUTES", "15"))

    # HTTP pacing / retries
    min_req_interval_ms: int = int(os.getenv("HTTP_MIN_INTERVAL_MS", str(int(HTTP_MIN_INTERVAL_SEC * 1000))))
    max_retries: int = int(os.getenv("HTTP_MAX_RETRIES", str(HTTP_MAX_RETRIES)))
    base_backoff: float = float(os.getenv("HTTP_BASE_BACKOFF", str(HTTP_BASE_BACKOFF_SEC)))
    http_timeout_sec: float = float(os.getenv("HTTP_TIMEOUT_SEC", str(HTTP_TIMEOUT_SEC)))

    # Cache kinds allowed to serve their last value when a refresh fails
    stale_fallback: Tuple[str, ...] = tuple(_get_list("STALE_FALLBACK", []))

    # Persistence
    state_dir: str = os.getenv("STATE_DIR", _default_state_dir())

    # Web UI (daemon mode only)
    web_ui: int = int(os.getenv("WEB_UI", "0"))
    web_host: str = os.getenv("WEB_HOST", "127.0.0.1")
    web_port: int = int(os.getenv("WEB_PORT", "8080"))

    # Logs / output
    debug: int = int(os.getenv("DEBUG", "0"))
    pretty: int = int(os.getenv("PRETTY", "1"))

    # Metrics
    metrics_enabled: int = int(os.getenv("METRICS_ENABLED", "1"))
    metrics_path: str = os.getenv("METRICS_PATH", "saving_monitor_metrics.jsonl")

    def with_overrides(self, **changes) -> "Config":
        """Return a copy with the non-None values of *changes* applied."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> None:
        if not self.account_id:
            raise ValidationError("account_id", "account ID is required (OCTOPUS_ACCOUNT_ID or --account)")
        if not self.api_key:
            raise ValidationError("api_key", "API key is required (OCTOPUS_API_KEY or --key)")
        if self.min_points < 0:
            raise ValidationError("min_points", "must be zero or positive", self.min_points)
        if self.check_interval_min <= 0:
            raise ValidationError("check_interval_min", "must be positive", self.check_interval_min)
        if not (1 <= self.web_port <= 65535):
            raise ValidationError("web_port", "must be between 1 and 65535", self.web_port)
        if self.max_retries < 0:
            raise ValidationError("max_retries", "must be zero or positive", self.max_retries)
        unknown = [k for k in self.stale_fallback if k not in CACHE_KINDS]
        if unknown:
            raise ValidationError("stale_fallback", f"unknown cache kinds (valid: {', '.join(CACHE_KINDS)})", ",".join(unknown))


CONFIG = Config()
