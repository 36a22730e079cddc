from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import orjson
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from saving_monitor.constants import (
    CAMPAIGN_FREE_ELECTRICITY,
    CAMPAIGN_OCTOPLUS,
    CAMPAIGN_SAVING_SESSIONS,
    TRACKED_CAMPAIGNS,
    WEB_DEFAULT_USAGE_DAYS,
    WEB_MAX_USAGE_DAYS,
)
from saving_monitor.errors import MonitorError
from saving_monitor.models import UsageMeasurement, upcoming
from saving_monitor.monitor import SavingSessionMonitor


def _json(payload: Any, status_code: int = 200) -> Response:
    return Response(
        content=orjson.dumps(payload, default=str),
        media_type="application/json",
        status_code=status_code,
    )


def _days(raw: Optional[str]) -> int:
    try:
        days = int(raw) if raw is not None else WEB_DEFAULT_USAGE_DAYS
    except ValueError:
        return WEB_DEFAULT_USAGE_DAYS
    if days <= 0:
        return WEB_DEFAULT_USAGE_DAYS
    return min(days, WEB_MAX_USAGE_DAYS)


def _chart_rows(measurements: List[UsageMeasurement]) -> List[Dict[str, Any]]:
    return [
        {
            "timestamp": int(m.start_at.timestamp() * 1000),
            "datetime": m.start_at.isoformat(),
            "value": m.value,
            "unit": m.unit,
            "cost": m.cost_estimate,
            "duration": m.duration_sec,
        }
        for m in measurements
    ]


def _campaign_view(campaigns: Dict[str, bool]) -> Dict[str, bool]:
    return {
        "has_octoplus": campaigns.get(CAMPAIGN_OCTOPLUS, False),
        "has_saving_sessions": campaigns.get(CAMPAIGN_SAVING_SESSIONS, False),
        "has_free_electricity": campaigns.get(CAMPAIGN_FREE_ELECTRICITY, False),
        "saving_sessions_enabled": campaigns.get(CAMPAIGN_OCTOPLUS, False) and campaigns.get(CAMPAIGN_SAVING_SESSIONS, False),
        "free_electricity_enabled": campaigns.get(CAMPAIGN_FREE_ELECTRICITY, False),
    }


def create_app(monitor: SavingSessionMonitor) -> FastAPI:
    """
    Read-only JSON API over a running monitor. Handlers may trigger cache
    reads but never touch known sessions or alert records.
    """
    app = FastAPI(title="Saving Session Monitor")
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET", "POST"])

    def _cache_age() -> int:
        entry = monitor.state.cache.get("usage_measurements")
        if entry is None:
            return -1
        return int((monitor.clock() - entry.timestamp).total_seconds())

    @app.get("/healthz")
    async def healthz():
        return _json({"ok": True, "ticks": monitor.tick_count})

    @app.get("/api/sessions")
    async def sessions():
        now = monitor.clock()
        saving: List[Dict[str, Any]] = []
        points = 0
        try:
            snap = await monitor.saving_sessions(now)
            saving = [s.to_dict() for s in upcoming(list(snap.sessions), now)]
            points = snap.points
        except MonitorError as e:
            print(f"[web/WARN] failed to get saving sessions: {e}")

        free: List[Dict[str, Any]] = []
        try:
            free = [s.to_dict() for s in upcoming(await monitor.free_electricity(now), now)]
        except MonitorError as e:
            print(f"[web/WARN] failed to get free electricity sessions: {e}")

        balance = 0.0
        try:
            balance = (await monitor.account_info(now)).balance
        except MonitorError as e:
            print(f"[web/WARN] could not get account balance: {e}")

        spins = {"electricity_spins": 0, "gas_spins": 0}
        try:
            ws = await monitor.wheel_spins(now)
            spins = {"electricity_spins": ws.electricity, "gas_spins": ws.gas}
        except MonitorError as e:
            print(f"[web/WARN] could not get Wheel of Fortune spins: {e}")

        campaigns = {slug: False for slug in TRACKED_CAMPAIGNS}
        try:
            campaigns = await monitor.campaign_status(now)
        except MonitorError as e:
            print(f"[web/WARN] could not get campaign status: {e}")

        return _json(
            {
                "current_points": points,
                "account_balance": balance,
                "wheel_of_fortune_spins": spins,
                "saving_sessions": saving,
                "free_electricity_sessions": free,
                "campaign_status": _campaign_view(campaigns),
                "last_updated": datetime.now(timezone.utc).isoformat(),
            }
        )

    @app.get("/api/usage")
    async def usage(days: Optional[str] = None):
        n = _days(days)
        try:
            measurements = await monitor.usage(n)
        except MonitorError as e:
            print(f"[web/ERR] error getting usage measurements: {e}")
            return _json({"success": False, "error": "Failed to get usage data"}, status_code=500)
        return _json(
            {
                "success": True,
                "days": n,
                "measurements": len(measurements),
                "data": _chart_rows(measurements),
                "cache_age": _cache_age(),
            }
        )

    @app.post("/api/usage/refresh")
    async def usage_refresh(days: Optional[str] = None):
        n = _days(days)
        try:
            measurements = await monitor.refresh_usage(n)
        except MonitorError as e:
            print(f"[web/ERR] error getting fresh usage measurements: {e}")
            return _json({"success": False, "error": "Failed to get fresh usage data"}, status_code=500)
        return _json(
            {
                "success": True,
                "days": n,
                "measurements": len(measurements),
                "data": _chart_rows(measurements),
                "cache_age": _cache_age(),
                "refreshed": True,
            }
        )

    @app.get("/api/state")
    async def state():
        return _json(await monitor.snapshot())

    return app
