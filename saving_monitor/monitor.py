"""
SavingSessionMonitor: one poll loop that reads through the cache, joins
eligible saving sessions, spins free wheels and raises free electricity alerts.

Shared state lives in AppState and is only touched under state.lock, which is
never held across a network call, so the dashboard can read concurrently.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .alerts import AlertDecision
from .cache import TieredCache
from .config import CONFIG, Config
from .constants import (
    CAMPAIGN_FREE_ELECTRICITY,
    CAMPAIGN_OCTOPLUS,
    CAMPAIGN_SAVING_SESSIONS,
    DISPLAY_THRESHOLD_24H,
)
from .errors import MonitorError, SessionError, StateError
from .metrics import EVENTS, emit
from .models import FreeElectricitySession, SavingSession, SavingSessionsSnapshot, UsageMeasurement
from .octopus_client import OctopusClient
from .pretty import PR, debug_log
from .scheduler import uk_local
from .state import AppState, load_state, save_state


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -------- Human-readable durations --------

def format_duration(d: timedelta) -> str:
    total_min = int(d.total_seconds() // 60)
    hours, minutes = divmod(total_min, 60)
    if hours > 0 and minutes > 0:
        return f"{hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h"
    return f"{minutes}m"


def format_time_until(d: timedelta) -> str:
    total_min = int(d.total_seconds() // 60)
    hours, minutes = divmod(total_min, 60)
    if hours > 0 and minutes > 0:
        return f"{hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h"
    if minutes > 0:
        return f"{minutes}m"
    return "less than a minute"


def format_days_until(d: timedelta) -> str:
    total_hours = int(d.total_seconds() // 3600)
    days, hours = divmod(total_hours, 24)
    if days > 1:
        return f"in {days} days {hours}h" if hours > 0 else f"in {days} days"
    if days == 1:
        return f"tomorrow ({total_hours}h from now)" if hours > 0 else "tomorrow"
    return format_time_until(d)


def _starts(d: timedelta) -> str:
    if d < DISPLAY_THRESHOLD_24H:
        return f"Starts in {format_time_until(d)}"
    return f"Starts {format_days_until(d)}"


def _when(dt: datetime) -> str:
    local = uk_local(dt)
    return f"{local:%A, %b} {local.day} at {local:%H:%M}"


def load_or_fresh(cfg: Config) -> AppState:
    try:
        state = load_state(cfg.account_id, cfg.state_dir)
    except StateError as e:
        print(f"[state/WARN] {e}; starting fresh")
        return AppState()
    return state


class SavingSessionMonitor:
    def __init__(
        self,
        cfg: Config = CONFIG,
        *,
        state: Optional[AppState] = None,
        client: Optional[OctopusClient] = None,
        clock: Callable[[], datetime] = _utcnow,
        persist: bool = True,
    ):
        self.cfg = cfg
        self.clock = clock
        self.persist = persist
        self.state = state if state is not None else load_or_fresh(cfg)
        self.client = client or OctopusClient(
            self.state,
            cfg.account_id,
            cfg.api_key,
            cfg=cfg,
            clock=clock,
            on_credential_change=self._save_locked,
        )
        self.cache = TieredCache(self.state, cfg.stale_fallback)
        self.tick_count = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_errors: List[str] = []

        dropped = self.state.alerts.sweep_stale(self.state.last_updated, clock())
        if dropped:
            debug_log(f"dropped {dropped} stale alert records")

    async def close(self) -> None:
        await self.client.close()

    def _save_locked(self) -> None:
        """Persist state. Caller holds state.lock."""
        if not self.persist:
            return
        try:
            save_state(self.state, self.cfg.account_id, self.cfg.state_dir, now=self.clock())
        except OSError as e:
            print(f"[state/WARN] failed to save state: {e}")

    # -------- Cached reads (shared with the dashboard) --------

    async def saving_sessions(self, now: Optional[datetime] = None) -> SavingSessionsSnapshot:
        return await self.cache.get_or_fetch("saving_sessions", now or self.clock(), self.client.get_saving_sessions)

    async def free_electricity(self, now: Optional[datetime] = None) -> List[FreeElectricitySession]:
        return await self.cache.get_or_fetch(
            "free_electricity", now or self.clock(), self.client.get_free_electricity_sessions
        )

    async def campaign_status(self, now: Optional[datetime] = None) -> Dict[str, bool]:
        return await self.cache.get_or_fetch("campaign_status", now or self.clock(), self.client.get_campaign_status)

    async def account_info(self, now: Optional[datetime] = None):
        return await self.cache.get_or_fetch("account_info", now or self.clock(), self.client.get_account_info)

    async def wheel_spins(self, now: Optional[datetime] = None):
        return await self.cache.get_or_fetch("wheel_spins", now or self.clock(), self.client.get_wheel_spins)

    async def meter_devices(self, now: Optional[datetime] = None) -> List[str]:
        return await self.cache.get_or_fetch("meter_devices", now or self.clock(), self.client.get_smart_meter_devices)

    async def usage(self, days: int, now: Optional[datetime] = None) -> List[UsageMeasurement]:
        now = now or self.clock()

        async def fetch():
            devices = await self.meter_devices(now)
            return await self.client.get_usage_measurements(devices, days)

        measurements = await self.cache.get_or_fetch("usage_measurements", now, fetch, depth=days)
        # a deeper cached window serves shorter requests
        cutoff = now - timedelta(days=days)
        return [m for m in measurements if m.start_at >= cutoff]

    async def refresh_usage(self, days: int) -> List[UsageMeasurement]:
        await self.cache.invalidate("usage_measurements")
        print("[web] cleared usage measurements cache")
        return await self.usage(days)

    # -------- Tick --------

    async def check_for_new_sessions(self) -> bool:
        """One poll. A failing resource is reported and skipped, the rest still run."""
        now = self.clock()
        print("[monitor] checking for new sessions")
        errors: List[str] = []
        found_new = False

        try:
            found_new = await self._check_saving_sessions(now) or found_new
        except MonitorError as e:
            errors.append(f"saving_sessions: {e}")
            print(f"[monitor/ERR] error fetching saving sessions: {e}")

        if self.cfg.auto_spin:
            try:
                await self._auto_spin(now)
            except MonitorError as e:
                errors.append(f"wheel_spins: {e}")
                print(f"[monitor/WARN] could not get Wheel of Fortune spins: {e}")

        try:
            found_new = await self._check_free_electricity(now) or found_new
        except MonitorError as e:
            errors.append(f"free_electricity: {e}")
            print(f"[monitor/ERR] error fetching free electricity sessions: {e}")

        async with self.state.lock:
            self.state.schedule.record_tick(found_new, now)
            empty = self.state.schedule.consecutive_empty
            self._save_locked()

        if found_new:
            if self.cfg.smart_intervals:
                print("[monitor] new sessions found, will check more frequently for potential batches")
        elif self.cfg.smart_intervals and empty > 1:
            print(f"[monitor] no new sessions found, extending next interval (consecutive empty checks: {empty})")

        self.tick_count += 1
        self.last_tick_at = now
        self.last_tick_errors = errors
        emit("tick", {"found_new": found_new, "errors": len(errors), "consecutive_empty": empty})
        return found_new

    async def _check_saving_sessions(self, now: datetime) -> bool:
        snapshot = await self.saving_sessions(now)
        print(f"[monitor] current points in wallet: {snapshot.points}")
        if not snapshot.sessions:
            print("[monitor] no saving sessions found")

        found_new = False
        for session in snapshot.sessions:
            async with self.state.lock:
                if session.event_id in self.state.known_sessions:
                    continue
                # marked before the join so a failed join is never retried
                self.state.known_sessions.add(session.event_id)
            found_new = True
            emit("session_found", {"event_id": session.event_id, "octopoints": session.octopoints})
            await self._evaluate_session(session, now)
        return found_new

    def should_join(self, session: SavingSession) -> bool:
        return session.octopoints >= self.cfg.min_points

    async def _evaluate_session(self, session: SavingSession, now: datetime) -> None:
        if session.start_at <= now:
            print(f"[monitor] saving session {session.event_id} has already started/ended, not joining")
            return

        lines = [
            f"Date: {_when(session.start_at)}",
            f"Duration: {format_duration(session.duration)}",
            f"Reward: {session.octopoints} points",
            _starts(session.start_at - now),
        ]
        PR.banner("SAVING SESSION FOUND", lines, style="green")

        if not self.should_join(session):
            print(f"   Skipped - insufficient points ({session.octopoints} < {self.cfg.min_points} minimum)")
            return

        print(f"   Meets criteria ({session.octopoints} >= {self.cfg.min_points} points), attempting to join...")
        try:
            await self.client.join_saving_session(session.event_id)
        except SessionError as e:
            print(f"   Failed to join: {e}")
            emit("join_failed", {"event_id": session.event_id, "error": str(e)})
            return
        print("   Successfully joined session!")
        emit("session_joined", {"event_id": session.event_id, "octopoints": session.octopoints})
        await self.cache.invalidate("saving_sessions")

    async def _auto_spin(self, now: datetime) -> None:
        spins = await self.wheel_spins(now)
        if spins.total == 0:
            print("[monitor] no Wheel of Fortune spins available")
            return

        print(f"[monitor] Wheel of Fortune spins available: {spins.total} (electricity: {spins.electricity}, gas: {spins.gas}), auto-spinning")
        results, failures = await self.client.spin_all_available(spins)
        if not results:
            print("[monitor/WARN] no wheels were successfully spun")
            return
        elec = sum(r.prize for r in results if r.fuel_type == "ELECTRICITY")
        gas = sum(r.prize for r in results if r.fuel_type != "ELECTRICITY")
        print(f"[monitor] auto-spin complete, OctoPoints earned: {elec + gas} (electricity {elec}, gas {gas})")
        emit("wheel_spin", {"spins": len(results), "failed": len(failures), "points": elec + gas})
        await self.cache.invalidate("wheel_spins")

    async def _check_free_electricity(self, now: datetime) -> bool:
        sessions = await self.free_electricity(now)
        found_new = False
        current = 0
        alerts: List[tuple] = []

        async with self.state.lock:
            book = self.state.alerts
            for session in sessions:
                if session.has_ended(now):
                    book.forget(session.code)
                    continue
                current += 1
                if session.code not in self.state.known_free_electricity:
                    found_new = True
                    self.state.known_free_electricity.add(session.code)
                decision = book.evaluate(session, now)
                if decision is not None:
                    alerts.append((session, decision))
            book.cleanup(s.code for s in sessions)

        for session, decision in alerts:
            self._announce(session, decision, now)
            emit("alert", {"code": decision.code, "stage": decision.stage.name, "label": decision.label})

        if current == 0:
            print("[monitor] no current or upcoming free electricity sessions found")
        return found_new

    def _announce(self, session: FreeElectricitySession, decision: AlertDecision, now: datetime) -> None:
        if decision.active:
            lines = [
                "Your electricity is currently FREE",
                f"Time remaining: {format_time_until(session.end_at - now)}",
                f"Ends at {uk_local(session.end_at):%H:%M}",
            ]
            PR.banner("FREE ELECTRICITY SESSION ACTIVE NOW!", lines, style="bold green")
            return
        lines = [
            f"Date: {_when(session.start_at)}",
            f"Duration: {format_duration(session.duration)}",
            _starts(decision.time_until),
            "No action needed - automatically free!",
        ]
        PR.banner(f"FREE ELECTRICITY SESSION - {decision.label}", lines, style="yellow")

    # -------- Loop / one-shot --------

    async def next_interval(self) -> timedelta:
        fixed = timedelta(minutes=self.cfg.check_interval_min)
        async with self.state.lock:
            return self.state.schedule.next_interval(self.clock(), bool(self.cfg.smart_intervals), fixed)

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until `stop` is set. A tick in progress always runs to completion."""
        print("[monitor] starting saving session monitoring")
        if self.cfg.smart_intervals:
            print("[monitor] smart interval adjustment enabled")
        await self._safe_tick()
        while not stop.is_set():
            interval = await self.next_interval()
            debug_log(f"next check in {format_duration(interval)}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval.total_seconds())
            except asyncio.TimeoutError:
                await self._safe_tick()
        print("[monitor] stopping saving session monitoring")

    async def _safe_tick(self) -> None:
        try:
            await self.check_for_new_sessions()
        except Exception as e:
            print(f"[ERR] {type(e).__name__}: {e}")

    async def check_once(self) -> bool:
        await self.display_campaign_status()
        return await self.check_for_new_sessions()

    async def display_campaign_status(self) -> None:
        try:
            campaigns = await self.campaign_status()
        except MonitorError as e:
            print(f"[monitor/WARN] could not check campaign status: {e}")
            return
        PR.feature_status(campaigns)
        if not (campaigns.get(CAMPAIGN_OCTOPLUS) and campaigns.get(CAMPAIGN_SAVING_SESSIONS)):
            print("   To enable saving sessions: sign up for OctoPlus and Saving Sessions at octopus.energy")
        if not campaigns.get(CAMPAIGN_FREE_ELECTRICITY):
            print("   To enable free electricity: sign up for Free Electricity sessions at octopus.energy")

    # -------- Read-only view --------

    async def snapshot(self) -> Dict[str, Any]:
        now = self.clock()
        async with self.state.lock:
            schedule = self.state.schedule
            return {
                "account_id": self.cfg.account_id,
                "now": now.isoformat(),
                "known_sessions": len(self.state.known_sessions),
                "known_free_electricity": len(self.state.known_free_electricity),
                "alerts": self.state.alerts.to_dict(),
                "schedule": {
                    **schedule.to_dict(),
                    "smart_intervals": bool(self.cfg.smart_intervals),
                    "next_interval_sec": int(
                        schedule.next_interval(
                            now, bool(self.cfg.smart_intervals), timedelta(minutes=self.cfg.check_interval_min)
                        ).total_seconds()
                    ),
                },
                "cache": self.cache.ages(now),
                "credential": self.client.credentials.status(),
                "requests": self.client.request_stats(),
                "events": EVENTS.summary(),
                "ticks": self.tick_count,
                "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
                "last_tick_errors": list(self.last_tick_errors),
                "last_updated": self.state.last_updated.isoformat() if self.state.last_updated else None,
            }
