"""
Entry point.

    saving-monitor                       one check, then exit
    saving-monitor --daemon              poll until SIGINT/SIGTERM
    saving-monitor --daemon --web        ... and serve the JSON API
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import List, Optional

import uvicorn

from . import __version__
from .config import CONFIG, Config
from .errors import ValidationError
from .monitor import SavingSessionMonitor
from .pretty import PR, set_debug


class _EmbeddedServer(uvicorn.Server):
    """uvicorn sharing the monitor's loop; shutdown is driven by our stop event."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="saving-monitor",
        description="Monitor Octopus Energy saving sessions and free electricity windows",
    )
    p.add_argument("--account", help="Octopus Energy account ID (or OCTOPUS_ACCOUNT_ID)")
    p.add_argument("--key", help="Octopus Energy API key (or OCTOPUS_API_KEY)")
    p.add_argument("--daemon", action="store_true", help="Run continuously")
    p.add_argument("--web", action="store_true", help="Serve the JSON API (daemon mode only)")
    p.add_argument("--port", type=int, help="JSON API port (default 8080)")
    p.add_argument("--min-points", type=int, dest="min_points", help="Only join sessions worth at least this many points")
    p.add_argument("--no-smart-intervals", action="store_true", dest="no_smart_intervals", help="Use a fixed check interval")
    p.add_argument("--interval", type=int, help="Fixed check interval in minutes")
    p.add_argument("--debug", action="store_true", help="Verbose debug output")
    p.add_argument("--version", action="version", version=f"saving-monitor {__version__}")
    return p


def config_from_args(args: argparse.Namespace, base: Config = CONFIG) -> Config:
    return base.with_overrides(
        account_id=args.account,
        api_key=args.key,
        min_points=args.min_points,
        smart_intervals=0 if args.no_smart_intervals else None,
        check_interval_min=args.interval,
        web_ui=1 if args.web else None,
        web_port=args.port,
        debug=1 if args.debug else None,
    )


async def run_daemon(cfg: Config) -> None:
    monitor = SavingSessionMonitor(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run
            pass

    server = None
    server_task = None
    if cfg.web_ui:
        from dashboard.app import create_app

        server = _EmbeddedServer(
            uvicorn.Config(create_app(monitor), host=cfg.web_host, port=cfg.web_port, log_level="warning")
        )
        server_task = asyncio.create_task(server.serve())
        PR.info(f"[web] serving JSON API on http://{cfg.web_host}:{cfg.web_port}")

    try:
        await monitor.run(stop)
    finally:
        if server is not None:
            server.should_exit = True
            await server_task
        await monitor.close()


async def run_once(cfg: Config) -> None:
    monitor = SavingSessionMonitor(cfg)
    try:
        await monitor.check_once()
    finally:
        await monitor.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)
    set_debug(bool(cfg.debug))
    try:
        cfg.validate()
    except ValidationError as e:
        PR.err(f"[ERR] {e}")
        return 2

    PR.config_table(cfg)
    if cfg.web_ui and not args.daemon:
        PR.warn("[web] the JSON API is only served in daemon mode (--daemon)")

    try:
        if args.daemon:
            asyncio.run(run_daemon(cfg))
        else:
            asyncio.run(run_once(cfg))
    except KeyboardInterrupt:
        print("[monitor] interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
