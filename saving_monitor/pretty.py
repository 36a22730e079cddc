"""
Pretty-print helpers for terminal output, backed by Rich.
Set PRETTY=0 for plain tagged lines (e.g. when piping into a log collector).
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .config import CONFIG


class PrettyPrinter:
    def __init__(self, enabled: Optional[bool] = None, console: Optional[Console] = None) -> None:
        self.enabled = bool(CONFIG.pretty) if enabled is None else enabled
        self._console = console or Console(highlight=False)

    # -------- High-level helpers --------
    def config_table(self, cfg: Any) -> None:
        if not self.enabled:
            print(
                f"[cfg] account={_mask(cfg.account_id)} min_points={cfg.min_points} "
                f"smart_intervals={bool(cfg.smart_intervals)} web_ui={bool(cfg.web_ui)}"
            )
            return
        t = Table(title="Monitor Config", box=box.SIMPLE_HEAVY)
        t.add_column("Key", style="bold cyan")
        t.add_column("Value", style="white")
        t.add_row("Account", _mask(cfg.account_id))
        t.add_row("Min Points", str(cfg.min_points) if cfg.min_points else "join all")
        t.add_row("Smart Intervals", "On" if cfg.smart_intervals else f"Off ({cfg.check_interval_min}m)")
        t.add_row("Auto Spin", "On" if cfg.auto_spin else "Off")
        t.add_row("Web UI", f"{cfg.web_host}:{cfg.web_port}" if cfg.web_ui else "Off")
        t.add_row("State Dir", str(cfg.state_dir))
        self._console.print(t)

    def banner(self, title: str, lines: Iterable[str], style: str = "cyan") -> None:
        body = list(lines)
        if not self.enabled:
            print(title)
            for line in body:
                print(f"   {line}")
            return
        self._console.print(Panel(escape("\n".join(body)), title=title, border_style=style, expand=False))

    def feature_status(self, campaigns: Mapping[str, bool]) -> None:
        octoplus = campaigns.get("octoplus", False)
        saving = campaigns.get("octoplus-saving-sessions", False)
        free = campaigns.get("free_electricity", False)
        rows = [
            ("Saving Sessions", octoplus and saving, _missing({"octoplus": octoplus, "octoplus-saving-sessions": saving})),
            ("Free Electricity", free, _missing({"free_electricity": free})),
        ]
        if not self.enabled:
            print("[status] Feature Status:")
            for name, ok, missing in rows:
                state = "ENABLED" if ok else "DISABLED"
                extra = f" (missing: {missing})" if missing else ""
                print(f"[status] {name}: {state}{extra}")
            return
        t = Table(title="Feature Status", box=box.MINIMAL_HEAVY_HEAD)
        t.add_column("Feature", style="bold")
        t.add_column("State")
        t.add_column("Missing campaigns", style="dim")
        for name, ok, missing in rows:
            t.add_row(name, "[green]ENABLED[/]" if ok else "[red]DISABLED[/]", missing)
        self._console.print(t)

    def info(self, msg: str) -> None:
        if not self.enabled:
            print(msg)
        else:
            self._console.print(f"[bold cyan]{escape(msg)}[/]")

    def warn(self, msg: str) -> None:
        if not self.enabled:
            print(msg)
        else:
            self._console.print(f"[bold yellow]{escape(msg)}[/]")

    def err(self, msg: str) -> None:
        if not self.enabled:
            print(msg)
        else:
            self._console.print(f"[bold red]{escape(msg)}[/]")


def _mask(account_id: str) -> str:
    if not account_id:
        return "-"
    return account_id[:5] + "…" if len(account_id) > 5 else account_id


def _missing(flags: Mapping[str, bool]) -> str:
    return ", ".join(k for k, v in flags.items() if not v)


_DEBUG = bool(CONFIG.debug)


def set_debug(enabled: bool) -> None:
    global _DEBUG
    _DEBUG = bool(enabled)


def debug_log(msg: str) -> None:
    if _DEBUG:
        print(f"[debug] {msg}")


# Singleton printer
PR = PrettyPrinter()
