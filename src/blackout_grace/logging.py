"""Centralized console logging with Rich formatting.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Level-based styling
3. Core log functions (log, info, warn, error)
4. Domain-specific helpers (battery_entered, shutdown_dispatched, etc.)
5. Structlog configuration (configure)

Console output uses Rich markup for colors. JSON file output via structlog
remains separate (machine-parseable, no colors).
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

from blackout_grace.formatting import format_countdown

if TYPE_CHECKING:
    from blackout_grace.config import Config

# Rich console for colorful human-readable output
_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output.

    Use via autocomplete: Icon.<TAB> to see all available icons.
    """

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    SIGNAL = "⚡"
    AC = "[green]🔌[/]"
    BATTERY = "[yellow]🔋[/]"
    CRITICAL = "[bold red]🪫[/]"
    SHUTDOWN = "[bold red]⏻[/]"
    STATUS = "[magenta]♡[/]"
    RESET = "🧹"


# ─────────────────────────────────────────────────────────────────────────────
# Level Styles
# ─────────────────────────────────────────────────────────────────────────────

_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    """Log an info message."""
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    """Log a warning message."""
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    """Log an error message."""
    log("error", msg, icon)


# ─────────────────────────────────────────────────────────────────────────────
# Styling Helpers
# ─────────────────────────────────────────────────────────────────────────────


def percent_color(percentage: int, min_battery: int) -> str:
    """Return Rich color name for a charge level relative to the critical threshold."""
    if percentage < min_battery:
        return "bright_red"
    if percentage < min_battery * 2:
        return "bright_yellow"
    return "green"


def source_label(source: str, percentage: int, min_battery: int) -> str:
    """Render "Battery power (42%)" with the charge colored by severity."""
    color = percent_color(percentage, min_battery)
    return f"{source} power ([{color}]{percentage}%[/])"


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started(target_count: int) -> None:
    """Log daemon startup complete."""
    suffix = "s" if target_count != 1 else ""
    info(f"Daemon started [dim]({target_count} target{suffix})[/]", Icon.OK)


def daemon_stopping() -> None:
    """Log daemon shutdown initiated."""
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped(ticks: int, failed_samples: int, dispatches: int) -> None:
    """Log daemon shutdown complete with run totals."""
    info(
        f"Daemon stopped [dim]({ticks} samples, {failed_samples} failed, "
        f"{dispatches} dispatches)[/]",
        Icon.OK,
    )


def signal_received(name: str) -> None:
    """Log signal received."""
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def startup_failed(reason: str) -> None:
    """Log fatal startup error."""
    error(f"Startup failed: {reason}", Icon.FAIL)


def config_summary(minutes: int, min_battery: int, ac_stable_time: int) -> None:
    """Log the timers and thresholds in effect."""
    stable = format_countdown(ac_stable_time) if ac_stable_time else "[dim]immediate[/]"
    info(
        f"Config: grace=[cyan]{minutes}m[/], critical<[cyan]{min_battery}%[/], "
        f"ac stable=[cyan]{stable}[/]"
    )


def status_update(source: str, percentage: int, min_battery: int) -> None:
    """Log periodic status line."""
    info(f"Status update: {source_label(source, percentage, min_battery)}", Icon.STATUS)


def battery_entered(percentage: int, grace_seconds: int) -> None:
    """Log switch to battery power."""
    info(
        f"System switched to battery power ({percentage}%). "
        f"Shutdown in [bold]{format_countdown(grace_seconds)}[/]",
        Icon.BATTERY,
    )


def battery_countdown(percentage: int, remaining: int) -> None:
    """Log remaining grace time on battery."""
    info(
        f"On battery power ({percentage}%). Shutdown in "
        f"[bold]{format_countdown(remaining)}[/] unless power restored",
        Icon.BATTERY,
    )


def critical_battery(percentage: int) -> None:
    """Log critical charge bypass."""
    warn(
        f"Battery critically low ([bright_red]{percentage}%[/]), initiating immediate shutdown",
        Icon.CRITICAL,
    )


def grace_expired(elapsed: int) -> None:
    """Log grace period expiry."""
    warn(
        f"Battery timeout reached after {format_countdown(elapsed)}. Initiating shutdown",
        Icon.SHUTDOWN,
    )


def ac_restored(percentage: int, stable_seconds: int) -> None:
    """Log AC restoration while an episode is pending."""
    info(
        f"Power restored ({percentage}%). Waiting {format_countdown(stable_seconds)} "
        "for stable power before cancelling shutdown",
        Icon.AC,
    )


def ac_countdown(stable: int, remaining: int) -> None:
    """Log AC stability countdown."""
    info(
        f"AC power stable for {format_countdown(stable)}. "
        f"Shutdown cancelled in {format_countdown(remaining)} if power remains stable",
        Icon.AC,
    )


def episode_cancelled(percentage: int, stable: int) -> None:
    """Log full reset after stable AC."""
    info(
        f"AC power stable for {format_countdown(stable)} ({percentage}%). "
        "Cancelling pending shutdown",
        Icon.OK,
    )


def shutdown_dispatching(target: str) -> None:
    """Log remote shutdown attempt."""
    info(f"Executing remote shutdown command on [cyan]{target}[/]...", Icon.SHUTDOWN)


def shutdown_dispatched(target: str) -> None:
    """Log successful remote shutdown."""
    info(f"Remote shutdown command sent successfully to [cyan]{target}[/]", Icon.OK)


def shutdown_failed(target: str, reason: str) -> None:
    """Log failed remote shutdown."""
    error(f"Failed to initiate remote shutdown on [cyan]{target}[/] [dim]— {reason}[/]", Icon.FAIL)


def sample_failed(error_msg: str, backoff: int) -> None:
    """Log power sample failure."""
    error(f"Failed to get power info: {error_msg} [dim](retry in {backoff}s)[/]", Icon.FAIL)


def markers_cleared() -> None:
    """Log marker cleanup on deliberate termination."""
    info("[dim]Cleared episode markers[/]", Icon.RESET)


def already_running(pid: int | None = None) -> None:
    """Log daemon already running error."""
    if pid:
        error(f"Another daemon already running [dim](PID {pid})[/]", Icon.FAIL)
    else:
        error("Another daemon already running", Icon.FAIL)


def pid_file_invalid() -> None:
    """Log PID file invalid."""
    warn("PID file invalid")


def stale_pid_file(pid: int, actual_process: str) -> None:
    """Log stale PID file (different process)."""
    info(f"[dim]Stale PID file — PID {pid} is {actual_process}[/]")


def stale_pid_not_found(pid: int) -> None:
    """Log stale PID file (process not found)."""
    info(f"[dim]Stale PID file — PID {pid} not found[/]")


def version_info(name: str, version: str) -> None:
    """Log version info."""
    info(f"[bold cyan]{name}[/] v{version}")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Configure structlog to write JSON Lines to the rotating daemon log.

    Uses local time to match marker timestamps in human views.

    Args:
        config: Application config with paths
    """
    # Ensure state directory exists for log file
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()

    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Console output is handled by Rich (see log functions above)
    # structlog only writes to JSON file for machine parsing
