"""Background daemon for blackout-grace."""

import asyncio
import os
import shutil
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import psutil
import structlog

from blackout_grace import __version__
from blackout_grace import logging as console
from blackout_grace.config import Config
from blackout_grace.engine import DecisionEngine, Notice, NoticeKind
from blackout_grace.markers import MarkerStore
from blackout_grace.remote import RemoteExecutor, ShutdownDispatcher, SSHExecutor
from blackout_grace.sampler import PowerSampler, SampleError, make_sampler
from blackout_grace.status import StatusReporter

log = structlog.get_logger()

_DAEMON_NAMES = ("blackout-grace", "blackout_grace")


class StartupError(Exception):
    """Fatal condition detected before the main loop starts."""


class ConfigMissing(StartupError):
    """Config file absent or defines no targets."""


class DependencyMissing(StartupError):
    """Remote execution tool not installed."""


class SessionMissing(StartupError):
    """No authenticated ssh-agent session available."""


class DaemonAlreadyRunning(StartupError):
    """Another daemon instance owns the PID file."""


def check_startup(config: Config) -> None:
    """Verify everything the daemon needs before entering the loop.

    Raises:
        ConfigMissing: Config file missing or no [[targets]] defined
        DependencyMissing: ssh binary not on PATH
        SessionMissing: SSH_AUTH_SOCK not set
    """
    if not config.config_path.exists():
        raise ConfigMissing(f"Configuration file not found: {config.config_path}")
    if not config.targets:
        raise ConfigMissing(f"No [[targets]] defined in {config.config_path}")
    if shutil.which(config.remote.ssh_binary) is None:
        raise DependencyMissing(f"{config.remote.ssh_binary} command not found")
    if not os.environ.get("SSH_AUTH_SOCK"):
        raise SessionMissing("SSH agent not running (SSH_AUTH_SOCK is not set)")


def _is_daemon_cmdline(cmdline: list[str]) -> bool:
    cmdline_str = " ".join(cmdline).lower()
    return any(name in cmdline_str for name in _DAEMON_NAMES)


def running_daemon_pid(pid_path: Path) -> int | None:
    """PID of the live daemon recorded in pid_path, or None.

    Read-only counterpart of Daemon._check_already_running for status views:
    a PID file left behind by a crash, or naming a reused PID, reports None.
    """
    try:
        pid = int(pid_path.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None

    try:
        return pid if _is_daemon_cmdline(psutil.Process(pid).cmdline()) else None
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        # Same assumption as the startup check
        return pid


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    tick_count: int = 0
    failed_samples: int = 0
    dispatch_count: int = 0

    def record_tick(self) -> None:
        """Count a tick whose power sample succeeded."""
        self.tick_count += 1


class Daemon:
    """Main daemon class driving the sample -> decide -> act loop.

    Ticks are strictly sequential; a new tick never starts while a dispatch
    from the previous one is still running, so the marker store needs no
    locking.
    """

    def __init__(
        self,
        config: Config,
        sampler: PowerSampler | None = None,
        executor: RemoteExecutor | None = None,
        store: MarkerStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.state = DaemonState()

        self.store = store or MarkerStore.from_config(config.general)
        self.sampler = sampler or make_sampler(config.general.power_source)
        self.engine = DecisionEngine.from_config(config)
        self.dispatcher = ShutdownDispatcher(
            executor or SSHExecutor.from_config(config.remote), self.store
        )
        self.reporter = StatusReporter(
            self.store, config.general.status_interval, config.general.min_battery
        )

        self._clock = clock
        self._shutdown_event = asyncio.Event()
        self._stop_signal: signal.Signals | None = None
        self._pid_written = False

    @property
    def stop_requested(self) -> bool:
        """True once a termination signal has been received."""
        return self._stop_signal is not None

    def _now(self) -> int:
        return int(self._clock())

    async def start(self) -> None:
        """Start the daemon and run until a termination signal arrives."""
        check_startup(self.config)

        log.info("daemon_starting", version=__version__)
        console.version_info("blackout-grace", __version__)

        general = self.config.general
        log.info(
            "daemon_config",
            grace_seconds=general.grace_seconds,
            min_battery=general.min_battery,
            ac_stable_time=general.ac_stable_time,
            sleep_interval=general.sleep_interval,
            power_source=general.power_source,
            targets=[t.name for t in self.config.targets],
        )
        console.config_summary(general.minutes, general.min_battery, general.ac_stable_time)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        if self._check_already_running():
            raise DaemonAlreadyRunning("Daemon is already running")

        self._write_pid_file()

        self.state.running = True
        log.info("daemon_started", targets=len(self.config.targets))
        console.daemon_started(len(self.config.targets))

        await self._run_until_stopped()

    async def _run_until_stopped(self) -> None:
        """Run the main loop; on a stop signal give the in-flight tick a bounded wait."""
        main_task = asyncio.create_task(self._main_loop())
        stop_waiter = asyncio.create_task(self._shutdown_event.wait())

        done, _ = await asyncio.wait(
            {main_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
        if main_task in done:
            stop_waiter.cancel()
            main_task.result()  # Re-raise a crash from the loop
            return

        timeout = self.config.system.stop_timeout
        try:
            await asyncio.wait_for(main_task, timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("tick_abandoned", timeout=timeout)

    async def stop(self) -> None:
        """Stop the daemon.

        Episode markers are cleared only after a deliberate stop (signal).
        A crash leaves them in place so a restarted daemon resumes the
        grace and stability timers where they were.
        """
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False

        if self.stop_requested and self._pid_written:
            self.store.clear_all()
            log.info("markers_cleared", reason="signal")
            console.markers_cleared()

        self._remove_pid_file()

        state = self.state
        log.info(
            "daemon_stopped",
            ticks=state.tick_count,
            failed_samples=state.failed_samples,
            dispatches=state.dispatch_count,
        )
        console.daemon_stopped(state.tick_count, state.failed_samples, state.dispatch_count)

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._stop_signal = sig
        self._shutdown_event.set()

    async def tick(self) -> bool:
        """Run one sample -> decide -> apply -> dispatch -> report iteration.

        Returns:
            False if the power sample failed (no markers were touched).
        """
        try:
            sample = await self.sampler.sample()
        except SampleError as e:
            self.state.failed_samples += 1
            backoff = self.config.system.sample_failure_backoff
            log.error("sample_failed", error=str(e), backoff=backoff)
            console.sample_failed(str(e), backoff)
            return False

        now = self._now()
        self.state.record_tick()

        episode = self.store.load_state(self.config.targets)
        decision = self.engine.decide(sample, episode, now)
        self.store.apply(decision.mutations)

        for notice in decision.notices:
            self._report(notice)

        if decision.dispatch is not None:
            self.state.dispatch_count += 1
            await self.dispatcher.dispatch(decision.dispatch, now)

        self.reporter.maybe_report(sample, now)
        return True

    def _report(self, notice: Notice) -> None:
        """Render an engine notice to the JSON log and the console."""
        pct = notice.percentage
        fields = {"percentage": pct}
        if notice.remaining is not None:
            fields["remaining"] = notice.remaining
        if notice.elapsed is not None:
            fields["elapsed"] = notice.elapsed

        kind = notice.kind
        if kind in (NoticeKind.CRITICAL_BATTERY, NoticeKind.GRACE_EXPIRED):
            log.warning(kind.value, **fields)
        else:
            log.info(kind.value, **fields)

        if kind is NoticeKind.BATTERY_ENTERED:
            console.battery_entered(pct, notice.remaining or 0)
        elif kind is NoticeKind.BATTERY_COUNTDOWN:
            console.battery_countdown(pct, notice.remaining or 0)
        elif kind is NoticeKind.CRITICAL_BATTERY:
            console.critical_battery(pct)
        elif kind is NoticeKind.GRACE_EXPIRED:
            console.grace_expired(notice.elapsed or 0)
        elif kind is NoticeKind.AC_RESTORED:
            console.ac_restored(pct, notice.remaining or 0)
        elif kind is NoticeKind.AC_COUNTDOWN:
            console.ac_countdown(notice.elapsed or 0, notice.remaining or 0)
        elif kind is NoticeKind.EPISODE_CANCELLED:
            console.episode_cancelled(pct, notice.elapsed or 0)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless shutdown is requested. Returns True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _main_loop(self) -> None:
        """Main loop sampling power at general.sleep_interval.

        A failed sample backs off for system.sample_failure_backoff instead.
        Unexpected exceptions propagate and end the daemon as a crash.
        """
        interval = self.config.general.sleep_interval
        backoff = self.config.system.sample_failure_backoff

        while not self._shutdown_event.is_set():
            ok = await self.tick()
            if self._shutdown_event.is_set():
                break
            if await self._sleep(interval if ok else backoff):
                break

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        self._pid_written = True
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file, but only if this instance wrote it."""
        if self._pid_written and self.config.pid_path.exists():
            self.config.pid_path.unlink()
            self._pid_written = False
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if daemon is already running.

        Verifies not just that a process with the PID exists, but that it's
        actually the blackout-grace daemon. This prevents false positives
        after a reboot when a different process may have the same PID.
        """
        pid_path = self.config.pid_path
        if not pid_path.exists():
            return False

        try:
            pid = int(pid_path.read_text().strip())
        except ValueError:
            log.warning("pid_file_invalid", reason="not a number")
            console.pid_file_invalid()
            pid_path.unlink(missing_ok=True)
            return False

        if pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            if _is_daemon_cmdline(proc.cmdline()):
                log.error("daemon_already_running", pid=pid)
                console.already_running(pid)
                return True
            log.warning(
                "pid_file_stale",
                reason="different process",
                pid=pid,
                actual_process=proc.name(),
            )
            console.stale_pid_file(pid, proc.name())
            pid_path.unlink(missing_ok=True)
            return False
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            console.stale_pid_not_found(pid)
            pid_path.unlink(missing_ok=True)
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            console.already_running(pid)
            return True


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until a termination signal.

    Args:
        config: Optional config, loads from file if not provided

    Raises:
        StartupError: On any fatal startup condition (caller exits 1)
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except StartupError as e:
        log.error("startup_failed", error=str(e))
        console.startup_failed(str(e))
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
