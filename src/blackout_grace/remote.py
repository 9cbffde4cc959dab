"""Remote shutdown execution.

Provides the executor interface, an SSH implementation, and the dispatcher
that applies per-target idempotence within a battery episode.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

from blackout_grace import logging as console
from blackout_grace.config import RemoteConfig, Target
from blackout_grace.engine import ShutdownRequest
from blackout_grace.markers import MarkerKind, MarkerStore

log = structlog.get_logger()


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one remote shutdown attempt."""

    target: Target
    ok: bool
    returncode: int | None = None
    error: str = ""


class RemoteExecutor(ABC):
    """Runs the shutdown command on a single target."""

    @abstractmethod
    async def shutdown(self, target: Target) -> DispatchResult:
        """Invoke the remote shutdown.

        Implementations report failures through the result, never by raising.
        """


class SSHExecutor(RemoteExecutor):
    """Executor that runs the shutdown command over ``ssh`` in batch mode.

    Attributes:
        command: Remote command, e.g. ``sudo poweroff``
        timeout: Hard limit in seconds for the whole ssh invocation
        connect_timeout: ssh ConnectTimeout in seconds
    """

    def __init__(
        self,
        command: str = "sudo poweroff",
        timeout: float = 30,
        connect_timeout: int = 10,
        ssh_binary: str = "ssh",
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.ssh_binary = ssh_binary

    @classmethod
    def from_config(cls, config: RemoteConfig) -> SSHExecutor:
        return cls(
            command=config.command,
            timeout=config.timeout,
            connect_timeout=config.connect_timeout,
            ssh_binary=config.ssh_binary,
        )

    def build_command(self, target: Target) -> list[str]:
        return [
            self.ssh_binary,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            target.name,
            self.command,
        ]

    async def shutdown(self, target: Target) -> DispatchResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(target),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return DispatchResult(target, ok=False, error=f"{self.ssh_binary} not found")
        except OSError as e:
            return DispatchResult(target, ok=False, error=str(e))

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return DispatchResult(target, ok=False, error=f"timed out after {self.timeout}s")
        except asyncio.CancelledError:
            # Daemon is stopping; don't leave an orphaned ssh behind.
            if proc.returncode is None:
                proc.kill()
            raise

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            return DispatchResult(
                target, ok=False, returncode=proc.returncode, error=message[:200]
            )
        return DispatchResult(target, ok=True, returncode=0)


class ShutdownDispatcher:
    """Sends the shutdown to every target not yet issued in this episode.

    Issued state is tracked per target, so a failure (or success) on one
    host never causes another host to be skipped.
    """

    def __init__(self, executor: RemoteExecutor, store: MarkerStore) -> None:
        self.executor = executor
        self.store = store

    async def dispatch(self, request: ShutdownRequest, now: int) -> list[DispatchResult]:
        results: list[DispatchResult] = []
        for target in request.targets:
            if self.store.get_target(target) is not None:
                log.debug("shutdown_already_issued", target=target.name)
                continue

            log.info("shutdown_dispatching", target=target.name, reason=request.reason.value)
            console.shutdown_dispatching(target.name)
            result = await self.executor.shutdown(target)
            results.append(result)

            if result.ok:
                # Sentinel first: a target marker never exists without it.
                if self.store.get(MarkerKind.SHUTDOWN_ISSUED) is None:
                    self.store.set(MarkerKind.SHUTDOWN_ISSUED, now)
                self.store.set_target(target, now)
                log.info("shutdown_dispatched", target=target.name)
                console.shutdown_dispatched(target.name)
            else:
                log.error(
                    "shutdown_dispatch_failed",
                    target=target.name,
                    returncode=result.returncode,
                    error=result.error,
                )
                reason = result.error or f"exit code {result.returncode}"
                console.shutdown_failed(target.name, reason)
        return results
