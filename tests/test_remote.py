"""Tests for remote shutdown execution and dispatch."""

import asyncio
from unittest.mock import patch

import pytest

from blackout_grace.config import RemoteConfig
from blackout_grace.engine import ShutdownReason, ShutdownRequest
from blackout_grace.markers import MarkerKind, MarkerStore
from blackout_grace.remote import DispatchResult, ShutdownDispatcher, SSHExecutor
from tests.conftest import BACKUP, NAS, RecordingExecutor


def make_request(*targets) -> ShutdownRequest:
    return ShutdownRequest(
        reason=ShutdownReason.GRACE_EXPIRED,
        targets=targets or (NAS, BACKUP),
        percentage=12,
    )


class FakeProcess:
    """Stand-in for an ssh subprocess."""

    def __init__(self, returncode: int = 0, stderr: str = "", hang: bool = False) -> None:
        self.returncode = None if hang else returncode
        self._final = returncode
        self.stderr = stderr.encode()
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        self.returncode = self._final
        return b"", self.stderr

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode


class TestSSHExecutor:
    """SSHExecutor command construction and outcome mapping."""

    def test_build_command(self):
        executor = SSHExecutor(command="sudo poweroff", connect_timeout=10)
        assert executor.build_command(NAS) == [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "ConnectTimeout=10",
            "admin@nas.local",
            "sudo poweroff",
        ]

    def test_from_config(self):
        config = RemoteConfig(command="sudo halt", timeout=15, ssh_binary="/usr/bin/ssh")
        executor = SSHExecutor.from_config(config)
        assert executor.timeout == 15
        assert executor.build_command(NAS)[0] == "/usr/bin/ssh"
        assert executor.build_command(NAS)[-1] == "sudo halt"

    @pytest.mark.asyncio
    async def test_success(self):
        with patch("asyncio.create_subprocess_exec", return_value=FakeProcess(0)):
            result = await SSHExecutor().shutdown(NAS)

        assert result == DispatchResult(NAS, ok=True, returncode=0)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        proc = FakeProcess(255, stderr="ssh: connect to host nas.local port 22: No route\n")
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            result = await SSHExecutor().shutdown(NAS)

        assert not result.ok
        assert result.returncode == 255
        assert "No route" in result.error

    @pytest.mark.asyncio
    async def test_missing_ssh_binary(self):
        executor = SSHExecutor(ssh_binary="/nonexistent/ssh")
        result = await executor.shutdown(NAS)

        assert not result.ok
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_timeout_kills_ssh(self):
        proc = FakeProcess(hang=True)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            result = await SSHExecutor(timeout=0.01).shutdown(NAS)

        assert not result.ok
        assert "timed out" in result.error
        assert proc.killed

    @pytest.mark.asyncio
    async def test_cancellation_kills_ssh(self):
        proc = FakeProcess(hang=True)
        with patch("asyncio.create_subprocess_exec", return_value=proc):
            task = asyncio.create_task(SSHExecutor().shutdown(NAS))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert proc.killed


class TestShutdownDispatcher:
    """Per-target idempotence within an episode."""

    @pytest.mark.asyncio
    async def test_all_targets_called_in_order(self, store: MarkerStore):
        executor = RecordingExecutor()
        dispatcher = ShutdownDispatcher(executor, store)

        results = await dispatcher.dispatch(make_request(), now=1000)

        assert executor.calls == [NAS, BACKUP]
        assert all(r.ok for r in results)
        assert store.get_target(NAS) == 1000
        assert store.get_target(BACKUP) == 1000
        assert store.get(MarkerKind.SHUTDOWN_ISSUED) == 1000

    @pytest.mark.asyncio
    async def test_issued_targets_skipped(self, store: MarkerStore):
        store.set_target(NAS, 900)
        store.set(MarkerKind.SHUTDOWN_ISSUED, 900)
        executor = RecordingExecutor()

        await ShutdownDispatcher(executor, store).dispatch(make_request(), now=1000)

        assert executor.calls == [BACKUP]
        # Episode sentinel keeps the first success time.
        assert store.get(MarkerKind.SHUTDOWN_ISSUED) == 900

    @pytest.mark.asyncio
    async def test_failure_does_not_skip_later_targets(self, store: MarkerStore):
        executor = RecordingExecutor(failing={NAS.host})

        results = await ShutdownDispatcher(executor, store).dispatch(make_request(), now=1000)

        assert executor.calls == [NAS, BACKUP]
        assert [r.ok for r in results] == [False, True]
        assert store.get_target(NAS) is None
        assert store.get_target(BACKUP) == 1000

    @pytest.mark.asyncio
    async def test_failed_target_retried_next_dispatch(self, store: MarkerStore):
        executor = RecordingExecutor(failing={NAS.host})
        dispatcher = ShutdownDispatcher(executor, store)
        await dispatcher.dispatch(make_request(), now=1000)

        executor.failing.clear()
        await dispatcher.dispatch(make_request(), now=1005)

        assert executor.calls == [NAS, BACKUP, NAS]
        assert store.get_target(NAS) == 1005

    @pytest.mark.asyncio
    async def test_sentinel_written_before_target_marker(self, store: MarkerStore):
        """Dying between the two writes leaves the sentinel, never a lone target marker."""
        executor = RecordingExecutor()
        dispatcher = ShutdownDispatcher(executor, store)

        with patch.object(store, "set_target", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await dispatcher.dispatch(make_request(), now=1000)

        assert store.get(MarkerKind.SHUTDOWN_ISSUED) == 1000
        assert store.get_target(NAS) is None

    @pytest.mark.asyncio
    async def test_all_failures_leave_sentinel_unset(self, store: MarkerStore):
        executor = RecordingExecutor(failing={NAS.host, BACKUP.host})

        await ShutdownDispatcher(executor, store).dispatch(make_request(), now=1000)

        assert store.get(MarkerKind.SHUTDOWN_ISSUED) is None

    @pytest.mark.asyncio
    async def test_repeat_dispatch_is_noop(self, store: MarkerStore):
        executor = RecordingExecutor()
        dispatcher = ShutdownDispatcher(executor, store)

        await dispatcher.dispatch(make_request(), now=1000)
        results = await dispatcher.dispatch(make_request(), now=1005)

        assert results == []
        assert len(executor.calls) == 2
