"""Shared test fixtures for blackout-grace."""

from pathlib import Path

import pytest

from blackout_grace.config import Config, GeneralConfig, Target
from blackout_grace.markers import MarkerStore
from blackout_grace.remote import DispatchResult, RemoteExecutor
from blackout_grace.sampler import PowerSample, PowerSampler, PowerSource, SampleError

NAS = Target(user="admin", host="nas.local")
BACKUP = Target(user="root", host="backup.local")


def make_general(base: Path, **overrides) -> GeneralConfig:
    """GeneralConfig with every marker path under `base`."""
    values = {
        "battery_file": str(base / "battery_timestamp"),
        "shutdown_flag": str(base / "shutdown_initiated"),
        "status_file": str(base / "last_status_update"),
        "ac_restore_file": str(base / "ac_restore_timestamp"),
    }
    values.update(overrides)
    return GeneralConfig(**values)


def make_config(base: Path, targets: tuple[Target, ...] = (NAS,), **general) -> Config:
    """Config whose markers and config file live under `base`."""
    return Config(
        general=make_general(base, **general),
        targets=targets,
        config_path=base / "config.toml",
    )


def battery(pct: int) -> PowerSample:
    return PowerSample(percentage=pct, source=PowerSource.BATTERY)


def ac(pct: int = 100) -> PowerSample:
    return PowerSample(percentage=pct, source=PowerSource.AC)


class ScriptedSampler(PowerSampler):
    """Returns queued samples (or raises queued SampleErrors) in order.

    The last entry repeats once the queue is exhausted.
    """

    def __init__(self, *readings: PowerSample | SampleError) -> None:
        self.readings = list(readings)
        self.calls = 0

    async def sample(self) -> PowerSample:
        self.calls += 1
        reading = self.readings.pop(0) if len(self.readings) > 1 else self.readings[0]
        if isinstance(reading, SampleError):
            raise reading
        return reading


class RecordingExecutor(RemoteExecutor):
    """Records shutdown calls; hosts in `failing` report failure."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[Target] = []

    async def shutdown(self, target: Target) -> DispatchResult:
        self.calls.append(target)
        if target.host in self.failing:
            return DispatchResult(target, ok=False, returncode=255, error="unreachable")
        return DispatchResult(target, ok=True, returncode=0)


@pytest.fixture
def store(tmp_path: Path) -> MarkerStore:
    """MarkerStore backed by files under tmp_path."""
    return MarkerStore.from_config(make_general(tmp_path))


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with two targets and all paths under tmp_path."""
    return make_config(tmp_path, targets=(NAS, BACKUP))
