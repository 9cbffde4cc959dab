"""Power source sampling.

Two backends: the ``acpi`` utility (default, matches what most headless
Linux laptops ship) and psutil's battery sensor.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import psutil
import structlog

log = structlog.get_logger()

ACPI_TIMEOUT = 10.0  # Seconds before an acpi call is considered hung

_PERCENT_RE = re.compile(r"(\d+)%")


class PowerSource(Enum):
    """Where the machine is currently drawing power from."""

    AC = "AC"
    BATTERY = "Battery"


@dataclass(frozen=True)
class PowerSample:
    """One power reading. Percentage is always within 0..100."""

    percentage: int
    source: PowerSource

    @property
    def on_battery(self) -> bool:
        return self.source is PowerSource.BATTERY


class SampleError(Exception):
    """The power source could not be read this tick."""


def clamp_percentage(value: object) -> int:
    """Coerce a raw reading to 0..100; anything unparsable becomes 0."""
    try:
        pct = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, pct))


def parse_battery_percentage(output: str) -> int:
    """First ``N%`` in ``acpi -b`` output, clamped. 0 when none is present."""
    match = _PERCENT_RE.search(output)
    if match is None:
        return 0
    return clamp_percentage(match.group(1))


def parse_power_source(output: str) -> PowerSource:
    """Power source from ``acpi -a`` output.

    Raises:
        SampleError: If no adapter reports on-line or off-line.
    """
    if "on-line" in output:
        return PowerSource.AC
    if "off-line" in output:
        return PowerSource.BATTERY
    raise SampleError(f"unrecognized acpi -a output: {output.strip()[:80]!r}")


class PowerSampler(ABC):
    """Reads the current power source and charge level."""

    @abstractmethod
    async def sample(self) -> PowerSample:
        """Take one reading.

        Raises:
            SampleError: If the power state could not be determined.
        """


class AcpiSampler(PowerSampler):
    """Sampler backed by the ``acpi`` command line utility."""

    def __init__(self, binary: str = "acpi", timeout: float = ACPI_TIMEOUT) -> None:
        self.binary = binary
        self.timeout = timeout

    async def _run(self, flag: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                flag,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise SampleError(f"{self.binary} command not found") from e
        except OSError as e:
            raise SampleError(f"failed to run {self.binary} {flag}: {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise SampleError(f"{self.binary} {flag} timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            raise SampleError(f"{self.binary} {flag} exited with {proc.returncode}")
        return stdout.decode("utf-8", errors="replace")

    async def sample(self) -> PowerSample:
        battery_output = await self._run("-b")
        adapter_output = await self._run("-a")
        source = parse_power_source(adapter_output)
        sample = PowerSample(percentage=parse_battery_percentage(battery_output), source=source)
        log.debug(
            "power_sampled", backend="acpi", percentage=sample.percentage, source=source.value
        )
        return sample


class PsutilSampler(PowerSampler):
    """Sampler backed by ``psutil.sensors_battery()``."""

    async def sample(self) -> PowerSample:
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, OSError) as e:
            # AttributeError: platform without battery sensor support
            raise SampleError(f"battery sensor unavailable: {e}") from e

        if battery is None:
            raise SampleError("no battery reported by psutil")
        if battery.power_plugged is None:
            raise SampleError("psutil could not determine power source")

        source = PowerSource.AC if battery.power_plugged else PowerSource.BATTERY
        return PowerSample(percentage=clamp_percentage(battery.percent), source=source)


def make_sampler(name: str) -> PowerSampler:
    """Build the sampler selected by ``general.power_source``."""
    if name == "acpi":
        return AcpiSampler()
    if name == "psutil":
        return PsutilSampler()
    raise ValueError(f"Unknown power source backend: {name!r}")
