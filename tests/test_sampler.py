"""Tests for power source sampling."""

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from blackout_grace.sampler import (
    AcpiSampler,
    PowerSample,
    PowerSource,
    PsutilSampler,
    SampleError,
    clamp_percentage,
    make_sampler,
    parse_battery_percentage,
    parse_power_source,
)

ACPI_DISCHARGING = "Battery 0: Discharging, 42%, 01:10:33 remaining\n"
ACPI_ADAPTER_ON = "Adapter 0: on-line\n"
ACPI_ADAPTER_OFF = "Adapter 0: off-line\n"
ACPI_NO_DEVICE = "No support for device type: power_supply\n"


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, stdout: str = "", returncode: int = 0, hang: bool = False) -> None:
        self.stdout = stdout.encode()
        self.returncode = returncode
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        return self.stdout, b""

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        return self.returncode


def fake_exec(outputs: dict[str, FakeProcess]):
    """create_subprocess_exec replacement keyed by the acpi flag."""

    async def _exec(binary, flag, **kwargs):
        return outputs[flag]

    return _exec


class TestParsing:
    """acpi output parsing."""

    @pytest.mark.parametrize(
        "output, expected",
        [
            (ACPI_DISCHARGING, 42),
            ("Battery 0: Full, 100%\n", 100),
            ("Battery 0: Charging, 7%, 02:00:00 until charged\n", 7),
            ("Battery 0: Discharging, 0%, rate information unavailable\n", 0),
            ("Battery 0: Unknown, 55%\nBattery 1: Discharging, 12%\n", 55),
            ("No support for device type: power_supply\n", 0),
            ("", 0),
        ],
    )
    def test_battery_percentage(self, output: str, expected: int):
        assert parse_battery_percentage(output) == expected

    def test_percentage_clamped(self):
        assert parse_battery_percentage("Battery 0: Full, 104%\n") == 100

    def test_power_source(self):
        assert parse_power_source(ACPI_ADAPTER_ON) is PowerSource.AC
        assert parse_power_source(ACPI_ADAPTER_OFF) is PowerSource.BATTERY

    @pytest.mark.parametrize("output", ["", ACPI_NO_DEVICE, "Adapter 0: unknown\n"])
    def test_unrecognized_adapter_output(self, output: str):
        """Adapter output without on-line or off-line is a failed sample, not battery."""
        with pytest.raises(SampleError, match="unrecognized"):
            parse_power_source(output)

    @pytest.mark.parametrize(
        "value, expected",
        [(50, 50), (99.7, 99), ("12", 12), (-3, 0), (150, 100), (None, 0), ("n/a", 0)],
    )
    def test_clamp_percentage(self, value, expected):
        assert clamp_percentage(value) == expected


def test_on_battery():
    assert PowerSample(50, PowerSource.BATTERY).on_battery
    assert not PowerSample(50, PowerSource.AC).on_battery


class TestAcpiSampler:
    """AcpiSampler with a faked subprocess."""

    @pytest.mark.asyncio
    async def test_battery_reading(self):
        outputs = {"-b": FakeProcess(ACPI_DISCHARGING), "-a": FakeProcess(ACPI_ADAPTER_OFF)}
        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec(outputs)):
            sample = await AcpiSampler().sample()

        assert sample == PowerSample(42, PowerSource.BATTERY)

    @pytest.mark.asyncio
    async def test_ac_reading(self):
        outputs = {"-b": FakeProcess(ACPI_DISCHARGING), "-a": FakeProcess(ACPI_ADAPTER_ON)}
        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec(outputs)):
            sample = await AcpiSampler().sample()

        assert sample.source is PowerSource.AC

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError()):
            with pytest.raises(SampleError, match="not found"):
                await AcpiSampler().sample()

    @pytest.mark.asyncio
    async def test_adapter_failure_is_not_battery(self):
        """A failing acpi -a must not be read as running on battery."""
        outputs = {"-b": FakeProcess(ACPI_DISCHARGING), "-a": FakeProcess("", returncode=1)}
        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec(outputs)):
            with pytest.raises(SampleError, match="exited with 1"):
                await AcpiSampler().sample()

    @pytest.mark.asyncio
    async def test_no_power_supply_is_sample_error(self):
        """acpi exiting 0 with no device output never yields a 0% battery reading."""
        outputs = {"-b": FakeProcess(ACPI_NO_DEVICE), "-a": FakeProcess(ACPI_NO_DEVICE)}
        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec(outputs)):
            with pytest.raises(SampleError, match="unrecognized"):
                await AcpiSampler().sample()

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        hung = FakeProcess(hang=True)
        outputs = {"-b": hung, "-a": FakeProcess(ACPI_ADAPTER_ON)}
        with patch("asyncio.create_subprocess_exec", side_effect=fake_exec(outputs)):
            with pytest.raises(SampleError, match="timed out"):
                await AcpiSampler(timeout=0.01).sample()

        assert hung.killed


class TestPsutilSampler:
    """PsutilSampler with a mocked sensor."""

    @pytest.mark.asyncio
    async def test_on_battery(self):
        battery = SimpleNamespace(percent=63.4, power_plugged=False, secsleft=3600)
        with patch("psutil.sensors_battery", return_value=battery):
            sample = await PsutilSampler().sample()

        assert sample == PowerSample(63, PowerSource.BATTERY)

    @pytest.mark.asyncio
    async def test_on_ac(self):
        battery = SimpleNamespace(percent=100, power_plugged=True, secsleft=-2)
        with patch("psutil.sensors_battery", return_value=battery):
            sample = await PsutilSampler().sample()

        assert sample.source is PowerSource.AC

    @pytest.mark.asyncio
    async def test_no_battery(self):
        with patch("psutil.sensors_battery", return_value=None):
            with pytest.raises(SampleError):
                await PsutilSampler().sample()

    @pytest.mark.asyncio
    async def test_unknown_plug_state(self):
        battery = SimpleNamespace(percent=50, power_plugged=None, secsleft=-1)
        with patch("psutil.sensors_battery", return_value=battery):
            with pytest.raises(SampleError, match="power source"):
                await PsutilSampler().sample()


def test_make_sampler():
    assert isinstance(make_sampler("acpi"), AcpiSampler)
    assert isinstance(make_sampler("psutil"), PsutilSampler)
    with pytest.raises(ValueError):
        make_sampler("upower")
