"""Configuration system for blackout-grace."""

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

DEFAULT_CONFIG_PATH = Path("/etc/blackout-grace/config.toml")
CONFIG_ENV_VAR = "BLACKOUT_GRACE_CONFIG"

VALID_POWER_SOURCES = ("acpi", "psutil")


@dataclass(frozen=True)
class Target:
    """A dependent host that receives the remote shutdown command."""

    user: str
    host: str

    @property
    def name(self) -> str:
        """Identifier used for per-target markers and log lines."""
        return f"{self.user}@{self.host}"


@dataclass
class GeneralConfig:
    """Marker locations, timers and thresholds."""

    battery_file: str = "/tmp/blackoutgrace_battery_timestamp"
    shutdown_flag: str = "/tmp/blackoutgrace_shutdown_initiated"
    status_file: str = "/tmp/blackoutgrace_last_status_update"
    ac_restore_file: str = "/tmp/blackoutgrace_ac_restore_timestamp"
    minutes: int = 25  # Battery grace period before shutdown
    sleep_interval: int = 5  # Seconds between power samples
    status_interval: int = 120  # Seconds between status log lines
    min_battery: int = 10  # Percent below which shutdown is immediate
    ac_stable_time: int = 300  # Seconds of AC before a pending shutdown is cancelled
    power_source: str = "acpi"

    @property
    def grace_seconds(self) -> int:
        """Battery grace period in seconds."""
        return self.minutes * 60


@dataclass
class RemoteConfig:
    """Remote shutdown invocation."""

    command: str = "sudo poweroff"
    timeout: int = 30  # Hard limit on a single ssh invocation
    connect_timeout: int = 10
    ssh_binary: str = "ssh"


@dataclass
class SystemConfig:
    """Daemon housekeeping."""

    sample_failure_backoff: int = 60  # Seconds to wait after a failed sample
    stop_timeout: int = 35  # Max seconds to wait for an in-flight tick on shutdown
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 3


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def default_config_path() -> Path:
    """Config path from the environment, falling back to the system default."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


@dataclass
class Config:
    """Main configuration container."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    targets: tuple[Target, ...] = ()
    config_path: Path = field(default_factory=default_config_path)

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "blackout-grace"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for ephemeral files (PID)."""
        return Path("/tmp/blackout-grace")

    @property
    def log_path(self) -> Path:
        """Daemon log path."""
        return self.state_dir / "daemon.log"

    @property
    def pid_path(self) -> Path:
        """PID file path."""
        return self.runtime_dir / "daemon.pid"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("general", "remote", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        if self.targets:
            targets = tomlkit.aot()
            for target in self.targets:
                targets.append(_dataclass_to_table(target))
            doc.add("targets", targets)

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on an empty file agree.
        """
        path = path or default_config_path()
        if not path.exists():
            return cls(config_path=path)

        try:
            with open(path) as f:
                data = tomlkit.load(f).unwrap()
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            general=_load_general_config(data.get("general", {})),
            remote=_load_remote_config(data.get("remote", {})),
            system=_load_system_config(data.get("system", {})),
            targets=_load_targets(data.get("targets", [])),
            config_path=path,
        )


def _load_general_config(data: dict) -> GeneralConfig:
    """Load [general], validating thresholds and timers."""
    d = GeneralConfig()

    min_battery = data.get("min_battery", d.min_battery)
    if not 0 <= min_battery <= 100:
        raise ValueError(f"min_battery must be between 0 and 100, got {min_battery}")

    minutes = data.get("minutes", d.minutes)
    if minutes < 0:
        raise ValueError(f"minutes must be >= 0, got {minutes}")

    sleep_interval = data.get("sleep_interval", d.sleep_interval)
    if sleep_interval <= 0:
        raise ValueError(f"sleep_interval must be > 0, got {sleep_interval}")

    status_interval = data.get("status_interval", d.status_interval)
    if status_interval <= 0:
        raise ValueError(f"status_interval must be > 0, got {status_interval}")

    ac_stable_time = data.get("ac_stable_time", d.ac_stable_time)
    if ac_stable_time < 0:
        raise ValueError(f"ac_stable_time must be >= 0, got {ac_stable_time}")

    power_source = data.get("power_source", d.power_source)
    if power_source not in VALID_POWER_SOURCES:
        raise ValueError(
            f"Invalid power_source: {power_source!r}. Must be one of {VALID_POWER_SOURCES}"
        )

    return GeneralConfig(
        battery_file=data.get("battery_file", d.battery_file),
        shutdown_flag=data.get("shutdown_flag", d.shutdown_flag),
        status_file=data.get("status_file", d.status_file),
        ac_restore_file=data.get("ac_restore_file", d.ac_restore_file),
        minutes=minutes,
        sleep_interval=sleep_interval,
        status_interval=status_interval,
        min_battery=min_battery,
        ac_stable_time=ac_stable_time,
        power_source=power_source,
    )


def _load_remote_config(data: dict) -> RemoteConfig:
    """Load [remote]."""
    d = RemoteConfig()
    timeout = data.get("timeout", d.timeout)
    if timeout <= 0:
        raise ValueError(f"remote timeout must be > 0, got {timeout}")
    return RemoteConfig(
        command=data.get("command", d.command),
        timeout=timeout,
        connect_timeout=data.get("connect_timeout", d.connect_timeout),
        ssh_binary=data.get("ssh_binary", d.ssh_binary),
    )


def _load_system_config(data: dict) -> SystemConfig:
    """Load [system]."""
    d = SystemConfig()
    return SystemConfig(
        sample_failure_backoff=data.get("sample_failure_backoff", d.sample_failure_backoff),
        stop_timeout=data.get("stop_timeout", d.stop_timeout),
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_targets(data: list) -> tuple[Target, ...]:
    """Load [[targets]] in file order. Duplicates are dropped."""
    targets: list[Target] = []
    for i, entry in enumerate(data):
        user = entry.get("user")
        host = entry.get("host")
        if not user or not host:
            raise ValueError(f"targets[{i}] must define both 'user' and 'host'")
        target = Target(user=str(user), host=str(host))
        if target not in targets:
            targets.append(target)
    return tuple(targets)
