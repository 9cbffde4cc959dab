"""CLI commands for blackout-grace."""

from pathlib import Path

import click

from blackout_grace.config import CONFIG_ENV_VAR, Config


def _load_config(ctx: click.Context) -> Config:
    """Load config from the path given to the group, exiting 1 if it is invalid."""
    path: Path | None = ctx.obj.get("config_path") if ctx.obj else None
    try:
        return Config.load(path)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(package_name="blackout-grace")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=CONFIG_ENV_VAR,
    default=None,
    help="Config file (default: /etc/blackout-grace/config.toml)",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """Shut down dependent hosts when this machine runs on battery too long."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Run the power watchdog in the foreground."""
    import asyncio

    from blackout_grace.daemon import StartupError, run_daemon

    config = _load_config(ctx)
    try:
        asyncio.run(run_daemon(config))
    except StartupError:
        raise SystemExit(1)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show episode markers and pending countdowns."""
    import time

    from blackout_grace.daemon import running_daemon_pid
    from blackout_grace.formatting import format_age, format_countdown, remaining
    from blackout_grace.markers import MarkerKind, MarkerStore

    config = _load_config(ctx)
    store = MarkerStore.from_config(config.general)
    now = int(time.time())

    daemon_pid = running_daemon_pid(config.pid_path)
    click.echo(f"Daemon: running (PID {daemon_pid})" if daemon_pid else "Daemon: stopped")

    state = store.load_state(config.targets)
    if not state.episode_pending and state.ac_restore_onset is None:
        click.echo("No battery episode pending.")
    else:
        click.echo("\nBattery episode:")
        click.echo(f"  Battery onset:    {format_age(state.battery_onset, now=now)}")
        click.echo(f"  Shutdown issued:  {format_age(state.shutdown_issued, now=now)}")
        click.echo(f"  AC restore onset: {format_age(state.ac_restore_onset, now=now)}")

        if state.battery_onset is not None and state.shutdown_issued is None:
            left = remaining(config.general.grace_seconds, state.battery_onset, now)
            if left > 0:
                click.echo(f"  Shutdown in {format_countdown(left)} unless power restored")
            else:
                click.echo("  Grace period expired; shutdown pending dispatch")
        if state.ac_restore_onset is not None:
            left = remaining(config.general.ac_stable_time, state.ac_restore_onset, now)
            click.echo(f"  Cancellation in {format_countdown(left)} if AC remains stable")

    if config.targets:
        click.echo(f"\nTargets: {len(config.targets)}")
        for target in config.targets:
            issued = target.name in state.issued_targets
            click.echo(f"  - {target.name}: {'shutdown issued' if issued else 'pending'}")

    last_status = store.get(MarkerKind.LAST_STATUS)
    click.echo(f"\nLast status update: {format_age(last_status, now=now)}")


@main.command()
@click.confirmation_option(prompt="Clear all episode markers and cancel any pending shutdown?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Operator reset: clear all episode markers."""
    from blackout_grace.markers import MarkerStore

    config = _load_config(ctx)
    MarkerStore.from_config(config.general).clear_all()
    click.echo("Episode markers cleared")


@main.command()
@click.option(
    "--source",
    type=click.Choice(["acpi", "psutil"]),
    default=None,
    help="Override the configured power source backend",
)
@click.pass_context
def sample(ctx: click.Context, source: str | None) -> None:
    """Take a single power reading."""
    import asyncio

    from blackout_grace.sampler import SampleError, make_sampler

    config = _load_config(ctx)
    sampler = make_sampler(source or config.general.power_source)
    try:
        reading = asyncio.run(sampler.sample())
    except SampleError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Source: {reading.source.value}")
    click.echo(f"Charge: {reading.percentage}%")
    if reading.on_battery and reading.percentage < config.general.min_battery:
        click.echo(f"Critical: below min_battery ({config.general.min_battery}%)")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Display current configuration."""
    cfg = _load_config(ctx)
    general = cfg.general

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[general]")
    click.echo(f"  battery_file = {general.battery_file}")
    click.echo(f"  shutdown_flag = {general.shutdown_flag}")
    click.echo(f"  status_file = {general.status_file}")
    click.echo(f"  ac_restore_file = {general.ac_restore_file}")
    click.echo(f"  minutes = {general.minutes}")
    click.echo(f"  sleep_interval = {general.sleep_interval}")
    click.echo(f"  status_interval = {general.status_interval}")
    click.echo(f"  min_battery = {general.min_battery}")
    click.echo(f"  ac_stable_time = {general.ac_stable_time}")
    click.echo(f"  power_source = {general.power_source}")
    click.echo()
    click.echo("[remote]")
    click.echo(f"  command = {cfg.remote.command}")
    click.echo(f"  timeout = {cfg.remote.timeout}")
    click.echo()
    click.echo(f"targets ({len(cfg.targets)}):")
    for target in cfg.targets:
        click.echo(f"  - {target.name}")


@config.command("edit")
@click.pass_context
def config_edit(ctx: click.Context) -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config(ctx)

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a config file with default values."""
    path: Path | None = ctx.obj.get("config_path")
    cfg = Config() if path is None else Config(config_path=path)

    if cfg.config_path.exists() and not force:
        click.echo(f"Config already exists at {cfg.config_path} (use --force)", err=True)
        raise SystemExit(1)

    cfg.save()
    click.echo(f"Wrote default config to {cfg.config_path}")
    click.echo("Add one [[targets]] table (user, host) per host to shut down.")


if __name__ == "__main__":
    main()
