"""CLI commands for apptop."""

import time
from pathlib import Path

import click

from apptop.config import Config


@click.group()
@click.version_option(package_name="apptop")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default ~/.config/apptop/config.toml)",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """Watch applications and the CPU and disk time they use."""
    from apptop.logging import configure

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = Config.load(config_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    # every command logs to the file, never to the terminal
    configure(ctx.obj["config"])


@main.command()
@click.option("--interval", "-i", type=float, default=None, help="Seconds between refreshes")
@click.pass_context
def run(ctx: click.Context, interval: float | None) -> None:
    """Launch the interactive application monitor."""
    from queue import Queue

    from apptop.app import ApptopApp
    from apptop.monitor import SystemMonitor

    config: Config = ctx.obj["config"]
    monitor = SystemMonitor(
        Queue(),
        poll_rate=interval or config.monitor.refresh_interval,
        disks=config.monitor.disks,
        include_virtual_disks=config.monitor.include_virtual_disks,
    )
    ApptopApp(monitor=monitor).run()


@main.command()
def info() -> None:
    """Show CPU topology and current core frequencies."""
    from apptop.app import format_frequency
    from apptop.cpu import get_cpu_freq, read_proc_stat
    from apptop.cpu import cpu_info as read_topology
    from apptop.errors import SamplingError

    try:
        topology = read_topology()
    except SamplingError as e:
        raise click.ClickException(str(e)) from e

    rows = [
        ("Vendor", topology.vendor_id),
        ("Model", topology.model_name),
        ("Architecture", topology.architecture),
        ("Logical CPUs", topology.logical_cpus),
        ("Physical CPUs", topology.physical_cpus),
        ("Sockets", topology.sockets),
        ("Virtualization", topology.virtualization),
        ("Max speed", format_frequency(topology.max_speed)),
    ]
    for label, value in rows:
        click.echo(f"{label:<16}{value if value is not None else 'N/A'}")

    try:
        cores = len(read_proc_stat().cores)
    except SamplingError as e:
        raise click.ClickException(str(e)) from e

    click.echo("")
    for core in range(cores):
        try:
            freq = format_frequency(get_cpu_freq(core))
        except SamplingError:
            freq = format_frequency(None)
        click.echo(f"CPU{core:<13}{freq}")


@main.command()
@click.option("--interval", "-i", type=float, default=1.0, help="Seconds between the two samples")
def apps(interval: float) -> None:
    """List applications with their memory and CPU usage."""
    from apptop.app import format_bytes
    from apptop.apps import Apps
    from apptop.errors import SamplingError

    aggregator = Apps()
    try:
        aggregator.refresh()
        time.sleep(interval)
        items = aggregator.refresh()
    except SamplingError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"{'Application':32}  {'Memory':>10}  {'Processor':>9}  {'Processes':>9}  Key")
    click.echo("-" * 80)
    for item in items:
        click.echo(
            f"{item.display_name[:32]:32}  {format_bytes(item.memory_usage):>10}  "
            f"{item.cpu_time_ratio * 100:8.1f}%  {item.processes_amount:>9}  {item.key or '-'}"
        )


@main.command(name="signal")
@click.argument("key")
@click.argument(
    "action",
    type=click.Choice(["end", "kill", "halt", "continue"], case_sensitive=False),
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def signal_command(key: str, action: str, yes: bool) -> None:
    """Send ACTION to every process of the application KEY."""
    from apptop.apps import Apps
    from apptop.errors import SamplingError
    from apptop.signals import ProcessAction, execute_action

    aggregator = Apps()
    try:
        aggregator.refresh()
    except SamplingError as e:
        raise click.ClickException(str(e)) from e

    application = aggregator.find_by_key(key)
    if application is None:
        raise click.ClickException(f"No running application with key {key!r}")

    def confirm(app, act) -> bool:
        if yes:
            return True
        prompt = f"{act.title} {app.display_name}?"
        if act.warning:
            prompt = f"{prompt} {act.warning}"
        return click.confirm(prompt, default=False)

    outcome = execute_action(application, ProcessAction[action.upper()], confirm)
    if outcome is None:
        click.echo("Cancelled.")
        return

    click.echo(outcome.message)
    if not outcome.succeeded:
        ctx = click.get_current_context()
        ctx.exit(1)
