"""
WindUSB CLI Main Entry Point.

Command-line front end for listing drives, checking images and writing
Windows installer media.
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
import humanize
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from windusb import __version__
from windusb.core.cleanup import (
    CleanupManager,
    ProcessRegistry,
    become_process_group_leader,
    install_signal_handlers,
)
from windusb.core.config import WindUSBConfig, load_config
from windusb.core.events import Error, EventChannel, Finished, ProgressEvent, Update
from windusb.core.job import FlashRunner
from windusb.core.logging import setup_logging
from windusb.core.models import FlashJob
from windusb.core.safety import (
    generate_confirmation_string,
    run_preflight,
    verify_confirmation,
)
from windusb.platform import get_platform_backend
from windusb.platform.base import FlashBackend

console = Console()


def get_config(ctx: click.Context) -> WindUSBConfig:
    return ctx.obj["config"]


def get_backend(ctx: click.Context) -> FlashBackend:
    """Get or create the platform backend from context."""
    if "backend" not in ctx.obj:
        try:
            ctx.obj["backend"] = get_platform_backend(get_config(ctx).tools)
        except RuntimeError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
    return ctx.obj["backend"]


@click.group()
@click.version_option(version=__version__, prog_name="WindUSB")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """
    WindUSB - Create bootable Windows installer USB drives.

    Erases a USB drive, formats it FAT32 and copies a Windows image onto
    it, splitting the install payload so it fits the filesystem.
    """
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = WindUSBConfig.load(config)
    else:
        ctx.obj["config"] = load_config()

    if verbose:
        ctx.obj["config"].logging.level = "DEBUG"

    setup_logging(ctx.obj["config"].logging)


@cli.command("list")
@click.pass_context
def list_drives(ctx: click.Context) -> None:
    """List USB drives that can be written."""
    backend = get_backend(ctx)

    with console.status("Scanning drives..."):
        drives = backend.list_removable_drives()

    if not drives:
        console.print("[yellow]No USB drives found[/yellow]")
        return

    table = Table(title="USB Drives")
    table.add_column("Device", style="cyan")
    table.add_column("Model", style="white")
    table.add_column("Size", style="green")
    table.add_column("Removable", style="yellow")

    for drive in drives:
        table.add_row(
            drive.device_path,
            drive.model[:30] if drive.model else "Unknown",
            humanize.naturalsize(drive.size_bytes, binary=True),
            "Yes" if drive.removable else "",
        )

    console.print(table)


@cli.command("check")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def check_image(ctx: click.Context, image: Path) -> None:
    """Check that IMAGE contains a Windows install payload."""
    backend = get_backend(ctx)

    with console.status("Inspecting image..."):
        payload = backend.inspect_image(image)

    if payload is None:
        console.print(f"[red]✗ Invalid image: install.wim/esd not found in {image}[/red]")
        sys.exit(1)

    console.print(
        Panel(
            f"""[cyan]Image:[/cyan] {image}
[cyan]Size:[/cyan] {humanize.naturalsize(image.stat().st_size, binary=True)}
[cyan]Payload:[/cyan] {payload.archive_path}
[cyan]Written as:[/cyan] sources/{payload.split_filename}""",
            title="Windows Image",
        )
    )


@cli.command("flash")
@click.argument("drive")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--yes", "-y", is_flag=True, help="Skip the typed confirmation")
@click.option("--dry-run", is_flag=True, help="Show what would be done")
@click.pass_context
def flash(ctx: click.Context, drive: str, image: Path, yes: bool, dry_run: bool) -> None:
    """Erase DRIVE and write the Windows image IMAGE onto it."""
    config = get_config(ctx)
    backend = get_backend(ctx)

    if not backend.is_admin():
        console.print("[red]Error: flashing requires root privileges[/red]")
        sys.exit(1)

    removable = [d.device_path for d in backend.list_removable_drives()]
    report = run_preflight(drive, image, config, removable=removable)
    console.print(report.get_summary())
    if report.has_errors:
        console.print("[red]Preflight checks failed[/red]")
        sys.exit(1)

    if dry_run:
        console.print(
            Panel(
                f"""[yellow]DRY RUN - No changes will be made[/yellow]

Drive: {drive} (all data erased)
Image: {image}
Layout: GPT, one FAT32 partition
Split size: {config.flash.split_chunk_mib} MiB""",
                title="Flash Plan",
            )
        )
        return

    if config.safety.require_confirmation and not yes:
        confirm_str = generate_confirmation_string(drive)
        console.print(f"[red]⚠️  This will DESTROY ALL DATA on {drive}[/red]")
        user_confirm = click.prompt(f"Type '{confirm_str}' to confirm")
        verified, message = verify_confirmation(drive, user_confirm)
        if not verified:
            console.print(f"[red]Confirmation failed: {message}[/red]")
            sys.exit(1)

    config.ensure_directories()
    become_process_group_leader()
    manager = CleanupManager(config.flash, config.tools)
    install_signal_handlers(manager)

    job = FlashJob.create(
        drive,
        image,
        config.flash.temp_directory,
        config.flash.mount_prefix,
    )
    runner = FlashRunner(backend, config)
    job_id = runner.submit(job)
    runner.start(job_id)

    terminal = render_events(runner.get_channel(job_id), config.ui.poll_interval_ms / 1000)
    result = runner.wait(job_id)

    if isinstance(terminal, Finished):
        duration = result.duration_seconds if result else None
        suffix = f" in {humanize.naturaldelta(duration)}" if duration else ""
        console.print(f"[green]✓ Done{suffix}. It is now safe to remove {drive}.[/green]")
        return

    message = terminal.message if isinstance(terminal, Error) else "Flash ended without a result"
    console.print(f"[red]✗ {message}[/red]")
    sys.exit(1)


def render_events(channel: EventChannel, poll_interval: float) -> ProgressEvent | None:
    """Draw updates from ``channel`` until its terminal event arrives."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=100)

        while True:
            event = channel.get(timeout=poll_interval)
            if event is None:
                continue
            if isinstance(event, Update):
                progress.update(task, completed=event.fraction * 100, description=event.message)
                continue
            if isinstance(event, Finished):
                progress.update(task, completed=100, description="Done")
            return event


@cli.command("cleanup")
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Unmount and remove mountpoints left behind by an interrupted run."""
    config = get_config(ctx)
    # A separate invocation owns no running helpers of its own
    manager = CleanupManager(
        config.flash, config.tools, registry=ProcessRegistry(), kill_process_group=False
    )
    report = manager.cleanup(reason="manual")

    if not report.did_anything:
        console.print("Nothing to clean up")
        return

    for path in report.unmounted:
        console.print(f"Unmounted {path}")
    for path in report.removed:
        console.print(f"Removed {path}")
    if report.killed_pids:
        console.print(f"Stopped {len(report.killed_pids)} helper process(es)")


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
