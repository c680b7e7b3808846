"""
Command-line interface for KVM borg backup
"""
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import print as rprint

from .archive_client import BorgArchiveClient
from .backup_manager import BackupOrchestrator
from .config import BackupSettings, load_settings
from .errors import AlreadyRunning, BackupError, ConfigurationError, VirtualizationError
from .inventory import InventoryEnumerator
from .logging_config import setup_logging, get_logger
from .models import BackupMode, BackupResult
from .rbd_client import RbdClient
from .vm_manager import LibvirtManager

app = typer.Typer(help="KVM Borg Backup - live snapshot backups of libvirt domains into borg")
console = Console()


def init_settings(mode: Optional[BackupMode], env_file: Optional[Path]) -> BackupSettings:
    """Load settings and initialize logging; exits 1 on bad configuration"""
    try:
        settings = load_settings(env_file)
        if mode is not None:
            settings.backup_mode = mode.value
    except ConfigurationError as e:
        rprint(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_dir=settings.log_dir,
        log_file_max_size=settings.log_file_max_size,
    )
    return settings


def _libvirt(settings: BackupSettings) -> LibvirtManager:
    return LibvirtManager(settings.libvirt_uri, poll_interval=settings.block_job_poll_interval)


def _show_result(result: BackupResult) -> None:
    table = Table(title="Archives created")
    table.add_column("Archive", style="cyan")
    table.add_column("Source")
    for entry in result.entries:
        table.add_row(entry.key, entry.source)
    console.print(table)

    summary = f"""
[bold]Mode:[/bold] {result.mode.value}
[bold]Domains:[/bold] {', '.join(result.domains) or '-'}
[bold]Archives:[/bold] {len(result.entries)}
[bold]Duration:[/bold] {(result.duration_seconds or 0):.1f} seconds
    """
    console.print(Panel(summary, title="Summary", border_style="green"))


@app.command()
def backup(
    domain: Optional[str] = typer.Argument(None, help="Only back up this domain"),
    mode: Optional[BackupMode] = typer.Option(None, "--mode", "-m", help="Backing storage to back up"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Read settings from this file"),
):
    """Back up domains into the borg repository"""
    settings = init_settings(mode, env_file)
    logger = get_logger("kvm_borg_backup.cli")

    try:
        with _libvirt(settings) as virt:
            pool = RbdClient(settings) if settings.mode == BackupMode.RBD else None
            orchestrator = BackupOrchestrator(settings, virt, BorgArchiveClient(settings), pool=pool)
            result = orchestrator.run(domain)
    except AlreadyRunning:
        rprint("[yellow]Backup process already running, exiting.[/yellow]")
        raise typer.Exit(1)
    except (BackupError, VirtualizationError) as e:
        rprint(f"[red]✗ Backup failed: {e}[/red]")
        logger.error("CLI backup failed", error=str(e), error_type=type(e).__name__)
        raise typer.Exit(1)

    rprint("[green]✓ Backup completed successfully![/green]")
    _show_result(result)


@app.command("list-domains")
def list_domains(
    domain: Optional[str] = typer.Argument(None, help="Only show this domain"),
    mode: Optional[BackupMode] = typer.Option(None, "--mode", "-m", help="Backing storage to classify for"),
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Read settings from this file"),
):
    """List domains and which of their devices would be backed up"""
    settings = init_settings(mode, env_file)

    try:
        with _libvirt(settings) as virt:
            inventory = InventoryEnumerator(virt, settings)
            table = Table(title=f"Domains ({settings.mode.value} mode)")
            table.add_column("Domain", style="cyan")
            table.add_column("State")
            table.add_column("Device")
            table.add_column("Locator", style="blue")
            table.add_column("Backup")

            for dom in inventory.list_domains(domain):
                state_color = "green" if dom.is_running else "red"
                state = f"[{state_color}]{dom.state.value}[/{state_color}]"
                classified = inventory.classify_devices(dom)
                if not classified:
                    table.add_row(dom.name, state, "-", "-", "-")
                for device, reason in classified:
                    table.add_row(dom.name, state, device.tag, device.locator or "-",
                                  "[green]yes[/green]" if reason is None else f"[dim]skip ({reason})[/dim]")
            console.print(table)
    except (BackupError, VirtualizationError) as e:
        rprint(f"[red]Error listing domains: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def config(
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Read settings from this file"),
):
    """Show current configuration"""
    settings = init_settings(None, env_file)

    config_table = Table(title="KVM Borg Backup Configuration")
    config_table.add_column("Setting", style="cyan")
    config_table.add_column("Value", style="green")

    config_items = [
        ("Mode", settings.backup_mode),
        ("Borg Repository", settings.borg_repo),
        ("Passphrase", "set" if settings.borg_passphrase else "-"),
        ("Passcommand", "set" if settings.borg_passcommand else "-"),
        ("Retention", settings.prune_options or "disabled"),
        ("Lock File", settings.lock_file),
        ("Libvirt URI", settings.libvirt_uri),
        ("Snapshot Name", settings.snapshot_name),
        ("Base Extension", settings.base_image_extension),
        ("Overlay Extension", settings.overlay_extension),
        ("Managed Image Dirs", ", ".join(settings.managed_image_dirs) or "any"),
        ("RBD Pool", settings.rbd_pool),
        ("RBD Snapshots Kept", str(settings.rbd_keep_snapshots)),
        ("Log Dir", settings.log_dir),
    ]

    for setting, value in config_items:
        config_table.add_row(setting, value)

    console.print(config_table)


if __name__ == "__main__":
    app()
