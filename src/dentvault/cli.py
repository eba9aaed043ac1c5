#!/usr/bin/env python3
"""Command Line Interface for DentVault"""

import logging
import sys
from collections.abc import Callable
from typing import Any, TypeVar, cast

import click
from rich.console import Console
from rich.table import Table

from dentvault.core.backup_engine import BackupEngine
from dentvault.core.config_manager import AppConfig, ConfigManager
from dentvault.core.errors import DentVaultError, RollbackFailed
from dentvault.utils.messages import user_message
from dentvault.utils.scheduler import FREQUENCY_TEMPLATES, BackupScheduler

console = Console()

T = TypeVar("T")

# Lazy-initialized components (created on first access to avoid startup cost)
_components: dict[str, Any] = {}


def _get_config() -> ConfigManager:
    if "config" not in _components:
        _components["config"] = ConfigManager(_components.get("config_dir"))
    return cast("ConfigManager", _components["config"])


def _get_app_config() -> AppConfig:
    if "app_config" not in _components:
        _components["app_config"] = _get_config().build_app_config()
    return cast("AppConfig", _components["app_config"])


def _get_backup_engine() -> BackupEngine:
    if "backup_engine" not in _components:
        scheduler = BackupScheduler(_components.get("config_dir"))
        _components["backup_engine"] = BackupEngine(_get_app_config(), scheduler=scheduler)
    return cast("BackupEngine", _components["backup_engine"])


def _format_size(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {units[unit]}"


def _run(operation: Callable[[], T]) -> T:
    """Run an engine operation, turning failures into one translated line and exit 1"""
    try:
        return operation()
    except DentVaultError as e:
        console.print(f"[red]✗ {user_message(e, _get_app_config().locale)}[/red]")
        if isinstance(e, RollbackFailed) and e.anchor_dir:
            console.print(f"[red]  {e.anchor_dir}[/red]")
        sys.exit(1)
    except Exception as e:
        logging.getLogger("DentVault.CLI").error(f"Unexpected error: {e}", exc_info=True)
        console.print(f"[red]✗ {user_message(e, _get_app_config().locale)}[/red]")
        sys.exit(1)


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False), help="Directory holding settings.yaml")
def cli(config_dir):
    """DentVault - clinic database backup and restore"""
    if config_dir:
        _components["config_dir"] = config_dir


@cli.command()
@click.option("--path", "custom_path", help="Write the backup here instead of the backup directory")
@click.option("--with-assets", is_flag=True, help="Include the dental images in a .zip archive")
@click.option("--scheduled", is_flag=True, help="Run as the periodic job (backup, then retention cleanup)")
def backup(custom_path, with_assets, scheduled):
    """Create a verified backup"""
    engine = _get_backup_engine()

    if scheduled:
        backup_path, removed = _run(lambda: engine.run_scheduled_backup(include_assets=with_assets))
        console.print(f"[green]✓[/green] Scheduled backup created: {backup_path}")
        if removed:
            console.print(f"[dim]Removed {len(removed)} old backup(s)[/dim]")
        return

    with console.status("[bold green]Creating backup..."):
        backup_path = _run(lambda: engine.create_backup(custom_path, include_assets=with_assets))
    console.print(f"[green]✓[/green] Backup created: {backup_path} ({_format_size(backup_path.stat().st_size)})")


@cli.command()
@click.argument("backup_path")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def restore(backup_path, yes):
    """Restore the database (and images, for archives) from BACKUP_PATH or a backup name"""
    if not yes:
        click.confirm("This replaces the current clinic data. Continue?", abort=True)

    engine = _get_backup_engine()
    with console.status("[bold green]Restoring backup..."):
        _run(lambda: engine.restore_backup(backup_path))

    console.print("[green]✓[/green] Backup restored successfully")
    outcome = engine.last_restore
    if outcome is not None and outcome.reconciliation is not None:
        report = outcome.reconciliation
        console.print(
            f"  Image paths updated: {report.paths_updated}, treatments relinked: {report.parents_relinked}"
        )
        if report.missing:
            console.print(f"[yellow]  {len(report.missing)} image file(s) could not be found[/yellow]")
        if report.ambiguous:
            console.print(f"[yellow]  {len(report.ambiguous)} image(s) matched more than one file[/yellow]")
    elif outcome is not None and outcome.restored_rows:
        for table, count in outcome.restored_rows.items():
            console.print(f"  {table}: {count} records")


@cli.command("list")
def list_backups():
    """List registered backups, newest first"""
    backups = _run(_get_backup_engine().list_backups)
    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan")
    table.add_column("Created", style="white")
    table.add_column("Format", style="white")
    table.add_column("Size", justify="right")
    table.add_column("Path", style="dim")

    for record in backups:
        table.add_row(
            record.name,
            record.created.strftime("%Y-%m-%d %H:%M:%S"),
            record.format.value,
            _format_size(record.size),
            record.path,
        )

    console.print(table)


@cli.command()
@click.argument("name")
def delete(name):
    """Delete a backup file and its registry entry"""
    _run(lambda: _get_backup_engine().delete_backup(name))
    console.print(f"[green]✓[/green] Backup deleted: {name}")


@cli.command()
@click.option("--keep", type=int, help="Number of backups to keep (default: retention.keep_count)")
def prune(keep):
    """Delete all but the newest backups"""
    if keep is not None and keep < 0:
        raise click.BadParameter("must be >= 0", param_hint="--keep")
    removed = _run(lambda: _get_backup_engine().delete_old_backups(keep))
    if not removed:
        console.print("[dim]Nothing to remove[/dim]")
        return
    for record in removed:
        console.print(f"[green]✓[/green] Deleted old backup: {record.name}")
    console.print(f"Removed {len(removed)} backup(s)")


@cli.command()
@click.argument("backup_path")
def verify(backup_path):
    """Check a backup's structure and integrity"""
    report = _run(lambda: _get_backup_engine().verify_backup(backup_path))
    console.print(f"[green]✓[/green] Backup verified: {report.backup_path}")
    console.print(f"  Tables: {report.table_count}, records: {report.total_rows}")
    for table, count in report.row_counts.items():
        console.print(f"  {table}: {count}")
    if report.missing_tables:
        console.print(f"[dim]  Not present: {', '.join(report.missing_tables)}[/dim]")
    if report.foreign_key_violations:
        console.print(f"[yellow]  {len(report.foreign_key_violations)} foreign key violation(s)[/yellow]")


@cli.command()
def reconcile():
    """Repair image paths and treatment links against the image directory"""
    report = _run(_get_backup_engine().reconcile_assets)
    console.print(f"[green]✓[/green] Checked {report.rows_scanned} image records")
    console.print(f"  Paths updated: {report.paths_updated}, treatments relinked: {report.parents_relinked}")
    if report.missing:
        console.print(f"[yellow]  Missing files: {len(report.missing)}[/yellow]")
    if report.orphaned:
        console.print(f"[yellow]  Without matching treatment: {len(report.orphaned)}[/yellow]")
    if report.ambiguous:
        console.print(f"[yellow]  Ambiguous matches: {len(report.ambiguous)}[/yellow]")


@cli.command("sync-assets")
def sync_assets():
    """Register image files that have no database record"""
    stats = _run(_get_backup_engine().sync_assets)
    console.print(
        f"[green]✓[/green] Processed {stats.total_processed}, added {stats.total_added}, "
        f"skipped {stats.total_skipped}, errors {stats.total_errors}"
    )
    for error in stats.errors:
        console.print(f"[red]  {error['file']}: {error['error']}[/red]")


@cli.command()
@click.argument("frequency", type=click.Choice(list(FREQUENCY_TEMPLATES)))
@click.option("--with-assets", is_flag=True, help="Scheduled backups include the dental images")
def schedule(frequency, with_assets):
    """Run backups automatically (hourly, daily or weekly)"""
    success, msg = _get_backup_engine().schedule_automatic_backups(frequency, include_assets=with_assets)
    if success:
        console.print(f"[green]✓[/green] {msg}")
    else:
        console.print(f"[red]✗ {msg}[/red]")
        sys.exit(1)


@cli.command()
def unschedule():
    """Remove the automatic backup schedule"""
    success, msg = _get_backup_engine().unschedule_automatic_backups()
    if success:
        console.print(f"[green]✓[/green] {msg}")
    else:
        console.print(f"[yellow]{msg}[/yellow]")


@cli.command()
def schedules():
    """List automatic backup schedules"""
    entries = _get_backup_engine().scheduler.list_backup_schedules()
    if not entries:
        console.print("[yellow]No backup schedules configured[/yellow]")
        return

    table = Table(title="Backup Schedules", show_header=True, header_style="bold magenta")
    table.add_column("Schedule", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Comment", style="dim")
    for entry in entries:
        table.add_row(entry["schedule"], entry["human_readable"], entry["comment"])
    console.print(table)


@cli.command()
def status():
    """Show database, image and backup status"""
    console.print("[bold cyan]DentVault - Status[/bold cyan]\n")
    info = _run(_get_backup_engine().get_status)

    table = Table(show_header=False)
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="white")
    db_state = _format_size(info["database_size"]) if info["database_exists"] else "[red]missing[/red]"
    table.add_row("Database", f"{info['database_path']} ({db_state})")
    table.add_row("Images", f"{info['assets_dir']} ({info['asset_count']} files)")
    table.add_row("Backups", f"{info['backup_dir']} ({info['backup_count']} registered)")
    latest = info["latest_backup"]
    table.add_row("Latest backup", latest.name if latest else "None")
    schedule_text = ", ".join(s["human_readable"] for s in info["schedules"]) or "Not scheduled"
    table.add_row("Schedule", schedule_text)
    console.print(table)


if __name__ == "__main__":
    cli()
