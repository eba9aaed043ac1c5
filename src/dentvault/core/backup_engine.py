"""Core Backup Engine for DentVault"""

import logging
import re
import sqlite3
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from dentvault import __version__
from dentvault.utils.notifications import NotificationManager
from dentvault.utils.scheduler import BackupScheduler

from .archiver import list_asset_files, package_with_assets
from .checkpoint import force_durable
from .config_manager import AppConfig
from .database import PersistenceLayer, SQLiteDatabase, quote_identifier
from .errors import (
    BackupNotFound,
    DentVaultError,
    IntegrityFailed,
    MalformedArchive,
    RestoreFailed,
    RollbackFailed,
    SnapshotFailed,
    SourceUnavailable,
)
from .guard import single_flight
from .reconciliation import AssetSchema, ReconciliationReport, ReconciliationScanner, SyncReport
from .registry import BackupFormat, BackupRecord, BackupRegistry
from .restore import RestoreOrchestrator, RestoreOutcome
from .snapshot import discard_sidecars, ensure_source_available, snapshot
from .verifier import IntegrityVerifier, VerificationReport

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Extensions stripped from a caller supplied path before the real one is added
_CUSTOM_PATH_SUFFIX = re.compile(r"\.(json|db|sqlite|zip)$")


class ConsoleFilter(logging.Filter):
    """Keep records carrying a traceback out of the console; the log file has them"""

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.exc_info


def backup_timestamp(now: datetime | None = None) -> str:
    """UTC ISO-8601 timestamp with millisecond precision and a Z suffix"""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def backup_name_for(created_at: str) -> str:
    return "backup_" + created_at.replace(":", "-").replace(".", "-")


class BackupEngine:
    """Backup and restore operations over the clinic database and its images"""

    def __init__(
        self,
        app_config: AppConfig,
        db: PersistenceLayer | None = None,
        enable_notifications: bool = True,
        scheduler: BackupScheduler | None = None,
        schema: AssetSchema | None = None,
    ):
        self.config = app_config
        self._db = db
        self.schema = schema or AssetSchema()
        self.scheduler = scheduler or BackupScheduler()
        self.last_restore: RestoreOutcome | None = None

        self.notifier = None
        if enable_notifications and app_config.notifications_enabled:
            try:
                self.notifier = NotificationManager()
            except OSError as e:
                logging.warning(f"Failed to initialize notifications: {e}")

        self._init_storage()
        self.logger = self._setup_logger()

        self.registry = BackupRegistry(app_config.registry_file, app_config.max_registry_entries)
        self.verifier = IntegrityVerifier(app_config.expected_tables)

    @property
    def db(self) -> PersistenceLayer:
        """Live database handle, opened on first use"""
        if self._db is None:
            self._db = SQLiteDatabase(self.config.database_path)
        return self._db

    def close(self) -> None:
        if self._db is not None:
            self._db.close()

    def _init_storage(self) -> None:
        """Initialize storage directories"""
        self.config.backup_dir.mkdir(parents=True, exist_ok=True)
        self.config.log_dir.mkdir(parents=True, exist_ok=True)

    def _setup_logger(self) -> logging.Logger:
        """Set up logging with automatic rotation"""
        logger = logging.getLogger("DentVault")
        logger.setLevel(logging.INFO)

        log_file = self.config.log_dir / "backup.log"
        for handler in list(logger.handlers):
            if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == log_file.resolve():
                return logger

        # A previous engine pointed at a different backup dir
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # Rotating file handler (10MB max, keep 5 backup files)
        fh = RotatingFileHandler(
            log_file,
            maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(logging.INFO)

        ch = logging.StreamHandler()
        ch.setLevel(logging.WARNING)
        ch.addFilter(ConsoleFilter())

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)
        return logger

    def _target_path(self, custom_path: str | Path | None, include_assets: bool, name: str) -> Path:
        extension = ".zip" if include_assets else ".db"
        if custom_path:
            return Path(_CUSTOM_PATH_SUFFIX.sub("", str(custom_path)) + extension)
        return self.config.backup_dir / f"{name}{extension}"

    def _log_source_summary(self) -> None:
        tables = self.db.query("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        self.logger.info(f"Database contains {len(tables)} tables")

        present = {row["name"] for row in tables}
        total = 0
        for table in self.config.expected_tables:
            if table not in present:
                self.logger.info(f"Table {table} not present in database")
                continue
            count = self.db.query(f"SELECT COUNT(*) AS count FROM {quote_identifier(table)}")[0]["count"]
            self.logger.info(f"Table {table}: {count} records")
            total += count

        if total == 0:
            self.logger.warning("Database appears to be empty. Backup will contain no data.")

    def create_backup(self, custom_path: str | Path | None = None, include_assets: bool = False) -> Path:
        """Create a verified backup and register it

        Args:
            custom_path: Destination chosen by the user; its extension is
                replaced by ``.zip`` or ``.db``
            include_assets: Archive the image tree alongside the database

        Returns:
            Path of the created backup

        Raises:
            SourceUnavailable: Live database missing or empty
            SnapshotFailed, ArchiveFailed, IntegrityFailed: Backup not produced
            OperationInProgress: Another backup or restore is running
        """
        with single_flight(self.config.lock_file, "backup"):
            return self._create_backup(custom_path, include_assets)

    def _create_backup(self, custom_path: str | Path | None, include_assets: bool) -> Path:
        created_at = backup_timestamp()
        name = backup_name_for(created_at)
        backup_path = self._target_path(custom_path, include_assets, name)
        source = self.config.database_path

        self.logger.info(f"Starting backup creation: {backup_path} (include images: {include_assets})")
        try:
            ensure_source_available(source)
            try:
                self._log_source_summary()
            except sqlite3.Error as e:
                raise SourceUnavailable(f"Database file could not be read: {source}: {e}") from e

            try:
                record = self._write_backup(backup_path, name, created_at, include_assets)
            except (OSError, sqlite3.Error) as e:
                self._discard_artifact(backup_path)
                raise SnapshotFailed(f"Backup could not be written to {backup_path}: {e}") from e

        except DentVaultError as e:
            self.logger.error(f"Backup creation failed: {e}", exc_info=True)
            if self.notifier:
                self.notifier.notify_backup_failure(str(e))
            raise

        self.logger.info(f"Backup created successfully: {backup_path} ({record.size_mb:.2f} MB)")
        if self.notifier:
            self.notifier.notify_backup_success(record.name, record.size_mb, include_assets)
        return backup_path

    def _write_backup(self, backup_path: Path, name: str, created_at: str, include_assets: bool) -> BackupRecord:
        """Snapshot (and archive), verify and register; returns the new record"""
        source = self.config.database_path
        backup_format = BackupFormat.ARCHIVE_WITH_ASSETS if include_assets else BackupFormat.DB_ONLY
        force_durable(self.db)

        if include_assets:
            snapshot_path = self.config.backup_dir / f".{name}_snapshot.db"
            try:
                snapshot(source, snapshot_path, source=self.db)
                summary = package_with_assets(snapshot_path, self.config.assets_dir, backup_path)
                self.logger.info(f"Archived {summary.asset_count} image files")
            finally:
                snapshot_path.unlink(missing_ok=True)
                discard_sidecars(snapshot_path)
        else:
            method = snapshot(source, backup_path, source=self.db)
            self.logger.info(f"Database snapshot written using {method.value} method")

        try:
            report = self.verifier.verify(backup_path)
        except (IntegrityFailed, MalformedArchive):
            self._discard_artifact(backup_path)
            raise
        self.logger.info(f"Backup integrity verified: {report.total_rows} records in {report.table_count} tables")

        record = BackupRecord(
            name=backup_path.name[: -len(backup_path.suffix)],
            path=str(backup_path.resolve()),
            size=backup_path.stat().st_size,
            created_at=created_at,
            format=backup_format,
            includes_assets=include_assets,
            version=__version__,
            platform=sys.platform,
        )
        self.registry.add(record)
        return record

    def _discard_artifact(self, backup_path: Path) -> None:
        if backup_path.exists():
            backup_path.unlink()
            self.logger.info(f"Removed failed backup artifact: {backup_path.name}")
        discard_sidecars(backup_path)

    def _resolve_backup(self, path_or_name: str | Path) -> str | Path:
        """Accept either a filesystem path or the name of a registered backup"""
        if not Path(path_or_name).exists():
            record = self.registry.get(str(path_or_name))
            if record is not None:
                return record.path
        return path_or_name

    def restore_backup(self, backup_path: str | Path) -> bool:
        """Replace the live database (and images, for archives) from a backup

        Raises:
            BackupNotFound, MalformedArchive, IntegrityFailed: Nothing was touched
            RestoreFailed: Replacement failed and was rolled back
            RollbackFailed: Rollback failed; the anchor directory is kept
            OperationInProgress: Another backup or restore is running
        """
        target = self._resolve_backup(backup_path)
        self.logger.info(f"Starting backup restoration from {target}")
        try:
            with single_flight(self.config.lock_file, "restore"):
                try:
                    live_db = self.db
                except sqlite3.Error as e:
                    raise RestoreFailed(f"Live database could not be opened: {e}") from e
                orchestrator = RestoreOrchestrator(
                    live_db,
                    self.config.assets_dir,
                    self.config.backup_dir / ".restore",
                    verifier=self.verifier,
                    schema=self.schema,
                )
                outcome = orchestrator.restore(target)
        except DentVaultError as e:
            self.logger.error(f"Backup restoration failed: {e}", exc_info=True)
            if self.notifier:
                self.notifier.notify_restore_failure(str(e), rolled_back=not isinstance(e, RollbackFailed))
            raise

        self.last_restore = outcome
        missing = len(outcome.reconciliation.missing) if outcome.reconciliation else 0
        if missing:
            self.logger.warning(f"{missing} image records point at files that could not be found")
        if self.notifier:
            self.notifier.notify_restore_complete(outcome.backup_path.name, missing)
        return True

    def list_backups(self) -> list[BackupRecord]:
        return self.registry.list()

    def delete_backup(self, name: str) -> BackupRecord:
        """Delete a backup file and its registry entry

        Raises:
            BackupNotFound: No registry entry with that name
        """
        removed = self.registry.remove(name, delete_file=True)
        if removed is None:
            raise BackupNotFound(f"Backup not found in registry: {name}")
        self.logger.info(f"Backup deleted successfully: {name}")
        return removed

    def delete_old_backups(self, keep_count: int | None = None) -> list[BackupRecord]:
        """Keep the newest ``keep_count`` backups (retention.keep_count by default)"""
        if keep_count is None:
            keep_count = self.config.keep_count
        return self.registry.prune(keep_count)

    def verify_backup(self, backup_path: str | Path) -> VerificationReport:
        target = Path(self._resolve_backup(backup_path))
        if not target.exists():
            raise BackupNotFound(f"Backup file not found: {backup_path}")
        self.logger.info(f"Verifying backup: {target}")
        return self.verifier.verify(target)

    def reconcile_assets(self) -> ReconciliationReport:
        """Repair image paths and treatment links against the image directory"""
        with single_flight(self.config.lock_file, "reconcile"):
            return ReconciliationScanner(self.db, self.config.assets_dir, self.schema).reconcile()

    def sync_assets(self) -> SyncReport:
        """Register image files that have no database row"""
        with single_flight(self.config.lock_file, "sync"):
            return ReconciliationScanner(self.db, self.config.assets_dir, self.schema).sync_filesystem()

    def schedule_automatic_backups(self, frequency: str, include_assets: bool = False) -> tuple[bool, str]:
        """Install a cron entry running ``dentvault backup --scheduled``

        Args:
            frequency: 'hourly', 'daily' or 'weekly'

        Returns:
            Tuple of (success, message)
        """
        success, message = self.scheduler.schedule_frequency(frequency, include_assets)
        if success:
            self.logger.info(f"Automatic backups scheduled: {frequency}")
        else:
            self.logger.error(f"Failed to schedule automatic backups: {message}")
        return success, message

    def unschedule_automatic_backups(self) -> tuple[bool, str]:
        return self.scheduler.remove_backup_schedule()

    def run_scheduled_backup(self, include_assets: bool = False) -> tuple[Path, list[BackupRecord]]:
        """What the periodic job runs: a backup followed by retention cleanup"""
        backup_path = self.create_backup(include_assets=include_assets)
        removed = self.delete_old_backups()
        self.logger.info(f"Scheduled backup completed: {backup_path.name}, {len(removed)} old backups removed")
        return backup_path, removed

    def get_status(self) -> dict[str, Any]:
        """Summary of the live database, images and backups"""
        source = self.config.database_path
        backups = self.list_backups()
        return {
            "database_path": source,
            "database_exists": source.exists(),
            "database_size": source.stat().st_size if source.exists() else 0,
            "assets_dir": self.config.assets_dir,
            "asset_count": len(list_asset_files(self.config.assets_dir)),
            "backup_dir": self.config.backup_dir,
            "backup_count": len(backups),
            "latest_backup": backups[0] if backups else None,
            "schedules": self.scheduler.list_backup_schedules(),
        }
