"""Restore orchestrator: replaces live state from a backup and rolls back on failure"""

import json
import logging
import shutil
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .archiver import ARCHIVE_ASSETS_DIR, ARCHIVE_DB_NAME, extract_archive, inspect_archive
from .checkpoint import force_durable
from .database import PersistenceLayer
from .errors import BackupNotFound, DentVaultError, MalformedArchive, RestoreFailed, RollbackFailed
from .reconciliation import AssetSchema, ReconciliationReport, ReconciliationScanner
from .snapshot import discard_sidecars, snapshot
from .verifier import IntegrityVerifier

logger = logging.getLogger("DentVault.Restore")

LEGACY_REQUIRED_KEYS = ("metadata", "patients", "appointments")
LEGACY_OPTIONAL_COLLECTIONS = ("payments", "treatments")


class RestoreState(Enum):
    IDLE = "idle"
    SNAPSHOTTING_CURRENT = "snapshotting_current"
    REPLACING = "replacing"
    RECONCILING = "reconciling"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


class BackupKind(Enum):
    ARCHIVE = "archive"
    DATABASE = "database"
    LEGACY_JSON = "legacy_json"


@dataclass
class RestoreOutcome:
    """What a completed restore did"""

    backup_path: Path
    kind: BackupKind
    reconciliation: ReconciliationReport | None = None
    restored_rows: dict[str, int] = field(default_factory=dict)


def detect_backup(backup_path: str | Path) -> tuple[BackupKind, Path]:
    """Work out the backup format and the file that actually holds it

    ``.zip`` (or an existing ``<path>.zip``) is an archive, ``.db`` (or an
    existing ``<path>.db``) is a database-only backup, and an existing file
    with the extension swapped for ``.json`` is a legacy dump.

    Raises:
        BackupNotFound: No artifact matches the path
    """
    raw = str(backup_path)
    if raw.endswith(".zip") or Path(f"{raw}.zip").exists():
        kind, actual = BackupKind.ARCHIVE, Path(raw if raw.endswith(".zip") else f"{raw}.zip")
    elif raw.endswith(".db") or Path(f"{raw}.db").exists():
        kind, actual = BackupKind.DATABASE, Path(raw if raw.endswith(".db") else f"{raw}.db")
    else:
        legacy = Path(raw) if raw.endswith(".json") else Path(f"{raw}.json")
        if not legacy.exists():
            raise BackupNotFound(f"Backup file not found: {backup_path}")
        return BackupKind.LEGACY_JSON, legacy

    if not actual.exists():
        raise BackupNotFound(f"Backup file not found: {actual}")
    return kind, actual


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


class RestoreOrchestrator:
    """Drives one restore attempt through its states

    The live database and, for archive restores, the asset tree are copied to
    a timestamped anchor directory before anything is replaced. Any failure
    while replacing or reconciling copies the anchor back.
    """

    def __init__(
        self,
        db: PersistenceLayer,
        asset_root: str | Path,
        work_dir: str | Path,
        verifier: IntegrityVerifier | None = None,
        schema: AssetSchema | None = None,
    ):
        self.db = db
        self.asset_root = Path(asset_root)
        self.work_dir = Path(work_dir)
        self.verifier = verifier or IntegrityVerifier()
        self.schema = schema or AssetSchema()
        self.history: list[RestoreState] = [RestoreState.IDLE]

    @property
    def state(self) -> RestoreState:
        return self.history[-1]

    def _transition(self, state: RestoreState) -> None:
        logger.debug(f"Restore state: {self.state.value} -> {state.value}")
        self.history.append(state)

    def restore(self, backup_path: str | Path) -> RestoreOutcome:
        """Restore the live database (and assets, for archives) from a backup

        Raises:
            BackupNotFound: No artifact at the path
            MalformedArchive: Archive unreadable or missing its database
            IntegrityFailed: Candidate database failed verification
            RestoreFailed: Replacement failed and was rolled back
            RollbackFailed: Rollback failed too; the anchor is kept on disk
        """
        try:
            kind, actual = detect_backup(backup_path)
        except BackupNotFound:
            self._transition(RestoreState.FAILED)
            raise
        logger.info(f"Found {kind.value} backup: {actual}")

        if kind is BackupKind.LEGACY_JSON:
            return self._restore_legacy(actual)

        self.work_dir.mkdir(parents=True, exist_ok=True)
        temp_dir = self.work_dir / f"restore_temp_{_timestamp()}"
        anchor_dir: Path | None = None
        keep_anchor = False
        try:
            candidate, extracted_assets = self._preflight(kind, actual, temp_dir)

            self._transition(RestoreState.SNAPSHOTTING_CURRENT)
            anchor_dir = self._create_anchor(include_assets=kind is BackupKind.ARCHIVE)

            try:
                self._transition(RestoreState.REPLACING)
                self._replace_database(candidate)
                if kind is BackupKind.ARCHIVE:
                    self._replace_assets(extracted_assets)

                self._transition(RestoreState.RECONCILING)
                report = self._reconcile()
            except Exception as e:
                logger.error(f"Restore failed, rolling back: {e}", exc_info=True)
                keep_anchor = True
                self._rollback(anchor_dir, restore_assets=kind is BackupKind.ARCHIVE)
                keep_anchor = False
                self._transition(RestoreState.FAILED)
                raise RestoreFailed(f"Restore from {actual.name} failed and was rolled back: {e}") from e

            self._transition(RestoreState.DONE)
            logger.info(f"Backup restored successfully: {actual.name}")
            return RestoreOutcome(backup_path=actual, kind=kind, reconciliation=report)

        except RestoreFailed:
            raise
        except DentVaultError:
            self._transition(RestoreState.FAILED)
            raise
        except (OSError, sqlite3.Error) as e:
            # Raised before anything live was replaced
            self._transition(RestoreState.FAILED)
            logger.error(f"Restore from {actual.name} could not start: {e}", exc_info=True)
            raise RestoreFailed(f"Restore from {actual.name} could not start, live data unchanged: {e}") from e
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
            if anchor_dir is not None and not keep_anchor:
                shutil.rmtree(anchor_dir, ignore_errors=True)

    def _preflight(self, kind: BackupKind, actual: Path, temp_dir: Path) -> tuple[Path, Path | None]:
        """Validate the backup without touching live state

        Returns:
            Candidate database path and, for archives, the extracted asset dir
        """
        if kind is BackupKind.DATABASE:
            self.verifier.verify_database(actual)
            return actual, None

        contents = inspect_archive(actual)
        if not contents.has_database:
            raise MalformedArchive(f"Database file '{ARCHIVE_DB_NAME}' not found in archive {actual}")
        logger.info(f"Archive contains {len(contents.asset_files)} asset files")

        candidate = extract_archive(actual, temp_dir)
        self.verifier.verify_database(candidate)
        extracted_assets = temp_dir / ARCHIVE_ASSETS_DIR
        return candidate, extracted_assets if extracted_assets.is_dir() else None

    def _create_anchor(self, include_assets: bool) -> Path:
        anchor_dir = self.work_dir / f"restore_anchor_{_timestamp()}"
        anchor_dir.mkdir(parents=True)
        live = self.db.path()
        try:
            if live.exists() and live.stat().st_size > 0:
                force_durable(self.db)
                snapshot(live, anchor_dir / ARCHIVE_DB_NAME, source=self.db)
            else:
                logger.info(f"No current database at {live}, nothing to anchor")
            if include_assets and self.asset_root.exists():
                shutil.copytree(self.asset_root, anchor_dir / ARCHIVE_ASSETS_DIR)
        except BaseException:
            shutil.rmtree(anchor_dir, ignore_errors=True)
            raise
        logger.info(f"Current state saved to rollback anchor: {anchor_dir}")
        return anchor_dir

    def _install_database(self, source_file: Path) -> None:
        live = self.db.path()
        self.db.close()
        discard_sidecars(live)
        shutil.copy2(source_file, live)
        self.db.reinitialize()

    def _replace_database(self, candidate: Path) -> None:
        logger.info("Replacing database file with backup")
        self._install_database(candidate)
        table_count = self.db.query("SELECT COUNT(*) AS count FROM sqlite_master WHERE type='table'")[0]["count"]
        logger.info(f"Restored database contains {table_count} tables")

    def _replace_assets(self, extracted_assets: Path | None) -> None:
        if extracted_assets is None:
            logger.info("No assets found in backup, keeping current asset directory")
            return
        if self.asset_root.exists():
            shutil.rmtree(self.asset_root)
        shutil.copytree(extracted_assets, self.asset_root)
        restored = sum(1 for p in self.asset_root.rglob("*") if p.is_file())
        logger.info(f"Restored {restored} asset files to {self.asset_root}")

    def _reconcile(self) -> ReconciliationReport:
        return ReconciliationScanner(self.db, self.asset_root, self.schema).reconcile()

    def _rollback(self, anchor_dir: Path, restore_assets: bool) -> None:
        self._transition(RestoreState.ROLLING_BACK)
        try:
            anchored_db = anchor_dir / ARCHIVE_DB_NAME
            if anchored_db.exists():
                self._install_database(anchored_db)
            else:
                live = self.db.path()
                self.db.close()
                live.unlink(missing_ok=True)
                discard_sidecars(live)
                self.db.reinitialize()
            if restore_assets:
                if self.asset_root.exists():
                    shutil.rmtree(self.asset_root)
                anchored_assets = anchor_dir / ARCHIVE_ASSETS_DIR
                if anchored_assets.exists():
                    shutil.copytree(anchored_assets, self.asset_root)
        except Exception as e:
            self._transition(RestoreState.FAILED)
            logger.critical(f"Rollback failed, previous state kept at {anchor_dir}: {e}", exc_info=True)
            raise RollbackFailed(
                f"Rollback failed; manual intervention required. Previous state is kept at {anchor_dir}",
                anchor_dir=str(anchor_dir),
            ) from e
        logger.info("Original database restored")

    def _restore_legacy(self, json_path: Path) -> RestoreOutcome:
        """Replace clinical collections from a legacy JSON dump, in one transaction"""
        self._transition(RestoreState.REPLACING)
        try:
            with open(json_path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or any(data.get(key) is None for key in LEGACY_REQUIRED_KEYS):
                raise RestoreFailed("Legacy backup file is damaged or invalid: missing data")

            metadata = data["metadata"]
            logger.info(
                f"Restoring legacy backup created on {metadata.get('created_at')} "
                f"(version {metadata.get('version')}, platform {metadata.get('platform')})"
            )

            collections: dict[str, list[dict[str, Any]]] = {
                "patients": data["patients"],
                "appointments": data["appointments"],
            }
            for name in LEGACY_OPTIONAL_COLLECTIONS:
                if data.get(name) is not None:
                    collections[name] = data[name]
            settings = data.get("settings")
            if settings:
                collections["settings"] = settings if isinstance(settings, list) else [settings]

            for table in list(collections):
                if not self.db.table_exists(table):
                    if table in LEGACY_REQUIRED_KEYS:
                        raise RestoreFailed(f"Live database has no '{table}' table")
                    logger.warning(f"Skipping legacy collection '{table}': table not present")
                    del collections[table]

            counts = self.db.replace_collections(collections)
        except RestoreFailed:
            self._transition(RestoreState.FAILED)
            raise
        except (OSError, ValueError, TypeError, KeyError, AttributeError, sqlite3.Error) as e:
            self._transition(RestoreState.FAILED)
            logger.error(f"Legacy restore failed: {e}", exc_info=True)
            raise RestoreFailed(f"Legacy restore from {json_path.name} failed: {e}") from e

        self._transition(RestoreState.DONE)
        logger.info(f"Legacy backup restored successfully: {counts}")
        return RestoreOutcome(backup_path=json_path, kind=BackupKind.LEGACY_JSON, restored_rows=counts)
