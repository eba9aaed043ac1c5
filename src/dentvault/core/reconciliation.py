"""Post-restore reconciliation of asset metadata rows with the files on disk"""

import logging
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .archiver import ARCHIVE_ASSETS_DIR
from .database import PersistenceLayer, quote_identifier
from .errors import ReconciliationWarning

logger = logging.getLogger("DentVault.Reconciliation")

DEFAULT_CATEGORY = "other"
VALID_CATEGORIES = ("before", "after", "xray", "clinical", "other")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp")
MIN_SUB_KEY = 1
MAX_SUB_KEY = 32

# Legacy folder names keep letters, digits, Arabic script and spaces
_LEGACY_NAME_STRIP = re.compile(r"[^a-zA-Z0-9\u0600-\u06FF\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class AssetSchema:
    """Table and column names describing asset rows, owners and parents"""

    asset_table: str = "dental_treatment_images"
    asset_id: str = "id"
    asset_path: str = "image_path"
    asset_category: str = "image_type"
    asset_parent: str = "dental_treatment_id"
    owner_table: str = "patients"
    owner_id: str = "id"
    owner_display_name: str = "full_name"
    parent_table: str = "dental_treatments"
    parent_id: str = "id"
    parent_created_at: str = "created_at"
    asset_taken_at: str = "taken_date"
    asset_created_at: str = "created_at"
    asset_updated_at: str = "updated_at"
    owner_key: str = "patient_id"
    sub_key: str = "tooth_number"


@dataclass
class ReconciliationReport:
    """Counts and details of one reconciliation pass"""

    rows_scanned: int = 0
    paths_updated: int = 0
    parents_relinked: int = 0
    missing: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    ambiguous: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncReport:
    """Result of a filesystem-to-metadata sync"""

    total_processed: int = 0
    total_added: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


def clean_owner_name(display_name: str | None, owner_id: Any) -> str:
    """Folder name used by the legacy ``{owner name}/{category}/`` layout"""
    name = display_name or f"Patient_{owner_id}"
    return _WHITESPACE.sub("_", _LEGACY_NAME_STRIP.sub("", name))


def canonical_relative_dir(owner_id: Any, sub_key: Any, category: str | None) -> str:
    return f"{owner_id}/{sub_key}/{category or DEFAULT_CATEGORY}"


def canonical_stored_path(owner_id: Any, sub_key: Any, category: str | None, filename: str) -> str:
    return f"{ARCHIVE_ASSETS_DIR}/{canonical_relative_dir(owner_id, sub_key, category)}/{filename}"


def resolve_stored_path(asset_root: Path, stored_path: str) -> Path:
    """Map a stored ``dental_images/...`` path onto the asset root"""
    relative = stored_path.replace("\\", "/").lstrip("/")
    prefix = f"{ARCHIVE_ASSETS_DIR}/"
    if relative.startswith(prefix):
        relative = relative[len(prefix) :]
    return asset_root / relative


class ReconciliationScanner:
    """Re-links asset rows to the directory layout present on disk"""

    def __init__(self, db: PersistenceLayer, asset_root: str | Path, schema: AssetSchema | None = None):
        self.db = db
        self.asset_root = Path(asset_root)
        self.schema = schema or AssetSchema()

    def _tables_present(self, *tables: str) -> bool:
        missing = [t for t in tables if not self.db.table_exists(t)]
        if missing:
            logger.info(f"Skipping reconciliation, tables not present: {', '.join(missing)}")
            return False
        return True

    def _warn(self, message: str) -> None:
        logger.warning(message, extra={"category": ReconciliationWarning.__name__})

    def reconcile(self) -> ReconciliationReport:
        """Repair asset paths and parent links for every asset row"""
        s = self.schema
        report = ReconciliationReport()
        if not self._tables_present(s.asset_table, s.owner_table, s.parent_table):
            return report

        rows = self.db.query(
            f"SELECT {quote_identifier(s.asset_id)} AS id, {quote_identifier(s.asset_parent)} AS parent_id, "
            f"{quote_identifier(s.asset_path)} AS path, {quote_identifier(s.owner_key)} AS owner_id, "
            f"{quote_identifier(s.sub_key)} AS sub_key, {quote_identifier(s.asset_category)} AS category "
            f"FROM {quote_identifier(s.asset_table)}"
        )
        logger.info(f"Found {len(rows)} asset records to verify")

        for row in rows:
            report.rows_scanned += 1
            try:
                new_path = self._repair_path(row, report)
                new_parent = self._relink_parent(row, report)
                if new_path != row["path"] or new_parent != row["parent_id"]:
                    self.db.execute(
                        f"UPDATE {quote_identifier(s.asset_table)} SET {quote_identifier(s.asset_path)} = ?, "
                        f"{quote_identifier(s.asset_parent)} = ? WHERE {quote_identifier(s.asset_id)} = ?",
                        (new_path, new_parent, row["id"]),
                    )
            except OSError as e:
                logger.error(f"Error processing asset record {row['id']}: {e}")
                report.errors.append(f"{row['id']}: {e}")

        logger.info(
            f"Updated {report.paths_updated} asset paths and relinked {report.parents_relinked} parents "
            f"({len(report.missing)} missing, {len(report.orphaned)} orphaned)"
        )
        return report

    def _repair_path(self, row: dict[str, Any], report: ReconciliationReport) -> str:
        current = row["path"] or ""
        filename = Path(current.replace("\\", "/")).name
        expected = canonical_stored_path(row["owner_id"], row["sub_key"], row["category"], filename)
        canonical_file = resolve_stored_path(self.asset_root, expected)

        if filename and canonical_file.is_file():
            if current != expected:
                report.paths_updated += 1
                logger.info(f"Normalized asset path: {row['id']} -> {expected}")
            return expected

        legacy_file = self._legacy_location(row, filename)
        if legacy_file is not None and legacy_file.is_file():
            self._adopt(legacy_file, canonical_file)
            report.paths_updated += 1
            logger.info(f"Migrated legacy asset path: {row['id']} -> {expected}")
            return expected

        candidates = self._search_by_filename(filename)
        if candidates:
            if len(candidates) > 1:
                report.ambiguous[row["id"]] = [str(c) for c in candidates]
                logger.warning(
                    f"{len(candidates)} files named '{filename}' found for asset {row['id']}, adopting {candidates[0]}"
                )
            self._adopt(candidates[0], canonical_file)
            report.paths_updated += 1
            logger.info(f"Found and migrated asset path: {row['id']} -> {expected}")
            return expected

        report.missing.append(row["id"])
        self._warn(f"Asset file not found for record {row['id']}: {filename or current!r} under {self.asset_root}")
        return current

    def _legacy_location(self, row: dict[str, Any], filename: str) -> Path | None:
        if not filename:
            return None
        s = self.schema
        owners = self.db.query(
            f"SELECT {quote_identifier(s.owner_display_name)} AS display_name FROM {quote_identifier(s.owner_table)} "
            f"WHERE {quote_identifier(s.owner_id)} = ?",
            (row["owner_id"],),
        )
        if not owners:
            return None
        folder = clean_owner_name(owners[0]["display_name"], row["owner_id"])
        return self.asset_root / folder / (row["category"] or DEFAULT_CATEGORY) / filename

    def _search_by_filename(self, filename: str) -> list[Path]:
        if not filename or not self.asset_root.exists():
            return []
        return sorted(p for p in self.asset_root.rglob(filename) if p.is_file())

    def _adopt(self, found: Path, canonical_file: Path) -> None:
        if found.resolve() == canonical_file.resolve():
            return
        canonical_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(found, canonical_file)
        logger.debug(f"Copied {found} to {canonical_file}")

    def _latest_parent(self, owner_id: Any, sub_key: Any) -> Any:
        s = self.schema
        rows = self.db.query(
            f"SELECT {quote_identifier(s.parent_id)} AS id FROM {quote_identifier(s.parent_table)} "
            f"WHERE {quote_identifier(s.owner_key)} = ? AND {quote_identifier(s.sub_key)} = ? "
            f"ORDER BY {quote_identifier(s.parent_created_at)} DESC LIMIT 1",
            (owner_id, sub_key),
        )
        return rows[0]["id"] if rows else None

    def _relink_parent(self, row: dict[str, Any], report: ReconciliationReport) -> Any:
        match = self._latest_parent(row["owner_id"], row["sub_key"])
        if match is None:
            report.orphaned.append(row["id"])
            self._warn(
                f"No matching parent found for asset {row['id']} (owner: {row['owner_id']}, sub key: {row['sub_key']})"
            )
            return row["parent_id"]
        if match != row["parent_id"]:
            report.parents_relinked += 1
            logger.info(f"Relinked asset {row['id']} to parent {match}")
        return match

    def sync_filesystem(self) -> SyncReport:
        """Create asset rows for well-placed files that have none (idempotent)"""
        s = self.schema
        stats = SyncReport()
        if not self.asset_root.exists():
            logger.info(f"No asset directory at {self.asset_root}, skipping synchronization")
            return stats
        if not self._tables_present(s.asset_table, s.owner_table, s.parent_table):
            return stats

        files = sorted(
            p for p in self.asset_root.rglob("*") if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
        )
        logger.info(f"Found {len(files)} image files to process")

        for file_path in files:
            stats.total_processed += 1
            relative = file_path.relative_to(self.asset_root)
            try:
                if self._sync_file(relative, stats):
                    stats.total_added += 1
            except Exception as e:
                logger.error(f"Error processing file {relative}: {e}")
                stats.total_errors += 1
                stats.errors.append({"file": relative.as_posix(), "error": str(e)})

        logger.info(
            f"Asset synchronization completed: processed={stats.total_processed} added={stats.total_added} "
            f"skipped={stats.total_skipped} errors={stats.total_errors}"
        )
        return stats

    def _sync_file(self, relative: Path, stats: SyncReport) -> bool:
        s = self.schema
        parts = relative.parts
        if len(parts) != 4:
            logger.debug(f"Invalid folder structure: {relative.as_posix()} (expected owner/sub_key/category/filename)")
            stats.total_skipped += 1
            return False

        owner_id, sub_key_str, category, filename = parts
        try:
            sub_key = int(sub_key_str)
        except ValueError:
            sub_key = None
        if sub_key is None or not MIN_SUB_KEY <= sub_key <= MAX_SUB_KEY:
            logger.warning(f"Invalid sub key {sub_key_str!r} for file {relative.as_posix()}")
            stats.total_skipped += 1
            return False
        if category not in VALID_CATEGORIES:
            logger.warning(f"Invalid category {category!r} for file {relative.as_posix()}")
            stats.total_skipped += 1
            return False

        owner = self.db.query(
            f"SELECT 1 FROM {quote_identifier(s.owner_table)} WHERE {quote_identifier(s.owner_id)} = ?", (owner_id,)
        )
        if not owner:
            logger.warning(f"Owner not found: {owner_id} for file {relative.as_posix()}")
            stats.total_skipped += 1
            return False

        stored_path = canonical_stored_path(owner_id, sub_key, category, filename)
        existing = self.db.query(
            f"SELECT 1 FROM {quote_identifier(s.asset_table)} WHERE {quote_identifier(s.asset_path)} = ?",
            (stored_path,),
        )
        if existing:
            stats.total_skipped += 1
            return False

        parent = self._latest_parent(owner_id, sub_key)
        if parent is None:
            message = f"No parent found for owner {owner_id}, sub key {sub_key}"
            logger.warning(message)
            stats.total_errors += 1
            stats.errors.append({"file": relative.as_posix(), "error": message})
            return False

        now = datetime.now(timezone.utc).isoformat()
        self.db.execute(
            f"INSERT INTO {quote_identifier(s.asset_table)} ("
            f"{quote_identifier(s.asset_id)}, {quote_identifier(s.asset_parent)}, {quote_identifier(s.owner_key)}, "
            f"{quote_identifier(s.sub_key)}, {quote_identifier(s.asset_path)}, {quote_identifier(s.asset_category)}, "
            f"{quote_identifier(s.asset_taken_at)}, {quote_identifier(s.asset_created_at)}, "
            f"{quote_identifier(s.asset_updated_at)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (str(uuid.uuid4()), parent, owner_id, sub_key, stored_path, category, now, now, now),
        )
        logger.info(f"Added asset record for {relative.as_posix()}")
        return True
