"""Persisted catalog of known backups (JSON file, newest first)"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

DEFAULT_MAX_ENTRIES = 50

# backup_format values written by older releases
_LEGACY_FORMATS = {
    "sqlite_only": "db-only",
    "sqlite_with_images": "archive-with-assets",
}


class BackupFormat(Enum):
    """Artifact layout of a backup"""

    DB_ONLY = "db-only"
    ARCHIVE_WITH_ASSETS = "archive-with-assets"


@dataclass
class BackupRecord:
    """One registered backup artifact"""

    name: str
    path: str
    size: int
    created_at: str
    format: BackupFormat
    includes_assets: bool = False
    version: str | None = None
    platform: str | None = None

    @property
    def created(self) -> datetime:
        return parse_timestamp(self.created_at)

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)

    def exists(self) -> bool:
        return Path(self.path).exists()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "created_at": self.created_at,
            "format": self.format.value,
            "includes_assets": self.includes_assets,
        }
        if self.version is not None:
            data["version"] = self.version
        if self.platform is not None:
            data["platform"] = self.platform
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        """Build a record, migrating legacy field names"""
        raw_format = data.get("format") or _LEGACY_FORMATS.get(data.get("backup_format", ""))
        if raw_format is None:
            includes = data.get("includes_assets", data.get("includes_images", False))
            raw_format = BackupFormat.ARCHIVE_WITH_ASSETS.value if includes else BackupFormat.DB_ONLY.value
        backup_format = BackupFormat(raw_format)

        includes_assets = data.get("includes_assets", data.get("includes_images"))
        if includes_assets is None:
            includes_assets = backup_format is BackupFormat.ARCHIVE_WITH_ASSETS

        return cls(
            name=data["name"],
            path=data["path"],
            size=int(data.get("size", 0)),
            created_at=data.get("created_at", ""),
            format=backup_format,
            includes_assets=bool(includes_assets),
            version=data.get("version"),
            platform=data.get("platform"),
        )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BackupRegistry:
    """Serialized accessor for the backup registry file

    Every mutation reads the whole list, changes it in memory and rewrites the
    file atomically. A process-wide lock serializes callers.
    """

    def __init__(self, registry_path: str | Path, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.registry_path = Path(registry_path)
        self.max_entries = max_entries
        self.logger = logging.getLogger("DentVault.Registry")
        self._lock = threading.RLock()
        self._ensure_registry()

    def _ensure_registry(self) -> None:
        if not self.registry_path.exists():
            self.registry_path.parent.mkdir(parents=True, exist_ok=True)
            self._write([])

    def _read(self) -> list[BackupRecord]:
        try:
            with open(self.registry_path, encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except (json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Failed to read backup registry {self.registry_path}: {e}")
            return []

        if not isinstance(raw, list):
            self.logger.error(f"Backup registry {self.registry_path} is not a JSON array, ignoring contents")
            return []

        records = []
        for entry in raw:
            try:
                records.append(BackupRecord.from_dict(entry))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning(f"Skipping unreadable registry entry {entry!r}: {e}")
        return records

    def _write(self, records: list[BackupRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False)
        fd, temp_path = tempfile.mkstemp(prefix=".registry_", suffix=".json", dir=self.registry_path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(temp_path, self.registry_path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def add(self, record: BackupRecord) -> None:
        """Insert a record at the front, or overwrite the one with the same name"""
        with self._lock:
            records = self._read()
            for i, existing in enumerate(records):
                if existing.name == record.name:
                    records[i] = record
                    self.logger.info(f"Updated existing backup registry entry: {record.name}")
                    break
            else:
                records.insert(0, record)
                self.logger.info(f"Added new backup to registry: {record.name}")

            del records[self.max_entries :]
            self._write(records)

    def get(self, name: str) -> BackupRecord | None:
        with self._lock:
            for record in self._read():
                if record.name == name:
                    return record
        return None

    def list(self) -> list[BackupRecord]:
        """Records whose files still exist, de-duplicated, newest first

        Rewrites the registry when stale or duplicate entries were dropped.
        """
        with self._lock:
            records = self._read()
            seen: set[str] = set()
            valid: list[BackupRecord] = []
            for record in records:
                if not record.exists():
                    self.logger.info(f"Dropping registry entry with missing file: {record.name}")
                    continue
                if record.name in seen:
                    self.logger.info(f"Removed duplicate backup entry: {record.name}")
                    continue
                seen.add(record.name)
                valid.append(record)

            if len(valid) != len(records):
                self._write(valid)
                self.logger.info(f"Cleaned up backup registry: {len(records)} -> {len(valid)} entries")

        return sorted(valid, key=lambda r: r.created, reverse=True)

    def remove(self, name: str, delete_file: bool = False) -> BackupRecord | None:
        """Remove a record by name, optionally deleting its file

        Returns:
            The removed record, or None if no record had that name
        """
        with self._lock:
            records = self._read()
            removed = None
            kept = []
            for record in records:
                if record.name == name and removed is None:
                    removed = record
                    continue
                kept.append(record)
            if removed is None:
                return None

            if delete_file:
                backup_file = Path(removed.path)
                if backup_file.exists():
                    backup_file.unlink()
                    self.logger.info(f"Deleted backup file: {backup_file}")

            self._write(kept)
            return removed

    def prune(self, keep_count: int) -> list[BackupRecord]:
        """Delete file and record of every backup beyond the newest ``keep_count``

        Returns:
            Records that were removed
        """
        if keep_count < 0:
            raise ValueError(f"keep_count must be >= 0, got {keep_count}")

        with self._lock:
            backups = self.list()
            to_delete = backups[keep_count:]
            for record in to_delete:
                self.remove(record.name, delete_file=True)
                self.logger.info(f"Deleted old backup: {record.name}")

        if to_delete:
            self.logger.info(f"Cleaned up {len(to_delete)} old backups, keeping {keep_count} most recent")
        return to_delete
