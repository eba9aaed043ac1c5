"""Integrity verifier for produced backups"""

import logging
import shutil
import sqlite3
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .archiver import ARCHIVE_DB_NAME
from .database import quote_identifier
from .errors import IntegrityFailed, MalformedArchive

logger = logging.getLogger("DentVault.Verifier")

DEFAULT_EXPECTED_TABLES = (
    "patients",
    "appointments",
    "payments",
    "treatments",
    "dental_treatments",
    "dental_treatment_images",
)

# Number of foreign key violations detailed in the log
FK_VIOLATIONS_LOGGED = 3


@dataclass
class VerificationReport:
    """Outcome of a successful verification"""

    backup_path: Path
    table_count: int
    row_counts: dict[str, int] = field(default_factory=dict)
    missing_tables: list[str] = field(default_factory=list)
    integrity: str = "ok"
    foreign_key_violations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(self.row_counts.values())


class IntegrityVerifier:
    """Opens a backup read-only and checks structure, counts and references"""

    def __init__(self, expected_tables: tuple[str, ...] | list[str] = DEFAULT_EXPECTED_TABLES):
        self.expected_tables = tuple(expected_tables)

    def verify(self, backup_path: str | Path) -> VerificationReport:
        """Verify a database-only or archive backup

        Raises:
            IntegrityFailed: No tables, unreadable file or integrity_check not ok
            MalformedArchive: Archive lacks the inner database
        """
        backup_path = Path(backup_path)
        if not backup_path.exists():
            raise IntegrityFailed(f"Backup file not found: {backup_path}")

        if zipfile.is_zipfile(backup_path):
            return self._verify_archive(backup_path)
        return self.verify_database(backup_path)

    def _verify_archive(self, archive_path: Path) -> VerificationReport:
        temp_dir = Path(tempfile.mkdtemp(prefix="dentvault_verify_"))
        try:
            with zipfile.ZipFile(archive_path) as zf:
                if ARCHIVE_DB_NAME not in zf.namelist():
                    raise MalformedArchive(f"Database file '{ARCHIVE_DB_NAME}' not found in archive {archive_path}")
                extracted = Path(zf.extract(ARCHIVE_DB_NAME, temp_dir))
            report = self.verify_database(extracted)
            report.backup_path = archive_path
            return report
        except zipfile.BadZipFile as e:
            raise IntegrityFailed(f"Archive is corrupted: {e}") from e
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def verify_database(self, db_path: Path) -> VerificationReport:
        """Run the four checks against a plain database file"""
        conn = None
        try:
            conn = sqlite3.connect(f"{db_path.resolve().as_uri()}?mode=ro", uri=True)

            table_count = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'").fetchone()[0]
            logger.info(f"Backup contains {table_count} tables")
            if table_count == 0:
                raise IntegrityFailed("Backup database contains no tables")

            report = VerificationReport(backup_path=db_path, table_count=table_count)
            for table in self.expected_tables:
                try:
                    count = conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}").fetchone()[0]
                    report.row_counts[table] = count
                    logger.info(f"Backup table {table}: {count} records")
                except sqlite3.OperationalError:
                    report.missing_tables.append(table)
                    logger.info(f"Table {table} not found in backup (this may be normal)")
            logger.info(f"Total records verified in backup: {report.total_rows}")

            integrity_rows = conn.execute("PRAGMA integrity_check").fetchall()
            integrity = "; ".join(str(row[0]) for row in integrity_rows)
            report.integrity = integrity
            if integrity != "ok":
                raise IntegrityFailed(f"Database integrity check failed: {integrity}")

            violations = conn.execute("PRAGMA foreign_key_check").fetchall()
            report.foreign_key_violations = [
                {"table": row[0], "rowid": row[1], "parent": row[2], "fkid": row[3]} for row in violations
            ]
            if violations:
                logger.warning(f"Foreign key constraint violations found in backup: {len(violations)}")
                for violation in report.foreign_key_violations[:FK_VIOLATIONS_LOGGED]:
                    logger.warning(
                        f"   - Table: {violation['table']}, Row: {violation['rowid']}, Parent: {violation['parent']}"
                    )

            logger.info(f"Backup database integrity check passed: {db_path.name}")
            return report

        except sqlite3.DatabaseError as e:
            raise IntegrityFailed(f"Backup is not a readable database: {e}") from e

        finally:
            if conn is not None:
                conn.close()
