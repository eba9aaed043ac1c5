"""Snapshot writer: consistent copy of the live database file"""

import logging
import shutil
import sqlite3
from enum import Enum
from pathlib import Path

from .database import PersistenceLayer
from .errors import SnapshotFailed, SourceUnavailable

logger = logging.getLogger("DentVault.Snapshot")

SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


class SnapshotMethod(Enum):
    """How a snapshot was produced"""

    NATIVE = "native"
    COPY = "copy"


def ensure_source_available(source_db_path: Path) -> int:
    """Raise SourceUnavailable unless the database file exists and is non-empty

    Returns:
        Size of the source file in bytes
    """
    if not source_db_path.exists():
        raise SourceUnavailable(f"Database file not found: {source_db_path}")
    size = source_db_path.stat().st_size
    if size == 0:
        raise SourceUnavailable(f"Database file is empty: {source_db_path}")
    return size


def discard_sidecars(db_path: Path) -> None:
    """Remove -wal/-shm/-journal files left next to a database file"""
    for suffix in SIDECAR_SUFFIXES:
        sidecar = db_path.with_name(db_path.name + suffix)
        if sidecar.exists():
            sidecar.unlink()
            logger.debug(f"Removed sidecar file {sidecar.name}")


def _set_rollback_journal(dest_path: Path) -> None:
    """Switch a copied database out of WAL mode so read-only opens stay sidecar-free"""
    conn = sqlite3.connect(str(dest_path))
    try:
        conn.execute("PRAGMA journal_mode = DELETE")
    finally:
        conn.close()


def _native_backup(source_db_path: Path, dest_path: Path, source: PersistenceLayer | None) -> None:
    dest_conn = sqlite3.connect(str(dest_path))
    try:
        if source is not None:
            source.backup(dest_conn)
        else:
            src_conn = sqlite3.connect(f"{source_db_path.resolve().as_uri()}?mode=ro", uri=True)
            try:
                src_conn.backup(dest_conn)
            finally:
                src_conn.close()
        dest_conn.execute("PRAGMA journal_mode = DELETE")
    finally:
        dest_conn.close()


def _remove_partial(dest_path: Path) -> None:
    if dest_path.exists():
        dest_path.unlink()
    discard_sidecars(dest_path)


def snapshot(source_db_path: str | Path, dest_path: str | Path, source: PersistenceLayer | None = None) -> SnapshotMethod:
    """Produce a consistent copy of the database at ``dest_path``

    Tries the page-by-page backup first. When that is unavailable or raises,
    the partial destination is removed and the file is copied byte-for-byte.
    Callers must still run the integrity verifier on the result.

    Args:
        source_db_path: Path to the live database file
        dest_path: Where the snapshot is written (overwritten if present)
        source: Open persistence layer for the live database; when given, the
            backup reads through its connection so uncheckpointed pages are seen

    Returns:
        The method that produced the snapshot

    Raises:
        SourceUnavailable: Source file missing or zero-length
        SnapshotFailed: Neither method produced a non-empty copy
    """
    source_db_path = Path(source_db_path)
    dest_path = Path(dest_path)
    source_size = ensure_source_available(source_db_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    _remove_partial(dest_path)

    method = SnapshotMethod.NATIVE
    try:
        _native_backup(source_db_path, dest_path, source)
        logger.info(f"Native backup completed: {dest_path.name}")
    except Exception as e:
        logger.warning(f"Native backup failed, falling back to file copy: {e}")
        _remove_partial(dest_path)
        method = SnapshotMethod.COPY
        try:
            shutil.copy2(source_db_path, dest_path)
        except OSError as copy_error:
            _remove_partial(dest_path)
            raise SnapshotFailed(f"Snapshot failed (native: {e}; copy: {copy_error})") from copy_error
        try:
            _set_rollback_journal(dest_path)
        except sqlite3.Error as journal_error:
            logger.debug(f"Could not switch copied snapshot to rollback journal: {journal_error}")
        logger.info(f"File copy completed: {dest_path.name} ({source_size} bytes source)")

    if not dest_path.exists() or dest_path.stat().st_size == 0:
        _remove_partial(dest_path)
        raise SnapshotFailed(f"Snapshot was not written: {dest_path}")

    return method
