"""SQLite persistence layer used by the backup engine.

The clinic application owns the live database. The backup engine only needs
the small surface described by ``PersistenceLayer``; ``SQLiteDatabase`` is the
concrete implementation over the standard ``sqlite3`` module.
"""

import logging
import re
import sqlite3
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol

CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")

# PRAGMA synchronous accepts these names or their integer values
SYNCHRONOUS_MODES = {"OFF": 0, "NORMAL": 1, "FULL": 2, "EXTRA": 3}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PersistenceLayer(Protocol):
    """Operations the backup engine borrows from the application's database"""

    def path(self) -> Path: ...

    def checkpoint(self, mode: str) -> tuple[int, int, int]: ...

    def get_synchronous(self) -> int: ...

    def set_synchronous(self, value: int | str) -> None: ...

    def backup(self, dest: sqlite3.Connection) -> None: ...

    def close(self) -> None: ...

    def reinitialize(self) -> None: ...

    def query(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]: ...

    def execute(self, sql: str, params: Iterable[Any] = ()) -> int: ...

    def table_exists(self, table: str) -> bool: ...

    def replace_collections(self, collections: Mapping[str, list[dict[str, Any]]]) -> dict[str, int]: ...


def quote_identifier(name: str) -> str:
    """Validate a table/column name and return it double-quoted"""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: '{name}'")
    return f'"{name}"'


class SQLiteDatabase:
    """Live clinic database handle (WAL mode, foreign keys enforced)"""

    def __init__(self, db_path: str | Path, journal_mode: str = "WAL"):
        self._path = Path(db_path)
        self.journal_mode = journal_mode
        self.logger = logging.getLogger("DentVault.Database")
        self._conn: sqlite3.Connection | None = None
        self.open()

    def open(self) -> None:
        """Open the connection and apply the connection pragmas"""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path))
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA journal_mode = {self.journal_mode}")
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn
        self.logger.debug(f"Opened database {self._path}")

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError(f"Database {self._path} is closed")
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def path(self) -> Path:
        return self._path

    def checkpoint(self, mode: str) -> tuple[int, int, int]:
        """Run ``PRAGMA wal_checkpoint(mode)``

        Returns:
            Tuple of (busy, log_frames, checkpointed_frames)
        """
        mode = mode.upper()
        if mode not in CHECKPOINT_MODES:
            raise ValueError(f"Invalid checkpoint mode: {mode}")
        row = self.connection.execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
        return (row[0], row[1], row[2])

    def get_synchronous(self) -> int:
        return int(self.connection.execute("PRAGMA synchronous").fetchone()[0])

    def set_synchronous(self, value: int | str) -> None:
        if isinstance(value, str):
            value = SYNCHRONOUS_MODES[value.upper()]
        if value not in SYNCHRONOUS_MODES.values():
            raise ValueError(f"Invalid synchronous value: {value}")
        self.connection.execute(f"PRAGMA synchronous = {int(value)}")

    def backup(self, dest: sqlite3.Connection) -> None:
        """Copy every page of the live database into ``dest``"""
        self.connection.backup(dest)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self.logger.debug(f"Closed database {self._path}")

    def reinitialize(self) -> None:
        """Close and reopen the handle, picking up a replaced database file"""
        self.close()
        self.open()

    def query(self, sql: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        return [dict(row) for row in self.connection.execute(sql, tuple(params)).fetchall()]

    def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self.connection:
            cursor = self.connection.execute(sql, tuple(params))
        return cursor.rowcount

    def table_exists(self, table: str) -> bool:
        row = self.connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    def replace_collections(self, collections: Mapping[str, list[dict[str, Any]]]) -> dict[str, int]:
        """Clear and re-insert whole tables in a single transaction

        Foreign key enforcement is suspended for the duration so collections
        can be replaced in any order.

        Args:
            collections: Mapping of table name to the rows it should contain

        Returns:
            Number of rows inserted per table
        """
        conn = self.connection
        inserted: dict[str, int] = {}
        conn.execute("PRAGMA foreign_keys = OFF")
        try:
            with conn:
                for table, rows in collections.items():
                    table_sql = quote_identifier(table)
                    conn.execute(f"DELETE FROM {table_sql}")
                    for row in rows:
                        columns = [quote_identifier(col) for col in row]
                        placeholders = ", ".join("?" for _ in columns)
                        conn.execute(
                            f"INSERT INTO {table_sql} ({', '.join(columns)}) VALUES ({placeholders})",
                            tuple(row.values()),
                        )
                    inserted[table] = len(rows)
        finally:
            conn.execute("PRAGMA foreign_keys = ON")
        return inserted
