"""
Record Store

An ordered table of fixed-width rows per table name. Rows are addressed by
their zero-based position; column 0 holds the record id.

Usage:
    store = SqliteRecordStore("~/.helpdesk-sync/records.db")
    store.ensure_table("tickets", TICKET_ROW_COLUMNS, SCHEMA_VERSION)
    store.append_rows("tickets", rows)
    store.update_rows("tickets", {3: new_row})
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping, Sequence

import structlog

from helpdesk_sync.errors import SchemaMismatchError

logger = structlog.get_logger(__name__)

Row = list[Any]


class RecordStore(ABC):
    """Interface for ordered row storage."""

    @abstractmethod
    def ensure_table(self, table: str, columns: Sequence[str], schema_version: int) -> None:
        """
        Create the table layout, or verify an existing one.

        Raises:
            SchemaMismatchError: if the table exists with another layout
        """
        ...

    @abstractmethod
    def row_count(self, table: str) -> int:
        ...

    @abstractmethod
    def read_rows(self, table: str) -> list[Row]:
        """All rows in position order."""
        ...

    def read_ids(self, table: str) -> list[str]:
        """Record ids (column 0) in position order."""
        return [str(row[0]) for row in self.read_rows(table)]

    @abstractmethod
    def append_rows(self, table: str, rows: Sequence[Row]) -> None:
        ...

    @abstractmethod
    def update_rows(self, table: str, updates: Mapping[int, Row]) -> None:
        """Replace rows in place, keyed by position."""
        ...

    @abstractmethod
    def clear(self, table: str) -> int:
        """Delete every row of the table. Returns the number removed."""
        ...

    def close(self) -> None:
        pass


def _check_layout(
    table: str,
    existing: tuple[tuple[str, ...], int] | None,
    columns: Sequence[str],
    schema_version: int,
) -> None:
    if existing is None:
        return
    existing_columns, existing_version = existing
    if tuple(existing_columns) != tuple(columns) or existing_version != schema_version:
        raise SchemaMismatchError(
            f"Table '{table}' has layout v{existing_version} with {len(existing_columns)} columns; "
            f"expected v{schema_version} with {len(columns)} columns"
        )


class MemoryRecordStore(RecordStore):
    """Rows kept in lists. Used by tests."""

    def __init__(self) -> None:
        self.tables: dict[str, list[Row]] = {}
        self.layouts: dict[str, tuple[tuple[str, ...], int]] = {}
        self.write_count = 0

    def ensure_table(self, table: str, columns: Sequence[str], schema_version: int) -> None:
        _check_layout(table, self.layouts.get(table), columns, schema_version)
        self.layouts[table] = (tuple(columns), schema_version)
        self.tables.setdefault(table, [])

    def row_count(self, table: str) -> int:
        return len(self.tables.get(table, []))

    def read_rows(self, table: str) -> list[Row]:
        return [list(row) for row in self.tables.get(table, [])]

    def append_rows(self, table: str, rows: Sequence[Row]) -> None:
        self.write_count += 1
        self.tables.setdefault(table, []).extend(list(row) for row in rows)

    def update_rows(self, table: str, updates: Mapping[int, Row]) -> None:
        self.write_count += 1
        target = self.tables[table]
        for position, row in updates.items():
            target[position] = list(row)

    def clear(self, table: str) -> int:
        removed = len(self.tables.get(table, []))
        self.tables[table] = []
        return removed


class SqliteRecordStore(RecordStore):
    """Record store in a SQLite database (rows stored as JSON arrays)."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self._create_tables()
        logger.info("SQLite record store initialized", path=str(self.db_path))

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS record_tables (
                table_name     TEXT    PRIMARY KEY,
                columns_json   TEXT    NOT NULL,
                schema_version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                table_name TEXT    NOT NULL,
                position   INTEGER NOT NULL,
                record_id  TEXT    NOT NULL,
                row_json   TEXT    NOT NULL,
                PRIMARY KEY (table_name, position)
            );

            CREATE INDEX IF NOT EXISTS idx_records_id
                ON records(table_name, record_id);
        """)
        self._conn.commit()

    def ensure_table(self, table: str, columns: Sequence[str], schema_version: int) -> None:
        with self._lock:
            found = self._conn.execute(
                "SELECT columns_json, schema_version FROM record_tables WHERE table_name = ?",
                (table,),
            ).fetchone()
            existing = (tuple(json.loads(found[0])), found[1]) if found else None
            _check_layout(table, existing, columns, schema_version)
            if existing is None:
                self._conn.execute(
                    "INSERT INTO record_tables (table_name, columns_json, schema_version) "
                    "VALUES (?, ?, ?)",
                    (table, json.dumps(list(columns)), schema_version),
                )
                self._conn.commit()

    def row_count(self, table: str) -> int:
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM records WHERE table_name = ?", (table,)
            ).fetchone()
        return count

    def read_rows(self, table: str) -> list[Row]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT row_json FROM records WHERE table_name = ? ORDER BY position",
                (table,),
            )
            return [json.loads(row_json) for (row_json,) in cursor]

    def read_ids(self, table: str) -> list[str]:
        with self._lock:
            cursor = self._conn.execute(
                "SELECT record_id FROM records WHERE table_name = ? ORDER BY position",
                (table,),
            )
            return [record_id for (record_id,) in cursor]

    def append_rows(self, table: str, rows: Sequence[Row]) -> None:
        if not rows:
            return
        with self._lock:
            (start,) = self._conn.execute(
                "SELECT COALESCE(MAX(position) + 1, 0) FROM records WHERE table_name = ?",
                (table,),
            ).fetchone()
            self._conn.executemany(
                "INSERT INTO records (table_name, position, record_id, row_json) VALUES (?, ?, ?, ?)",
                [
                    (table, start + offset, str(row[0]), json.dumps(list(row), default=str))
                    for offset, row in enumerate(rows)
                ],
            )
            self._conn.commit()

    def update_rows(self, table: str, updates: Mapping[int, Row]) -> None:
        if not updates:
            return
        with self._lock:
            self._conn.executemany(
                "UPDATE records SET record_id = ?, row_json = ? WHERE table_name = ? AND position = ?",
                [
                    (str(row[0]), json.dumps(list(row), default=str), table, position)
                    for position, row in updates.items()
                ],
            )
            self._conn.commit()

    def clear(self, table: str) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM records WHERE table_name = ?", (table,))
            self._conn.commit()
        removed = cursor.rowcount
        logger.info("Cleared record table", table=table, removed=removed)
        return removed

    def close(self) -> None:
        with self._lock:
            self._conn.close()
