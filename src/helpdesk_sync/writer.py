"""
Batch Writer

Appends or upserts rows into one record-store table. Upserts use an
id -> position index built from the table once per session and kept
current as rows are appended.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import structlog

from helpdesk_sync.record_store import RecordStore

logger = structlog.get_logger(__name__)


class WriteMode(str, Enum):
    APPEND_ONLY = "append-only"
    UPSERT = "upsert"
    UPSERT_EXISTING_ONLY = "upsert-existing-only"


@dataclass
class WriteResult:
    """Outcome of one batch write."""
    appended: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def written(self) -> int:
        return self.appended + self.updated


class BatchWriter:
    """
    Writes fixed-width rows to a table.

    Modes:
        append-only           new ids are appended; ids already stored are
                              skipped, so re-fetching a page after a crash
                              cannot duplicate records
        upsert                existing ids are updated in place, new ids appended
        upsert-existing-only  existing ids are updated, new ids dropped
    """

    def __init__(
        self,
        store: RecordStore,
        table: str,
        columns: Sequence[str],
        schema_version: int,
    ):
        self.store = store
        self.table = table
        self.columns = tuple(columns)
        self._index: dict[str, int] | None = None
        self._row_count = 0
        self._log = logger.bind(table=table)

        store.ensure_table(table, self.columns, schema_version)

    def _ensure_index(self) -> dict[str, int]:
        """Build the id index from the full table (once per writer)."""
        if self._index is None:
            ids = self.store.read_ids(self.table)
            self._index = {}
            for position, record_id in enumerate(ids):
                self._index.setdefault(record_id, position)
            self._row_count = len(ids)
            self._log.debug("Built record index", rows=self._row_count)
        return self._index

    def row_count(self) -> int:
        if self._index is not None:
            return self._row_count
        return self.store.row_count(self.table)

    def contains(self, record_id: Any) -> bool:
        return str(record_id) in self._ensure_index()

    def append_or_upsert(self, rows: Sequence[list[Any]], mode: WriteMode) -> WriteResult:
        """Write a batch. Every row must match the table width."""
        width = len(self.columns)
        for row in rows:
            if len(row) != width:
                raise ValueError(
                    f"Row for '{self.table}' has {len(row)} columns, expected {width}"
                )

        index = self._ensure_index()
        result = WriteResult()
        appends: list[list[Any]] = []
        updates: dict[int, list[Any]] = {}

        for row in rows:
            record_id = str(row[0])
            position = index.get(record_id)

            if position is not None:
                if mode == WriteMode.APPEND_ONLY:
                    result.skipped += 1
                    continue
                if position >= self._row_count:
                    # Repeated id within this batch; replace the pending append
                    appends[position - self._row_count] = row
                    continue
                if position in updates:
                    result.updated -= 1
                updates[position] = row
                result.updated += 1
                continue

            if mode == WriteMode.UPSERT_EXISTING_ONLY:
                result.skipped += 1
                continue

            index[record_id] = self._row_count + len(appends)
            appends.append(row)
            result.appended += 1

        if updates:
            self.store.update_rows(self.table, updates)
        if appends:
            self.store.append_rows(self.table, appends)
            self._row_count += len(appends)

        if result.skipped and mode == WriteMode.APPEND_ONLY:
            self._log.warning("Skipped rows already in store", skipped=result.skipped)

        self._log.debug(
            "Wrote batch",
            mode=mode.value,
            appended=result.appended,
            updated=result.updated,
            skipped=result.skipped,
        )
        return result
