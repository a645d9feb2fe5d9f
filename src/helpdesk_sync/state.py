"""
Progress State for Checkpoint/Resume

The sync cursor, the refresh cursor and the locked configuration snapshot
are stored as plain keys in the settings store. Each invocation resumes
from whatever the previous one checkpointed.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

import structlog

from helpdesk_sync.config import (
    KEY_BATCH_SIZE,
    KEY_PAGE_SIZE,
    KEY_PERIOD_ID,
    SyncSettings,
)
from helpdesk_sync.settings_store import SettingsSession

logger = structlog.get_logger(__name__)

LOCKED_SUFFIX = "-Loaded"

# Sync cursor keys
KEY_SYNC_MODE = "syncMode"
KEY_SYNC_LAST_PAGE = "syncLastPageIndex"
KEY_SYNC_KNOWN_TOTAL = "syncLastPageIndexKnownTotal"
KEY_SYNC_WATERMARK = "syncWatermark"
KEY_SYNC_COMPLETE = "syncComplete"

# Refresh cursor keys
KEY_REFRESH_LAST_RUN = "refreshLastRunTimestamp"
KEY_REFRESH_PAGE = "refreshPage"
KEY_REFRESH_COMPLETE = "refreshComplete"
KEY_REFRESH_PASS_STARTED = "refreshPassStartedAt"

SYNC_CURSOR_KEYS = (
    KEY_SYNC_MODE,
    KEY_SYNC_LAST_PAGE,
    KEY_SYNC_KNOWN_TOTAL,
    KEY_SYNC_WATERMARK,
    KEY_SYNC_COMPLETE,
)
REFRESH_CURSOR_KEYS = (
    KEY_REFRESH_LAST_RUN,
    KEY_REFRESH_PAGE,
    KEY_REFRESH_COMPLETE,
    KEY_REFRESH_PASS_STARTED,
)
LOCKED_KEYS = tuple(
    f"{key}{LOCKED_SUFFIX}" for key in (KEY_PERIOD_ID, KEY_PAGE_SIZE, KEY_BATCH_SIZE)
)


def _parse_dt(value: str | None) -> datetime | None:
    if value:
        return datetime.fromisoformat(value)
    return None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_int(value: Any, default: int | None) -> int | None:
    if value is None or value == "":
        return default
    return int(value)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


class SyncMode(str, Enum):
    """States of the historical-then-incremental load."""
    NOT_STARTED = "NOT_STARTED"
    PAGINATING = "PAGINATING"
    PAGINATION_COMPLETE = "PAGINATION_COMPLETE"
    INCREMENTAL = "INCREMENTAL"
    UP_TO_DATE = "UP_TO_DATE"


@dataclass
class SyncCursor:
    """
    Progress of the ticket load for the locked period.

    last_page_index is -1 until a page has been written and never moves
    backwards during pagination. last_page_index_known_total is computed
    from the first page's row count and then left alone for the rest of
    the load; it stays None when the API reports no total. watermark is
    the creation time of the newest written record.
    """
    mode: SyncMode = SyncMode.NOT_STARTED
    last_page_index: int = -1
    last_page_index_known_total: int | None = None
    watermark: datetime | None = None
    complete: bool = False

    def to_settings(self) -> dict[str, Any]:
        return {
            KEY_SYNC_MODE: self.mode.value,
            KEY_SYNC_LAST_PAGE: self.last_page_index,
            KEY_SYNC_KNOWN_TOTAL: self.last_page_index_known_total,
            KEY_SYNC_WATERMARK: _format_dt(self.watermark),
            KEY_SYNC_COMPLETE: self.complete,
        }

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "SyncCursor":
        mode = values.get(KEY_SYNC_MODE) or SyncMode.NOT_STARTED.value
        return cls(
            mode=SyncMode(mode),
            last_page_index=_parse_int(values.get(KEY_SYNC_LAST_PAGE), -1),
            last_page_index_known_total=_parse_int(values.get(KEY_SYNC_KNOWN_TOTAL), None),
            watermark=_parse_dt(values.get(KEY_SYNC_WATERMARK)),
            complete=_parse_bool(values.get(KEY_SYNC_COMPLETE, False)),
        )

    def advance_page(self, page_index: int) -> None:
        """Record that `page_index` has been written."""
        if self.complete:
            raise ValueError("Pagination already complete; refusing to advance page cursor")
        if page_index < self.last_page_index:
            raise ValueError(
                f"Page cursor cannot move backwards ({self.last_page_index} -> {page_index})"
            )
        self.last_page_index = page_index

    def advance_watermark(self, moment: datetime | None) -> None:
        """Move the watermark forward; older timestamps are ignored."""
        if moment is None:
            return
        if self.watermark is None or moment > self.watermark:
            self.watermark = moment

    @property
    def pagination_done(self) -> bool:
        return (
            self.last_page_index_known_total is not None
            and self.last_page_index >= self.last_page_index_known_total
        )


@dataclass
class RefreshCursor:
    """
    Progress of the modified-since refresh.

    last_run_timestamp only moves when a pass completes, and then to the
    moment that pass started, so a modification landing mid-pass is
    picked up by the next one.
    """
    last_run_timestamp: datetime | None = None
    page: int = -1
    complete: bool = True
    pass_started_at: datetime | None = None

    def to_settings(self) -> dict[str, Any]:
        return {
            KEY_REFRESH_LAST_RUN: _format_dt(self.last_run_timestamp),
            KEY_REFRESH_PAGE: self.page,
            KEY_REFRESH_COMPLETE: self.complete,
            KEY_REFRESH_PASS_STARTED: _format_dt(self.pass_started_at),
        }

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "RefreshCursor":
        return cls(
            last_run_timestamp=_parse_dt(values.get(KEY_REFRESH_LAST_RUN)),
            page=_parse_int(values.get(KEY_REFRESH_PAGE), -1),
            complete=_parse_bool(values.get(KEY_REFRESH_COMPLETE, True)),
            pass_started_at=_parse_dt(values.get(KEY_REFRESH_PASS_STARTED)),
        )

    @property
    def in_progress(self) -> bool:
        return not self.complete and self.pass_started_at is not None

    def begin_pass(self, started_at: datetime) -> None:
        self.page = -1
        self.complete = False
        self.pass_started_at = started_at

    def finish_pass(self) -> None:
        self.complete = True
        self.last_run_timestamp = self.pass_started_at
        self.pass_started_at = None
        self.page = -1


@dataclass(frozen=True)
class ConfigSnapshot:
    """The settings a load was started with; frozen until a full reset."""
    period_id: str
    page_size: int
    batch_size: int

    @classmethod
    def of(cls, settings: SyncSettings) -> "ConfigSnapshot":
        return cls(
            period_id=settings.period_id,
            page_size=settings.page_size,
            batch_size=settings.batch_size,
        )

    def to_settings(self) -> dict[str, Any]:
        return {
            f"{KEY_PERIOD_ID}{LOCKED_SUFFIX}": self.period_id,
            f"{KEY_PAGE_SIZE}{LOCKED_SUFFIX}": self.page_size,
            f"{KEY_BATCH_SIZE}{LOCKED_SUFFIX}": self.batch_size,
        }

    @classmethod
    def from_settings(cls, values: Mapping[str, Any]) -> "ConfigSnapshot | None":
        period_id = values.get(f"{KEY_PERIOD_ID}{LOCKED_SUFFIX}")
        if not period_id:
            return None
        return cls(
            period_id=str(period_id),
            page_size=int(values[f"{KEY_PAGE_SIZE}{LOCKED_SUFFIX}"]),
            batch_size=int(values[f"{KEY_BATCH_SIZE}{LOCKED_SUFFIX}"]),
        )

    def diff(self, other: "ConfigSnapshot") -> dict[str, tuple[Any, Any]]:
        """Fields that differ, as {settings key: (self value, other value)}."""
        pairs = {
            KEY_PERIOD_ID: (self.period_id, other.period_id),
            KEY_PAGE_SIZE: (self.page_size, other.page_size),
            KEY_BATCH_SIZE: (self.batch_size, other.batch_size),
        }
        return {key: pair for key, pair in pairs.items() if pair[0] != pair[1]}


class StateManager:
    """
    Reads and stages progress state through a SettingsSession.

    Saves are staged; `flush()` commits them. Orchestrators flush once per
    batch, which is the checkpoint a later invocation resumes from.

    Usage:
        state = StateManager(SettingsSession(store))
        cursor = state.load_cursor()

        # Process a page...
        cursor.advance_page(page_index)
        state.save_cursor(cursor)
        state.flush()
    """

    def __init__(self, session: SettingsSession):
        self.session = session

    def load_cursor(self) -> SyncCursor:
        return SyncCursor.from_settings(self.session.snapshot())

    def save_cursor(self, cursor: SyncCursor) -> None:
        self.session.set_many(cursor.to_settings())

    def load_refresh(self) -> RefreshCursor:
        return RefreshCursor.from_settings(self.session.snapshot())

    def save_refresh(self, cursor: RefreshCursor) -> None:
        self.session.set_many(cursor.to_settings())

    def load_snapshot(self) -> ConfigSnapshot | None:
        return ConfigSnapshot.from_settings(self.session.snapshot())

    def save_snapshot(self, snapshot: ConfigSnapshot) -> None:
        self.session.set_many(snapshot.to_settings())
        logger.info(
            "Locked load configuration",
            period_id=snapshot.period_id,
            page_size=snapshot.page_size,
            batch_size=snapshot.batch_size,
        )

    def clear(self) -> None:
        """Drop every cursor and the locked snapshot."""
        self.session.delete_many(SYNC_CURSOR_KEYS + REFRESH_CURSOR_KEYS + LOCKED_KEYS)

    def flush(self) -> None:
        self.session.flush()
