"""
Sync Orchestrator

Time-boxed driver for the ticket load. A load walks the locked period page
by page (PAGINATING), then follows newly created tickets through a moving
watermark (INCREMENTAL) until nothing new is returned (UP_TO_DATE):

    NOT_STARTED -> PAGINATING -> PAGINATION_COMPLETE -> INCREMENTAL <-> UP_TO_DATE

PAGINATION_COMPLETE is terminal for a period that lies entirely in the
past. Every batch is enriched, written and checkpointed before the next
one is fetched, so an invocation killed at any point resumes cleanly.
"""

import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from helpdesk_sync.client import SORT_CREATED_ASC, HelpdeskClient, created_between
from helpdesk_sync.config import Period, SyncSettings
from helpdesk_sync.enrichment import EnrichmentFetcher
from helpdesk_sync.errors import ConfigMismatchError
from helpdesk_sync.models import HDTicket
from helpdesk_sync.quantum import Quantum
from helpdesk_sync.rate_limiter import IntervalThrottle
from helpdesk_sync.row_builder import TicketRowBuilder
from helpdesk_sync.state import ConfigSnapshot, StateManager, SyncCursor, SyncMode
from helpdesk_sync.writer import BatchWriter, WriteMode, WriteResult

logger = structlog.get_logger(__name__)

ACTIVE_MODES = (SyncMode.PAGINATING, SyncMode.INCREMENTAL)
TERMINAL_MODES = (SyncMode.PAGINATION_COMPLETE, SyncMode.UP_TO_DATE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncSummary:
    """What one invocation did. Returned by every engine entry point."""
    operation: str
    status: str = "ok"  # ok | skipped | busy | failed
    batches_processed: int = 0
    records_processed: int = 0
    complete: bool = False
    elapsed_ms: int = 0
    mode: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def describe(self) -> str:
        """One-line human readable summary."""
        progress = f"{self.batches_processed} batches, {self.records_processed} records"
        if self.status == "failed":
            return f"{self.operation} failed after {progress}: {self.message}"
        if self.status in ("busy", "skipped"):
            return f"{self.operation} {self.status}: {self.message}"
        state = "complete" if self.complete else "more work remains"
        text = f"{self.operation} ok ({progress}, {state}, {self.elapsed_ms} ms)"
        if self.message:
            text += f" - {self.message}"
        return text


def check_configuration(
    state: StateManager,
    settings: SyncSettings,
    lock_if_unset: bool,
    nothing_loaded: Callable[[], bool],
) -> ConfigSnapshot:
    """
    Compare live settings with the locked snapshot.

    With no snapshot stored, the live values are locked when
    `lock_if_unset` is set. A mismatch is tolerated only while nothing has
    been loaded, in which case the snapshot is replaced.

    Raises:
        ConfigMismatchError: settings differ from the locked snapshot
    """
    live = ConfigSnapshot.of(settings)
    locked = state.load_snapshot()

    if locked is None:
        if lock_if_unset:
            state.save_snapshot(live)
        return live

    mismatches = locked.diff(live)
    if not mismatches:
        return locked

    if nothing_loaded():
        logger.info("Re-locking configuration; nothing was loaded under the old values",
                    changed=sorted(mismatches))
        state.save_snapshot(live)
        return live

    raise ConfigMismatchError(mismatches)


class TicketBatchProcessor:
    """Shared fetch -> enrich -> write machinery for the orchestrators."""

    def __init__(
        self,
        client: HelpdeskClient,
        enricher: EnrichmentFetcher,
        writer: BatchWriter,
        state: StateManager,
        settings: SyncSettings,
        quantum: Quantum,
        row_builder: TicketRowBuilder | None = None,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.enricher = enricher
        self.writer = writer
        self.state = state
        self.settings = settings
        self.quantum = quantum
        self.row_builder = row_builder or TicketRowBuilder()
        self.now = now
        self.throttle = IntervalThrottle.from_millis(settings.throttle_ms, sleep=sleep)

    def build_rows(self, tickets: list[HDTicket]) -> dict[str, list[Any]]:
        """Enrich a batch with one SLA lookup and build rows keyed by ticket id."""
        metrics = self.enricher.fetch_for([t.ticket_id for t in tickets])
        return {
            t.ticket_id: self.row_builder.build_ticket_row(t, metrics.get(t.ticket_id))
            for t in tickets
        }

    def write_batch(
        self,
        tickets: list[HDTicket],
        mode: WriteMode,
        summary: SyncSummary,
    ) -> WriteResult:
        rows = self.build_rows(tickets)
        result = self.writer.append_or_upsert(list(rows.values()), mode)
        summary.batches_processed += 1
        summary.records_processed += len(tickets)
        return result


class SyncOrchestrator(TicketBatchProcessor):
    """
    Drives the historical load and incremental follow-up for one session.

    Example:
        orchestrator = SyncOrchestrator(client, enricher, writer, state, settings, quantum)
        summary = orchestrator.run(SyncSummary(operation="sync"))
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.period: Period = self.settings.period
        self._log = logger.bind(period_id=self.settings.period_id)

    def lock_configuration(self, cursor: SyncCursor) -> ConfigSnapshot:
        return check_configuration(
            self.state,
            self.settings,
            lock_if_unset=True,
            nothing_loaded=lambda: (
                cursor.mode == SyncMode.NOT_STARTED and self.writer.row_count() == 0
            ),
        )

    def run(self, summary: SyncSummary) -> SyncSummary:
        """Work until the load is terminal or the quantum runs out."""
        cursor = self.state.load_cursor()

        # Before any network call
        self.lock_configuration(cursor)
        self._enter(cursor)

        try:
            while cursor.mode in ACTIVE_MODES:
                if self.quantum.expired:
                    self._log.info("Quantum used up; stopping", elapsed_ms=self.quantum.elapsed_ms)
                    break

                if cursor.mode == SyncMode.PAGINATING:
                    self._paginate_once(cursor, summary)
                else:
                    self._fetch_window_once(cursor, summary)

                self.state.save_cursor(cursor)
                self.state.flush()

                if cursor.mode in ACTIVE_MODES and not self.quantum.expired:
                    self.throttle.pause()
        finally:
            self.state.flush()

        summary.mode = cursor.mode.value
        summary.complete = cursor.mode in TERMINAL_MODES
        self._log.info(
            "Sync session finished",
            mode=cursor.mode.value,
            batches=summary.batches_processed,
            records=summary.records_processed,
            last_page_index=cursor.last_page_index,
            watermark=cursor.watermark.isoformat() if cursor.watermark else None,
        )
        return summary

    def _enter(self, cursor: SyncCursor) -> None:
        """Pick the active mode for this session."""
        if cursor.mode == SyncMode.NOT_STARTED:
            cursor.mode = SyncMode.PAGINATING
            self._log.info("Starting historical load", period_start=self.period.start.isoformat())
        elif cursor.mode == SyncMode.UP_TO_DATE:
            cursor.mode = SyncMode.INCREMENTAL
        elif cursor.mode == SyncMode.PAGINATION_COMPLETE and not self.period.is_historical(self.now()):
            cursor.mode = SyncMode.INCREMENTAL
        self.state.save_cursor(cursor)

    def _finish_pagination(self, cursor: SyncCursor) -> None:
        cursor.complete = True
        if self.period.is_historical(self.now()):
            cursor.mode = SyncMode.PAGINATION_COMPLETE
        else:
            cursor.mode = SyncMode.INCREMENTAL
        self._log.info(
            "Pagination complete",
            last_page_index=cursor.last_page_index,
            next_mode=cursor.mode.value,
        )

    def _paginate_once(self, cursor: SyncCursor, summary: SyncSummary) -> None:
        page_index = cursor.last_page_index + 1
        page_size = self.settings.page_size
        log = self._log.bind(mode="paginating", page=page_index)

        response = self.client.search_tickets(
            page=page_index,
            page_size=page_size,
            filters=[created_between(self.period.start, self.period.end)],
            sort=SORT_CREATED_ASC,
        )

        total_rows = response.paging.row_count
        if cursor.last_page_index_known_total is None:
            if total_rows is None:
                log.warning("Response reports no row total; paging until a short page")
            else:
                # Computed once per load; later pages may report a different total
                cursor.last_page_index_known_total = math.ceil(total_rows / page_size) - 1
                self.state.save_cursor(cursor)
                log.info(
                    "Computed last page index",
                    total_rows=total_rows,
                    last_page_index_known_total=cursor.last_page_index_known_total,
                )

        if not response.items:
            # Trust an empty page over a stale total
            self._finish_pagination(cursor)
            return

        result = self.write_batch(response.items, WriteMode.APPEND_ONLY, summary)
        cursor.advance_page(page_index)
        cursor.advance_watermark(max(t.created_at for t in response.items))

        log.info(
            "Wrote page",
            records=len(response.items),
            appended=result.appended,
            of_last_page=cursor.last_page_index_known_total,
        )

        if cursor.pagination_done:
            self._finish_pagination(cursor)
        elif cursor.last_page_index_known_total is None and len(response.items) < page_size:
            self._finish_pagination(cursor)

    def _fetch_window_once(self, cursor: SyncCursor, summary: SyncSummary) -> None:
        batch_size = self.settings.batch_size
        start = cursor.watermark or self.period.start
        end = min(self.now(), self.period.end)
        log = self._log.bind(mode="incremental", window_start=start.isoformat())

        response = self.client.search_tickets(
            page=0,
            page_size=batch_size,
            filters=[created_between(start, end)],
            sort=SORT_CREATED_ASC,
        )
        raw = response.items

        if not raw:
            cursor.mode = SyncMode.UP_TO_DATE
            log.info("No new tickets; up to date")
            return

        fresh = [t for t in raw if cursor.watermark is None or t.created_at > cursor.watermark]

        if not fresh:
            # Only records sitting on the boundary came back
            previous = cursor.watermark
            cursor.advance_watermark(max(t.created_at for t in raw))
            if cursor.watermark == previous:
                cursor.mode = SyncMode.UP_TO_DATE
                log.info("Window holds only already-written boundary records; up to date",
                         duplicates=len(raw))
            return

        result = self.write_batch(fresh, WriteMode.APPEND_ONLY, summary)
        cursor.advance_watermark(max(t.created_at for t in fresh))

        log.info(
            "Wrote incremental window",
            records=len(fresh),
            appended=result.appended,
            boundary_duplicates=len(raw) - len(fresh),
            watermark=cursor.watermark.isoformat() if cursor.watermark else None,
        )

        if len(raw) < batch_size:
            cursor.mode = SyncMode.UP_TO_DATE
