"""
Refresh Orchestrator

Keeps already-loaded tickets current by paging through "modified since the
last completed pass" in modification order and upserting each page.

A pass records its start time before the first fetch. Only when the pass
drains does lastRunTimestamp move, and then to that start time, so changes
made while the pass was running fall inside the next pass's window.
"""

from datetime import datetime
from typing import Any

import structlog

from helpdesk_sync.client import SORT_MODIFIED_ASC, modified_since
from helpdesk_sync.config import Period
from helpdesk_sync.models import HDTicket
from helpdesk_sync.state import RefreshCursor
from helpdesk_sync.sync import SyncSummary, TicketBatchProcessor, check_configuration
from helpdesk_sync.writer import WriteMode

logger = structlog.get_logger(__name__)


class RefreshOrchestrator(TicketBatchProcessor):
    """Drives modified-since refresh passes."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        locked = check_configuration(
            self.state,
            self.settings,
            lock_if_unset=False,
            nothing_loaded=lambda: self.writer.row_count() == 0,
        )
        # Out-of-period tickets are judged against the period that was loaded
        self.period = Period.parse(locked.period_id)
        self._log = logger.bind(period_id=self.period.period_id)

    def start(self, summary: SyncSummary) -> SyncSummary:
        """Begin a new pass and work on it for the rest of the quantum."""
        cursor = self.state.load_refresh()
        if cursor.in_progress:
            self._log.warning("Restarting refresh pass that did not finish", page=cursor.page)
        cursor.begin_pass(self.now())
        self.state.save_refresh(cursor)
        self.state.flush()
        self._log.info(
            "Started refresh pass",
            since=(cursor.last_run_timestamp or self.period.start).isoformat(),
        )
        return self.run(summary)

    def run(self, summary: SyncSummary) -> SyncSummary:
        """Continue the pass in progress, if any."""
        cursor = self.state.load_refresh()
        if not cursor.in_progress:
            summary.complete = True
            summary.message = "No refresh pass in progress"
            return summary

        since = cursor.last_run_timestamp or self.period.start

        try:
            while not cursor.complete:
                if self.quantum.expired:
                    self._log.info("Quantum used up; stopping", elapsed_ms=self.quantum.elapsed_ms)
                    break
                self._refresh_page_once(cursor, since, summary)
                self.state.save_refresh(cursor)
                self.state.flush()
                if not cursor.complete and not self.quantum.expired:
                    self.throttle.pause()
        finally:
            self.state.flush()

        summary.complete = cursor.complete
        self._log.info(
            "Refresh session finished",
            complete=cursor.complete,
            page=cursor.page,
            batches=summary.batches_processed,
            records=summary.records_processed,
        )
        return summary

    def _refresh_page_once(
        self,
        cursor: RefreshCursor,
        since: datetime,
        summary: SyncSummary,
    ) -> None:
        page_index = cursor.page + 1
        response = self.client.search_tickets(
            page=page_index,
            page_size=self.settings.batch_size,
            filters=[modified_since(since)],
            sort=SORT_MODIFIED_ASC,
        )

        if not response.items:
            cursor.finish_pass()
            self._log.info(
                "Refresh pass complete",
                last_run_timestamp=cursor.last_run_timestamp.isoformat()
                if cursor.last_run_timestamp else None,
            )
            return

        self._upsert_page(response.items, summary)
        cursor.page = page_index

    def _upsert_page(self, tickets: list[HDTicket], summary: SyncSummary) -> None:
        """
        Upsert tickets created inside the loaded period; tickets created
        outside it only update rows that already exist.
        """
        rows = self.build_rows(tickets)
        inside = [rows[t.ticket_id] for t in tickets if self.period.contains(t.created_at)]
        outside = [rows[t.ticket_id] for t in tickets if not self.period.contains(t.created_at)]

        upserted = self.writer.append_or_upsert(inside, WriteMode.UPSERT)
        existing = self.writer.append_or_upsert(outside, WriteMode.UPSERT_EXISTING_ONLY)

        summary.batches_processed += 1
        summary.records_processed += len(tickets)
        self._log.info(
            "Refreshed page",
            appended=upserted.appended,
            updated=upserted.updated + existing.updated,
            dropped_out_of_period=existing.skipped,
        )
