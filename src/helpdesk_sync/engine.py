"""
Helpdesk Sync Engine

Entry points for the sync engine. Each one takes the session lock, reads
the settings store once, does its work inside the execution quantum and
returns a SyncSummary:

    continue_sync()    historical load, then incremental follow-up
    start_refresh()    begin a modified-since refresh pass
    continue_refresh() resume the refresh pass in progress
    full_reset()       purge the loaded records and every cursor

Background invocations skip when the lock is held; interactive ones wait a
few seconds and then report busy.
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

import structlog

from helpdesk_sync.client import HelpdeskAPIError, HelpdeskClient
from helpdesk_sync.config import SyncSettings
from helpdesk_sync.enrichment import EnrichmentFetcher
from helpdesk_sync.errors import FatalSyncError
from helpdesk_sync.lock import BACKGROUND_TIMEOUT, INTERACTIVE_TIMEOUT, SessionLock
from helpdesk_sync.oplog import JsonlOperationLog, OperationLog
from helpdesk_sync.quantum import Quantum
from helpdesk_sync.record_store import RecordStore, SqliteRecordStore
from helpdesk_sync.refresh import RefreshOrchestrator
from helpdesk_sync.row_builder import (
    SCHEMA_VERSION,
    TEAM_COLUMNS,
    TEAMS_TABLE,
    TICKET_ROW_COLUMNS,
    TICKETS_TABLE,
    TicketRowBuilder,
)
from helpdesk_sync.settings_store import JsonFileSettingsStore, SettingsSession, SettingsStore
from helpdesk_sync.state import ConfigSnapshot, RefreshCursor, StateManager, SyncCursor
from helpdesk_sync.sync import SyncOrchestrator, SyncSummary, utcnow
from helpdesk_sync.writer import BatchWriter, WriteMode

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[SyncSettings], HelpdeskClient]
Work = Callable[[StateManager, SyncSummary, float], None]


class SyncEngine:
    """
    Lock-guarded entry points over the stores.

    Example:
        engine = SyncEngine.from_home(Path("~/.helpdesk-sync"))
        summary = engine.continue_sync()
        print(summary.describe())
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        record_store: RecordStore,
        lock: SessionLock,
        oplog: OperationLog | None = None,
        client_factory: ClientFactory | None = None,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        interactive_timeout: float = INTERACTIVE_TIMEOUT,
        background_timeout: float = BACKGROUND_TIMEOUT,
    ):
        self.settings_store = settings_store
        self.record_store = record_store
        self.lock = lock
        self.oplog = oplog
        self.env = env
        self.interactive_timeout = interactive_timeout
        self.background_timeout = background_timeout

        self._client_factory = client_factory or self._default_client
        self._clock = clock
        self._now = now
        self._sleep = sleep

    @classmethod
    def from_home(cls, home: str | Path, **kwargs: Any) -> "SyncEngine":
        """Engine over the default file layout in `home`."""
        home = Path(home).expanduser()
        home.mkdir(parents=True, exist_ok=True)
        return cls(
            settings_store=JsonFileSettingsStore(home / "settings.json"),
            record_store=SqliteRecordStore(home / "records.db"),
            lock=SessionLock(home / "sync.lock"),
            oplog=JsonlOperationLog(home / "operations.jsonl"),
            **kwargs,
        )

    def _default_client(self, settings: SyncSettings) -> HelpdeskClient:
        return HelpdeskClient(
            base_url=settings.base_url,
            api_token=settings.api_token,
            site_id=settings.site_id,
            throttle_ms=settings.throttle_ms,
            oplog=self.oplog,
            sleep=self._sleep,
        )

    def _record(self, operation: str, status: str, **details: Any) -> None:
        if self.oplog is not None:
            self.oplog.record(operation, status, **details)

    # -------------------------------------------------------------------------
    # Session plumbing
    # -------------------------------------------------------------------------

    def _run_locked(self, operation: str, interactive: bool, work: Work) -> SyncSummary:
        started = self._clock()
        summary = SyncSummary(operation=operation)
        log = logger.bind(operation=operation, interactive=interactive)

        timeout = self.interactive_timeout if interactive else self.background_timeout
        handle = self.lock.try_acquire(timeout)
        if handle is None:
            summary.status = "busy" if interactive else "skipped"
            summary.message = "Another session holds the sync lock"
            summary.elapsed_ms = int((self._clock() - started) * 1000)
            log.info("Lock held by another session", outcome=summary.status)
            self._record(operation, "BUSY" if interactive else "SKIP")
            return summary

        self._record(operation, "START", interactive=interactive)
        error_details: dict[str, Any] = {}
        try:
            state = StateManager(SettingsSession(self.settings_store))
            work(state, summary, started)
        except FatalSyncError as e:
            summary.status = "failed"
            summary.message = str(e)
            error_details["error"] = str(e)
            if isinstance(e, HelpdeskAPIError):
                error_details.update(
                    endpoint=e.endpoint,
                    status_code=e.status_code,
                    body=e.response_body,
                )
            log.error(
                "Session aborted",
                error=str(e),
                batches=summary.batches_processed,
                records=summary.records_processed,
            )
        finally:
            self.lock.release(handle)
            summary.elapsed_ms = int((self._clock() - started) * 1000)

        self._record(
            operation,
            "FAILED" if summary.status == "failed" else "OK",
            batches=summary.batches_processed,
            records=summary.records_processed,
            complete=summary.complete,
            elapsed_ms=summary.elapsed_ms,
            **error_details,
        )
        return summary

    def _settings(self, state: StateManager) -> SyncSettings:
        return SyncSettings.from_settings(state.session.snapshot(), env=self.env)

    def _ticket_writer(self) -> BatchWriter:
        return BatchWriter(self.record_store, TICKETS_TABLE, TICKET_ROW_COLUMNS, SCHEMA_VERSION)

    def _orchestrator_kwargs(
        self,
        client: HelpdeskClient,
        state: StateManager,
        settings: SyncSettings,
        started: float,
    ) -> dict[str, Any]:
        return {
            "client": client,
            "enricher": EnrichmentFetcher(client, self.oplog),
            "writer": self._ticket_writer(),
            "state": state,
            "settings": settings,
            "quantum": Quantum(settings.quantum_seconds, clock=self._clock, started_at=started),
            "now": self._now,
            "sleep": self._sleep,
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def continue_sync(self, interactive: bool = False) -> SyncSummary:
        """Advance the ticket load as far as the quantum allows."""

        def work(state: StateManager, summary: SyncSummary, started: float) -> None:
            settings = self._settings(state)
            with self._client_factory(settings) as client:
                orchestrator = SyncOrchestrator(
                    **self._orchestrator_kwargs(client, state, settings, started)
                )
                orchestrator.run(summary)

        return self._run_locked("sync", interactive, work)

    def start_refresh(self, interactive: bool = False) -> SyncSummary:
        """Begin a modified-since refresh pass."""

        def work(state: StateManager, summary: SyncSummary, started: float) -> None:
            settings = self._settings(state)
            with self._client_factory(settings) as client:
                orchestrator = RefreshOrchestrator(
                    **self._orchestrator_kwargs(client, state, settings, started)
                )
                orchestrator.start(summary)

        return self._run_locked("refresh", interactive, work)

    def continue_refresh(self, interactive: bool = False) -> SyncSummary:
        """Resume the refresh pass in progress (no-op when none is)."""

        def work(state: StateManager, summary: SyncSummary, started: float) -> None:
            settings = self._settings(state)
            with self._client_factory(settings) as client:
                orchestrator = RefreshOrchestrator(
                    **self._orchestrator_kwargs(client, state, settings, started)
                )
                orchestrator.run(summary)

        return self._run_locked("refresh", interactive, work)

    def full_reset(self, confirm: bool = False, interactive: bool = True) -> SyncSummary:
        """
        Delete every loaded ticket and clear cursors and the locked snapshot.

        Destructive; does nothing unless `confirm` is set.
        """
        if not confirm:
            summary = SyncSummary(
                operation="reset",
                status="failed",
                message="Reset not confirmed; nothing was changed",
            )
            self._record("reset", "REFUSED")
            return summary

        def work(state: StateManager, summary: SyncSummary, started: float) -> None:
            removed = self.record_store.clear(TICKETS_TABLE)
            state.clear()
            state.flush()
            summary.records_processed = removed
            summary.complete = True
            summary.message = f"Removed {removed} records and cleared sync state"
            logger.warning("Full reset performed", removed=removed)

        return self._run_locked("reset", interactive, work)

    def refresh_teams(self, interactive: bool = True) -> SyncSummary:
        """Reload the teams reference table."""

        def work(state: StateManager, summary: SyncSummary, started: float) -> None:
            settings = self._settings(state)
            builder = TicketRowBuilder()
            writer = BatchWriter(self.record_store, TEAMS_TABLE, TEAM_COLUMNS, SCHEMA_VERSION)
            with self._client_factory(settings) as client:
                teams = client.get_all_teams()
            result = writer.append_or_upsert(
                [builder.build_team_row(team) for team in teams], WriteMode.UPSERT,
            )
            summary.batches_processed = 1
            summary.records_processed = len(teams)
            summary.complete = True
            summary.message = f"{result.appended} teams added, {result.updated} updated"

        return self._run_locked("teams", interactive, work)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Read-only view of progress. Takes no lock and makes no calls."""
        values = self.settings_store.get_all()
        cursor = SyncCursor.from_settings(values)
        refresh = RefreshCursor.from_settings(values)
        snapshot = ConfigSnapshot.from_settings(values)
        return {
            "sync": cursor.to_settings(),
            "refresh": refresh.to_settings(),
            "locked_configuration": snapshot.to_settings() if snapshot else None,
            "records": self.record_store.row_count(TICKETS_TABLE),
            "lock_held": self.lock.is_locked(),
        }
