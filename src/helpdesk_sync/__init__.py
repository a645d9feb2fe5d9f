"""
Helpdesk Sync

Resumable, quantum-bounded loader that copies helpdesk tickets, enriched
with SLA metrics, into a local record store.

Features:
- Historical pagination, then incremental follow-up by creation watermark
- Checkpoint after every batch; any invocation can be cut off and resumed
- Exclusive session lock (background runs skip, interactive runs wait)
- Modified-since refresh passes
- Retry with exponential backoff on 429/503 and network errors

Quick Start:
    pip install helpdesk-sync
    hdsync config set baseUrl https://helpdesk.example.org/api/v1
    hdsync config set authToken <token>
    hdsync config set periodId 2024-2025
    hdsync test      # Verify connection
    hdsync sync      # Load tickets
"""

from helpdesk_sync.engine import SyncEngine
from helpdesk_sync.client import (
    HelpdeskClient,
    HelpdeskAPIError,
    HelpdeskAuthError,
    HelpdeskNotFoundError,
    HelpdeskRateLimitError,
    HelpdeskUnavailableError,
    RetryExhaustedError,
)
from helpdesk_sync.config import Period, SyncSettings
from helpdesk_sync.errors import (
    ConfigMismatchError,
    ConfigurationError,
    FatalSyncError,
    SchemaMismatchError,
    SyncError,
)
from helpdesk_sync.models import HDTeam, HDTicket, HDTicketSla, TicketMetrics
from helpdesk_sync.record_store import MemoryRecordStore, RecordStore, SqliteRecordStore
from helpdesk_sync.settings_store import (
    JsonFileSettingsStore,
    MemorySettingsStore,
    SettingsSession,
    SettingsStore,
)
from helpdesk_sync.lock import SessionLock
from helpdesk_sync.state import StateManager, SyncCursor, SyncMode
from helpdesk_sync.sync import SyncSummary
from helpdesk_sync.writer import BatchWriter, WriteMode

__version__ = "1.0.0"
__all__ = [
    # Engine
    "SyncEngine",
    "SyncSummary",

    # API client
    "HelpdeskClient",
    "HelpdeskAPIError",
    "HelpdeskAuthError",
    "HelpdeskNotFoundError",
    "HelpdeskRateLimitError",
    "HelpdeskUnavailableError",
    "RetryExhaustedError",

    # Configuration
    "Period",
    "SyncSettings",

    # Errors
    "SyncError",
    "FatalSyncError",
    "ConfigurationError",
    "ConfigMismatchError",
    "SchemaMismatchError",

    # Models
    "HDTicket",
    "HDTeam",
    "HDTicketSla",
    "TicketMetrics",

    # Storage
    "RecordStore",
    "MemoryRecordStore",
    "SqliteRecordStore",
    "BatchWriter",
    "WriteMode",
    "SettingsStore",
    "MemorySettingsStore",
    "JsonFileSettingsStore",
    "SettingsSession",

    # State and locking
    "StateManager",
    "SyncCursor",
    "SyncMode",
    "SessionLock",
]
