"""
Exception hierarchy for the sync engine.

Anything deriving from FatalSyncError aborts the current session. Whatever
was persisted by earlier batches stays valid and the next invocation resumes
from it.
"""

from typing import Any


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class FatalSyncError(SyncError):
    """Aborts the current session; prior checkpoints are retained."""
    pass


class ConfigurationError(FatalSyncError):
    """Raised when settings are missing or malformed."""
    pass


class SchemaMismatchError(FatalSyncError):
    """Raised when a record table was created with a different column layout."""
    pass


class ConfigMismatchError(FatalSyncError):
    """
    Raised when the live configuration differs from the locked snapshot.

    A load that already has records under one page size cannot be resumed
    under another without desynchronizing the page cursor, so the session
    stops before any network call.
    """

    def __init__(self, mismatches: dict[str, tuple[Any, Any]]):
        self.mismatches = mismatches
        details = ", ".join(
            f"{key}: locked={locked!r} live={live!r}"
            for key, (locked, live) in sorted(mismatches.items())
        )
        super().__init__(
            f"Configuration changed since the load was locked ({details}). "
            "Restore the original values or run a full reset."
        )
