"""
Operations log sink.

Append-only (timestamp, operation, status, details) records describing what
the engine did. Retention is the sink's concern; the engine only appends.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OperationEntry:
    """A single operations log record."""
    timestamp: datetime
    operation: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "operation": self.operation,
            "status": self.status,
            "details": self.details,
        }


class OperationLog(ABC):
    """Interface for operations log sinks."""

    def record(self, operation: str, status: str, **details: Any) -> OperationEntry:
        entry = OperationEntry(
            timestamp=datetime.now(timezone.utc),
            operation=operation,
            status=status,
            details=details,
        )
        self._append(entry)
        return entry

    @abstractmethod
    def _append(self, entry: OperationEntry) -> None:
        ...


class MemoryOperationLog(OperationLog):
    """Keeps entries in a list. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.entries: list[OperationEntry] = []
        self._lock = threading.Lock()

    def _append(self, entry: OperationEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    def statuses(self, operation: str | None = None) -> list[str]:
        """Statuses in order, optionally filtered by operation."""
        return [
            e.status for e in self.entries
            if operation is None or e.operation == operation
        ]


class JsonlOperationLog(OperationLog):
    """Appends one JSON object per line to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _append(self, entry: OperationEntry) -> None:
        line = json.dumps(entry.to_dict(), default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def tail(self, count: int = 20) -> list[dict[str, Any]]:
        """Return the last `count` entries (oldest first)."""
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            lines = f.readlines()[-count:]
        entries = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable operations log line", path=str(self.path))
        return entries
