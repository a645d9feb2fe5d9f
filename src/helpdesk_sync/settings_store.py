"""
Settings Store

Durable key -> value storage for configuration and progress cursors.
Last write wins; single-writer access is the caller's job (SessionLock).
"""

import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Mapping

import structlog

logger = structlog.get_logger(__name__)

_MISSING = object()


class SettingsStore(ABC):
    """Interface for key -> value settings storage."""

    @abstractmethod
    def get_all(self) -> dict[str, Any]:
        """Return a snapshot of every key."""
        ...

    @abstractmethod
    def set_many(self, values: Mapping[str, Any]) -> None:
        """Write several keys in one operation."""
        ...

    @abstractmethod
    def delete_many(self, keys: Iterable[str]) -> None:
        """Remove keys; absent keys are ignored."""
        ...

    def get(self, key: str, default: Any = None) -> Any:
        return self.get_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})


class MemorySettingsStore(SettingsStore):
    """In-process store. Counts reads and writes so tests can assert on them."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})
        self.read_count = 0
        self.write_count = 0

    def get_all(self) -> dict[str, Any]:
        self.read_count += 1
        return dict(self._values)

    def set_many(self, values: Mapping[str, Any]) -> None:
        self.write_count += 1
        self._values.update(values)

    def delete_many(self, keys: Iterable[str]) -> None:
        self.write_count += 1
        for key in keys:
            self._values.pop(key, None)


class JsonFileSettingsStore(SettingsStore):
    """
    Settings persisted as a single JSON object on disk.

    Writes go to a temp file that is renamed over the original so a crash
    never leaves a half-written file.

    Usage:
        store = JsonFileSettingsStore("~/.helpdesk-sync/settings.json")
        store.set("pageSize", 100)
        store.get_all()
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._log = logger.bind(settings_file=str(self.path))

    def get_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {self.path} does not contain a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        temp_file = self.path.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True, default=str)
        os.replace(temp_file, self.path)

    def set_many(self, values: Mapping[str, Any]) -> None:
        if not values:
            return
        data = self.get_all()
        data.update(values)
        self._write(data)
        self._log.debug("Saved settings", keys=sorted(values))

    def delete_many(self, keys: Iterable[str]) -> None:
        data = self.get_all()
        removed = [key for key in keys if data.pop(key, _MISSING) is not _MISSING]
        if removed:
            self._write(data)
            self._log.info("Deleted settings", keys=sorted(removed))


class SettingsSession:
    """
    Short-lived view over a SettingsStore for one locked session.

    Reads the store once up front and serves reads from that snapshot.
    Writes are staged and committed together by `flush()`, so a tight loop
    costs one store write per batch rather than one per field.

    Writing a key the snapshot did not contain invalidates the snapshot;
    the next read goes back to the store.

    Create one per session and discard it when the session ends.
    """

    def __init__(self, store: SettingsStore):
        self.store = store
        self._cache: dict[str, Any] | None = store.get_all()
        self._pending: dict[str, Any] = {}
        self._deleted: set[str] = set()
        self.flush_count = 0

    def _snapshot(self) -> dict[str, Any]:
        if self._cache is None:
            self._cache = self.store.get_all()
        return self._cache

    def snapshot(self) -> dict[str, Any]:
        """Current view: stored values overlaid with staged writes."""
        merged = {k: v for k, v in self._snapshot().items() if k not in self._deleted}
        merged.update(self._pending)
        return merged

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._pending:
            return self._pending[key]
        if key in self._deleted:
            return default
        return self._snapshot().get(key, default)

    def set(self, key: str, value: Any) -> None:
        if self._cache is not None and key not in self._cache:
            self._cache = None
        self._deleted.discard(key)
        self._pending[key] = value

    def set_many(self, values: Mapping[str, Any]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def delete_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._pending.pop(key, None)
            self._deleted.add(key)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending or self._deleted)

    def flush(self) -> None:
        """Commit staged writes and deletions to the store."""
        if not self.has_pending:
            return
        if self._deleted:
            self.store.delete_many(sorted(self._deleted))
        if self._pending:
            self.store.set_many(self._pending)
        if self._cache is not None:
            for key in self._deleted:
                self._cache.pop(key, None)
            self._cache.update(self._pending)
        self._pending = {}
        self._deleted = set()
        self.flush_count += 1
