"""
Session Lock

Cross-process mutual exclusion for every state-mutating operation (sync,
refresh, reset). The lock is a lease file created with O_EXCL; it records a
random token and an expiry so a lease left behind by a killed process is
broken once it runs out.
"""

import json
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog

logger = structlog.get_logger(__name__)

# Background invocations never wait; interactive ones wait briefly
BACKGROUND_TIMEOUT = 0.0
INTERACTIVE_TIMEOUT = 10.0

# Longer than the execution quantum plus one slow call
DEFAULT_LEASE_SECONDS = 600.0


@dataclass(frozen=True)
class LockHandle:
    """Proof of ownership returned by a successful acquire."""
    path: Path
    token: str
    acquired_at: float
    expires_at: float


class SessionLock:
    """
    Lease-file lock.

    Usage:
        lock = SessionLock("~/.helpdesk-sync/sync.lock")

        handle = lock.try_acquire(timeout=0)
        if handle is None:
            return  # someone else is working; skip
        try:
            do_work()
        finally:
            lock.release(handle)
    """

    def __init__(
        self,
        path: str | Path,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lease_seconds = lease_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._log = logger.bind(lock_file=str(self.path))

    def _read_holder(self) -> dict[str, Any] | None:
        return self._read_lease(self.path)

    @staticmethod
    def _read_lease(path: Path) -> dict[str, Any] | None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Holder may still be writing the file
            return {}

    def _break_if_stale(self) -> bool:
        """
        Remove an expired lease. Returns True if the path is now free.

        The lease is first renamed aside, so two contenders breaking the same
        stale lease cannot delete a fresh one taken in between. If the file
        moved aside is not the lease that was judged stale, it is put back.
        """
        holder = self._read_holder()
        if holder is None:
            return True

        expires_at = holder.get("expires_at")
        if expires_at is None:
            # Unreadable lease: judge by file age
            try:
                expires_at = os.path.getmtime(self.path) + self.lease_seconds
            except FileNotFoundError:
                return True

        if self._clock() < float(expires_at):
            return False

        tombstone = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, tombstone)
        except FileNotFoundError:
            return True

        moved = self._read_lease(tombstone) or {}
        if moved.get("token") != holder.get("token"):
            self._restore(tombstone)
            return False

        try:
            os.unlink(tombstone)
        except FileNotFoundError:
            pass
        self._log.warning("Broke expired session lock", holder_pid=holder.get("pid"))
        return True

    def _restore(self, tombstone: Path) -> None:
        """Put back a live lease that was moved aside by mistake."""
        try:
            os.link(tombstone, self.path)
        except FileExistsError:
            self._log.warning("Could not restore session lock; path was taken",
                              tombstone=str(tombstone))
            return
        os.unlink(tombstone)
        self._log.debug("Restored live session lock moved aside while breaking")

    def _try_once(self) -> LockHandle | None:
        token = uuid.uuid4().hex
        now = self._clock()
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return None

        handle = LockHandle(
            path=self.path,
            token=token,
            acquired_at=now,
            expires_at=now + self.lease_seconds,
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "token": token,
                    "pid": os.getpid(),
                    "acquired_at": handle.acquired_at,
                    "expires_at": handle.expires_at,
                },
                f,
            )
        return handle

    def try_acquire(self, timeout: float = BACKGROUND_TIMEOUT) -> LockHandle | None:
        """
        Acquire the lock, waiting up to `timeout` seconds.

        Returns:
            A LockHandle, or None if the lock stayed held
        """
        deadline = time.monotonic() + max(0.0, timeout)

        while True:
            handle = self._try_once()
            if handle is None and self._break_if_stale():
                handle = self._try_once()
            if handle is not None:
                self._log.debug("Acquired session lock")
                return handle

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._log.info("Session lock busy", timeout=timeout)
                return None
            self._sleep(min(self.poll_interval, remaining))

    def release(self, handle: LockHandle | None) -> None:
        """
        Release the lock. Safe to call twice, after expiry, or with None.

        The file is only removed while it still carries this handle's token.
        """
        if handle is None:
            return
        holder = self._read_holder()
        if not holder or holder.get("token") != handle.token:
            self._log.debug("Session lock already released or taken over")
            return
        try:
            os.unlink(self.path)
        except OSError as e:
            self._log.warning("Could not remove session lock", error=str(e))
            return
        self._log.debug("Released session lock")

    def is_locked(self) -> bool:
        holder = self._read_holder()
        if holder is None:
            return False
        expires_at = holder.get("expires_at")
        return expires_at is None or self._clock() < float(expires_at)

    @contextmanager
    def holding(self, timeout: float = BACKGROUND_TIMEOUT) -> Iterator[LockHandle | None]:
        """Context manager form; yields None when the lock is busy."""
        handle = self.try_acquire(timeout)
        try:
            yield handle
        finally:
            self.release(handle)
