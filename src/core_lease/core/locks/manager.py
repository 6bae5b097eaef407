"""Lock manager orchestrating backend selection, waiting and lifecycle."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from core_lease.core.constants import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_STALE_THRESHOLD_SECONDS,
    ENV_LOCK_BACKEND,
)
from core_lease.core.exceptions import LockTimeout, StateIOError
from core_lease.core.locks.backends import (
    FcntlFileLockBackend,
    LeaseFileLockBackend,
    LockBackend,
    LockBackendUnavailableError,
    LockHandle,
    LockInfo,
)

T = TypeVar("T")


def create_lock_backend(
    backend_name: str | None = None,
    *,
    logger: logging.Logger | None = None,
) -> LockBackend:
    """Create lock backend from explicit value or environment override."""
    log = logger or logging.getLogger(__name__)
    requested = (backend_name or os.environ.get(ENV_LOCK_BACKEND, "auto")).strip().lower()

    if requested == "auto":
        if FcntlFileLockBackend.is_supported():
            return FcntlFileLockBackend()
        log.warning("fcntl locks unavailable; using lease lock backend")
        return LeaseFileLockBackend()

    if requested == "fcntl":
        if FcntlFileLockBackend.is_supported():
            return FcntlFileLockBackend()
        log.warning("Requested fcntl backend is unavailable; falling back to lease backend")
        return LeaseFileLockBackend()

    if requested == "lease":
        return LeaseFileLockBackend()

    log.warning("Unknown lock backend '%s'; falling back to auto selection", requested)
    return create_lock_backend("auto", logger=log)


class LockManager:
    """Host-wide exclusive lock guarding the shared lease state.

    Usage:
        manager = LockManager(lock_path=Path("/var/tmp/core_lease/allocation.lock"), owner="session-1")
        with manager.hold(timeout=5):
            ...  # read-modify-write lease state

    The lock is not reentrant: a second ``hold()`` while held raises
    ``RuntimeError``. Contenders poll every ``poll_interval`` seconds; no
    ordering between them is guaranteed.
    """

    def __init__(
        self,
        *,
        lock_path: Path,
        owner: str,
        stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS,
        backend_name: str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger: logging.Logger | None = None,
    ):
        self.lock_path = lock_path
        self.owner = owner
        self.stale_threshold_seconds = max(1, stale_threshold_seconds)
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.backend = create_lock_backend(backend_name, logger=self.logger)

        self._handle: LockHandle | None = None
        self._state_lock = threading.RLock()

    @property
    def acquired(self) -> bool:
        with self._state_lock:
            return self._handle is not None

    def try_acquire(self) -> bool:
        """Attempt lock acquisition without blocking."""
        with self._state_lock:
            if self._handle is not None:
                return True

        try:
            handle = self._backend_acquire()
        except OSError as e:
            raise StateIOError(
                "Cannot open lease lock",
                path=str(self.lock_path),
                details=str(e),
                original_error=e,
            ) from e

        if handle is None:
            return False

        lock_info = LockInfo.for_current_process(
            lock_id=handle.lock_id,
            owner=self.owner,
            backend=self.backend.name,
        )
        try:
            self.backend.write_info(handle, lock_info)
        except OSError as e:
            # Metadata is diagnostic only; the primitive lock is already held.
            self.logger.debug("Could not write lock metadata to %s: %s", self.lock_path, e)

        with self._state_lock:
            self._handle = handle
        return True

    def _backend_acquire(self) -> LockHandle | None:
        try:
            return self.backend.acquire(self.lock_path, self.stale_threshold_seconds)
        except LockBackendUnavailableError:
            if not isinstance(self.backend, FcntlFileLockBackend):
                raise
            self.logger.warning(
                "fcntl backend unavailable for '%s'; falling back to lease backend",
                self.lock_path,
            )
            self.backend = LeaseFileLockBackend()
            return self.backend.acquire(self.lock_path, self.stale_threshold_seconds)

    def acquire(self, timeout: float | None = None) -> None:
        """Block until the lock is held, or raise LockTimeout after ``timeout`` seconds."""
        deadline = None if timeout is None else time.monotonic() + timeout
        waited = False
        while not self.try_acquire():
            if not waited:
                self.logger.debug("Waiting for lease lock %s", self.lock_path)
                waited = True
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeout(str(self.lock_path), timeout)
                time.sleep(min(self.poll_interval, remaining))
            else:
                time.sleep(self.poll_interval)

    def release(self) -> None:
        """Release lock if held."""
        with self._state_lock:
            handle = self._handle
            self._handle = None
        if handle is None:
            return
        self.backend.release(handle)

    @contextmanager
    def hold(self, timeout: float | None = None) -> Iterator[LockManager]:
        """Hold the lock for the duration of the ``with`` block."""
        if self.acquired:
            raise RuntimeError(f"lease lock '{self.lock_path}' is not reentrant")
        self.acquire(timeout)
        try:
            yield self
        finally:
            self.release()

    def with_lock(self, fn: Callable[[], T], timeout: float | None = None) -> T:
        """Run ``fn`` inside the critical section and return its result."""
        with self.hold(timeout):
            return fn()

    def read_info(self) -> dict | None:
        """Read lock metadata for diagnostics."""
        lock_info = self.backend.read_info(self.lock_path)
        if lock_info is None:
            return None
        return lock_info.to_dict()
