"""Lock backend implementations.

Design principles:
- Ownership is defined by backend lock state (OS lock or lease marker).
- Metadata is informational and must not be treated as lock truth, except
  that a live lease marker also blocks the fcntl backend so that hosts with
  mixed backends still exclude each other.
- Backends never block; waiting and timeouts live in the manager.
"""

from __future__ import annotations

import contextlib
import errno
import json
import os
import socket
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from core_lease.core.constants import STATE_FILE_MODE

try:
    import fcntl
except ImportError:  # pragma: no cover - exercised on non-POSIX only
    fcntl = None

_FLOCK_UNSUPPORTED_ERRNOS = {
    err_no
    for err_no in (
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
        getattr(errno, "ENOSYS", None),
    )
    if err_no is not None
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _write_all(fd: int, payload: bytes) -> None:
    """Write complete payload to fd, handling short writes."""
    total_written = 0
    while total_written < len(payload):
        written = os.write(fd, payload[total_written:])
        if written <= 0:
            raise OSError("short write while persisting lock metadata")
        total_written += written


def _write_info_fd(fd: int, info: LockInfo) -> None:
    payload = (json.dumps(info.to_dict(), sort_keys=True) + "\n").encode("utf-8")
    os.lseek(fd, 0, os.SEEK_SET)
    os.ftruncate(fd, 0)
    _write_all(fd, payload)
    os.fsync(fd)


def _share_with_host(fd: int) -> None:
    # umask would otherwise keep other users' sessions out of the shared lock
    with contextlib.suppress(OSError):
        os.fchmod(fd, STATE_FILE_MODE)


def _read_info_file(lock_path: Path) -> LockInfo | None:
    if not lock_path.exists():
        return None
    try:
        with open(lock_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return None

    if not isinstance(data, dict):
        return None
    return LockInfo.from_dict(data)


def is_process_running(pid: int) -> bool:
    """Best-effort local liveness check used for lease-marker staleness."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as e:
        return e.errno == errno.EPERM


class LockBackendUnavailableError(OSError):
    """Raised when a backend exists but is unusable for the target lock path."""


@dataclass
class LockInfo:
    """Serializable lock metadata for diagnostics."""

    lock_id: str
    pid: int
    host: str
    owner: str
    started_at: str
    updated_at: str
    backend: str
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo | None:
        try:
            return cls(
                lock_id=str(data["lock_id"]),
                pid=int(data["pid"]),
                host=str(data["host"]),
                owner=str(data.get("owner", "")),
                started_at=str(data["started_at"]),
                updated_at=str(data.get("updated_at", data["started_at"])),
                backend=str(data.get("backend", "")),
                version=int(data.get("version", 1)),
            )
        except (KeyError, TypeError, ValueError):
            return None

    @classmethod
    def for_current_process(cls, lock_id: str, owner: str, backend: str) -> LockInfo:
        now = _utcnow_iso()
        return cls(
            lock_id=lock_id,
            pid=os.getpid(),
            host=socket.gethostname(),
            owner=owner,
            started_at=now,
            updated_at=now,
            backend=backend,
            version=1,
        )


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def lease_marker_is_stale(info: LockInfo, stale_threshold_seconds: int) -> bool:
    """Return True if a lease marker may be reclaimed.

    A marker is stale when its local owner process is gone, or when it is
    older than the threshold. A live local owner is never expired.
    """
    if info.host == socket.gethostname():
        return not is_process_running(info.pid)

    reference = _parse_iso(info.updated_at) or _parse_iso(info.started_at)
    if reference is None:
        return True
    return (datetime.now(UTC) - reference).total_seconds() > max(1, stale_threshold_seconds)


class LockHandle(Protocol):
    """Opaque backend-specific lock handle."""

    lock_path: Path
    lock_id: str


class LockBackend(Protocol):
    """Backend abstraction for lock acquisition and metadata operations."""

    name: str

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> LockHandle | None:
        """Try acquiring lock non-blocking. Returns handle if acquired."""

    def release(self, handle: LockHandle) -> None:
        """Release lock held by handle."""

    def write_info(self, handle: LockHandle, info: LockInfo) -> None:
        """Persist metadata for the currently held lock."""

    def read_info(self, lock_path: Path) -> LockInfo | None:
        """Read metadata for diagnostics, if available."""


@dataclass
class _FcntlLockHandle:
    lock_path: Path
    fd: int
    lock_id: str
    closed: bool = False


class FcntlFileLockBackend:
    """POSIX advisory locking backend backed by `fcntl.flock`.

    The kernel drops the lock when the holding process exits for any reason,
    including SIGKILL, so a crashed session never wedges the lock token.
    """

    name = "fcntl"

    @staticmethod
    def is_supported() -> bool:
        return fcntl is not None

    @staticmethod
    def _open_lock_file(lock_path: Path) -> tuple[int, bool]:
        try:
            return os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, STATE_FILE_MODE), True
        except FileExistsError:
            return os.open(str(lock_path), os.O_RDWR), False

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> _FcntlLockHandle | None:
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            fd, created = self._open_lock_file(lock_path)
        except FileNotFoundError:
            # Lease holder unlinked the marker between our two open attempts.
            return None
        if created:
            _share_with_host(fd)

        try:
            assert fcntl is not None  # For type checkers.
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                return None
            if e.errno in _FLOCK_UNSUPPORTED_ERRNOS:
                raise LockBackendUnavailableError(
                    f"flock is unsupported for lock path '{lock_path}'"
                ) from e
            raise

        handle = _FcntlLockHandle(lock_path=lock_path, fd=fd, lock_id=str(uuid.uuid4()))
        if not created:
            info = self.read_info(lock_path)
            if info is not None and info.backend == LeaseFileLockBackend.name:
                if not lease_marker_is_stale(info, stale_threshold_seconds):
                    self.release(handle)
                    return None
        return handle

    def release(self, handle: _FcntlLockHandle) -> None:
        if handle.closed:
            return
        try:
            assert fcntl is not None  # For type checkers.
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
        except OSError:
            pass
        finally:
            with contextlib.suppress(OSError):
                os.close(handle.fd)
            handle.closed = True

    def write_info(self, handle: _FcntlLockHandle, info: LockInfo) -> None:
        _write_info_fd(handle.fd, info)

    def read_info(self, lock_path: Path) -> LockInfo | None:
        return _read_info_file(lock_path)


@dataclass
class _LeaseLockHandle:
    lock_path: Path
    fd: int
    lock_id: str
    closed: bool = False


class LeaseFileLockBackend:
    """File-lease fallback backend for environments without usable `flock`.

    The lock file itself acts as lease marker. Stale/corrupt lease files
    are reclaimed during acquisition attempts.
    """

    name = "lease"
    acquire_attempts = 3
    unreadable_retry_attempts = 10
    unreadable_retry_sleep_seconds = 0.05

    def acquire(self, lock_path: Path, stale_threshold_seconds: int) -> _LeaseLockHandle | None:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_id = str(uuid.uuid4())

        for _ in range(self.acquire_attempts):
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_RDWR, STATE_FILE_MODE)
                try:
                    _share_with_host(fd)
                    _write_info_fd(fd, LockInfo.for_current_process(lock_id, owner="", backend=self.name))
                except OSError:
                    with contextlib.suppress(OSError):
                        os.close(fd)
                    self._safe_unlink(lock_path)
                    raise
                return _LeaseLockHandle(lock_path=lock_path, fd=fd, lock_id=lock_id)
            except FileExistsError:
                lock_info = self._read_info_with_retries(lock_path)
                if lock_info is None:
                    # Corrupt/unreadable lease metadata: reclaim after bounded retries.
                    if not self._safe_unlink(lock_path):
                        return None
                    continue

                if self._is_reclaimable(lock_path, lock_info, stale_threshold_seconds):
                    if not self._safe_unlink(lock_path):
                        return None
                    continue

                return None

        return None

    def _read_info_with_retries(self, lock_path: Path) -> LockInfo | None:
        for attempt in range(self.unreadable_retry_attempts + 1):
            info = self.read_info(lock_path)
            if info is not None:
                return info
            if not lock_path.exists():
                return None
            if attempt < self.unreadable_retry_attempts:
                time.sleep(self.unreadable_retry_sleep_seconds)
        return None

    @staticmethod
    def _is_reclaimable(lock_path: Path, info: LockInfo, stale_threshold_seconds: int) -> bool:
        if info.backend == FcntlFileLockBackend.name:
            # Left behind by an fcntl holder; free unless someone holds the flock now.
            return _flock_is_free(lock_path)
        return lease_marker_is_stale(info, stale_threshold_seconds)

    def release(self, handle: _LeaseLockHandle) -> None:
        if handle.closed:
            return
        try:
            lock_info = self.read_info(handle.lock_path)
            if lock_info is None:
                return
            if lock_info.lock_id != handle.lock_id:
                return
            self._safe_unlink(handle.lock_path)
        finally:
            with contextlib.suppress(OSError):
                os.close(handle.fd)
            handle.closed = True

    def write_info(self, handle: _LeaseLockHandle, info: LockInfo) -> None:
        if handle.closed:
            raise OSError("lock handle is closed")
        _write_info_fd(handle.fd, info)

    def read_info(self, lock_path: Path) -> LockInfo | None:
        return _read_info_file(lock_path)

    @staticmethod
    def _safe_unlink(lock_path: Path) -> bool:
        try:
            lock_path.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError:
            return False


def _flock_is_free(lock_path: Path) -> bool:
    if fcntl is None:
        return True
    try:
        fd = os.open(str(lock_path), os.O_RDWR)
    except OSError:
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    except OSError as e:
        return e.errno in _FLOCK_UNSUPPORTED_ERRNOS
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)
        return True
    finally:
        os.close(fd)
