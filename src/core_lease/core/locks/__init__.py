"""Locking subsystem for cross-process coordination.

This package centralizes lock acquisition/release behavior behind
backend abstractions so the lease manager can use a stable API.
"""

from core_lease.core.locks.backends import (
    FcntlFileLockBackend,
    LeaseFileLockBackend,
    LockBackendUnavailableError,
    LockInfo,
)
from core_lease.core.locks.manager import LockManager, create_lock_backend

__all__ = [
    "FcntlFileLockBackend",
    "LeaseFileLockBackend",
    "LockBackendUnavailableError",
    "LockInfo",
    "LockManager",
    "create_lock_backend",
]
