"""Core module - Foundation components with no dependency on the lease logic.

This module provides the basic building blocks used throughout the application:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults
- Cross-process locking
"""

from core_lease.core.version import __version__

from core_lease.core.exceptions import (
    CoreLeaseError,
    ConfigurationError,
    InvalidRequest,
    InsufficientResources,
    ResourceConflict,
    LockTimeout,
    StateIOError,
)

from core_lease.core.config import (
    LogConfig,
    LeaseConfig,
    detect_total_cores,
)

from core_lease.core.locks import (
    LockManager,
    create_lock_backend,
)

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'CoreLeaseError',
    'ConfigurationError',
    'InvalidRequest',
    'InsufficientResources',
    'ResourceConflict',
    'LockTimeout',
    'StateIOError',
    # Config dataclasses
    'LogConfig',
    'LeaseConfig',
    'detect_total_cores',
    # Locks
    'LockManager',
    'create_lock_backend',
]
