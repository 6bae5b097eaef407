"""
core-lease - host-wide CPU-core leases for concurrently starting sessions

Lets independent processes on one host reserve disjoint sets of CPU cores,
coordinated only through a locked state directory, and release them when
the session ends.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__all__ = [
    "__version__",
    "CoreLeaseSession",
    "LeaseConfig",
    "LeaseManager",
    "LeaseRequest",
    "main",
]

if TYPE_CHECKING:
    from core_lease.cli.main import main
    from core_lease.core.config import LeaseConfig
    from core_lease.core.version import __version__
    from core_lease.lease import CoreLeaseSession, LeaseManager, LeaseRequest

_LAZY_EXPORTS = {
    "__version__": "core_lease.core.version",
    "CoreLeaseSession": "core_lease.lease",
    "LeaseConfig": "core_lease.core.config",
    "LeaseManager": "core_lease.lease",
    "LeaseRequest": "core_lease.lease",
    "main": "core_lease.cli.main",
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        import importlib

        return getattr(importlib.import_module(_LAZY_EXPORTS[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
