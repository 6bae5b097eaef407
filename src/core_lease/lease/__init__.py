"""Lease module - allocation, release and per-session scoping of CPU-core leases."""

from core_lease.lease.manager import LeaseManager, new_session_id
from core_lease.lease.models import (
    ConsistencyReport,
    LeaseRequest,
    LeaseState,
    check_consistency,
    format_cores,
    parse_cpu_spec,
    validate_cores,
)
from core_lease.lease.session import CoreLeaseSession
from core_lease.lease.store import LeaseStore

__all__ = [
    "ConsistencyReport",
    "CoreLeaseSession",
    "LeaseManager",
    "LeaseRequest",
    "LeaseState",
    "LeaseStore",
    "check_consistency",
    "format_cores",
    "new_session_id",
    "parse_cpu_spec",
    "validate_cores",
]
