"""
Core lease manager: allocation and release against shared on-disk state.

Every read-modify-write of the lease record and owner registry runs inside
the host-wide lease lock, so independent processes starting at the same time
always receive disjoint core sets.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from core_lease.core.config import LeaseConfig
from core_lease.core.constants import DEFAULT_POLL_INTERVAL, DEFAULT_STALE_THRESHOLD_SECONDS
from core_lease.core.exceptions import InsufficientResources, InvalidRequest, ResourceConflict
from core_lease.core.locks.manager import LockManager
from core_lease.core.logging import with_log_context
from core_lease.lease.models import (
    ConsistencyReport,
    LeaseRequest,
    LeaseState,
    check_consistency,
    format_cores,
    validate_cores,
)
from core_lease.lease.store import LeaseStore


def new_session_id(mode: str = "token") -> str:
    """Generate a session identifier.

    ``token`` mode combines the pid (for operators reading the registry) with
    random hex, so a recycled pid can never collide with a stale entry.
    """
    if mode == "pid":
        return str(os.getpid())
    return f"{os.getpid()}-{uuid.uuid4().hex[:12]}"


class LeaseManager:
    """Acquire and release CPU-core leases for sessions on this host.

    Args:
        store: Lease record / owner registry access
        lock: Host-wide lock guarding ``store``
        total_cores: Size of the core pool
        lock_timeout: Seconds to wait for the lock (None = forever)
        logger: Optional logger
    """

    def __init__(
        self,
        store: LeaseStore,
        lock: LockManager,
        total_cores: int,
        lock_timeout: float | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.lock = lock
        self.total_cores = total_cores
        self.lock_timeout = lock_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._released: set[str] = set()

    @classmethod
    def from_config(cls, config: LeaseConfig, logger: logging.Logger | None = None) -> LeaseManager:
        log = logger or logging.getLogger(__name__)
        lock = LockManager(
            lock_path=config.lock_path,
            owner=f"core-lease:{os.getpid()}",
            stale_threshold_seconds=config.stale_threshold_seconds,
            backend_name=config.lock_backend,
            poll_interval=config.poll_interval,
            logger=log,
        )
        store = LeaseStore(config.lease_path, config.owner_path, logger=log)
        return cls(store, lock, total_cores=config.total_cores, lock_timeout=config.lock_timeout, logger=log)

    @classmethod
    def at(
        cls,
        state_dir: Path,
        total_cores: int,
        *,
        lock_backend: str = "auto",
        lock_timeout: float | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS,
    ) -> LeaseManager:
        """Build a manager over ``state_dir`` without reading the environment."""
        config = LeaseConfig(
            state_dir=Path(state_dir),
            total_cores=total_cores,
            lock_backend=lock_backend,
            lock_timeout=lock_timeout,
            poll_interval=poll_interval,
            stale_threshold_seconds=stale_threshold_seconds,
        )
        return cls.from_config(config)

    # ==================== ACQUIRE ====================

    def acquire(self, request: LeaseRequest | int | list[int], session_id: str) -> list[int]:
        """Lease cores for ``session_id``.

        ``request`` is a LeaseRequest, a core count, or an explicit core list.
        Raises InvalidRequest, InsufficientResources, ResourceConflict,
        LockTimeout or StateIOError; never grants a partial set.
        """
        if isinstance(request, LeaseRequest):
            lease_request = request
        elif isinstance(request, int) and not isinstance(request, bool):
            lease_request = LeaseRequest(count=request)
        elif isinstance(request, (list, tuple)):
            lease_request = LeaseRequest(cores=list(request))
        else:
            raise InvalidRequest(f"Unsupported lease request {request!r}")

        if lease_request.cores is not None:
            return self.acquire_cores(lease_request.cores, session_id)
        return self.acquire_count(lease_request.count, session_id)

    def acquire_count(self, count: int, session_id: str) -> list[int]:
        """Lease the ``count`` lowest-numbered free cores."""
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise InvalidRequest("Core count must be a positive integer", count=count)
        log = with_log_context(self.logger, session=session_id)

        def _allocate() -> list[int]:
            state = self._load_for_update(session_id)
            busy = self._busy_cores(state)
            free = [core for core in range(self.total_cores) if core not in busy]
            log.debug(f"Cores already in use: {format_cores(sorted(busy))}")
            if len(free) < count:
                raise InsufficientResources(requested=count, available=len(free))
            selection = free[:count]
            state.grant(session_id, selection)
            self.store.save_state(state)
            return selection

        cores = self.lock.with_lock(_allocate, timeout=self.lock_timeout)
        self._released.discard(session_id)
        log.info(f"Leased cores {format_cores(cores)} to session {session_id}")
        return cores

    def acquire_cores(self, cores: list[int], session_id: str) -> list[int]:
        """Lease exactly ``cores``; fails if any of them is already leased."""
        requested = validate_cores(list(cores), self.total_cores)
        log = with_log_context(self.logger, session=session_id)

        def _allocate() -> list[int]:
            state = self._load_for_update(session_id)
            busy = self._busy_cores(state)
            conflicting = [core for core in requested if core in busy]
            if conflicting:
                raise ResourceConflict(conflicting)
            state.grant(session_id, requested)
            self.store.save_state(state)
            return list(requested)

        granted = self.lock.with_lock(_allocate, timeout=self.lock_timeout)
        self._released.discard(session_id)
        log.info(f"Leased requested cores {format_cores(granted)} to session {session_id}")
        return granted

    # ==================== RELEASE ====================

    def release(self, session_id: str) -> list[int]:
        """Free the cores held by ``session_id`` and drop its registry entry.

        Returns the freed cores, or an empty list when the session holds
        nothing or was already released by this manager. Lock and state
        errors propagate.
        """
        if session_id in self._released:
            return []
        log = with_log_context(self.logger, session=session_id)

        def _free() -> list[int]:
            state = self.store.load_state()
            freed = state.revoke(session_id)
            if freed:
                self.store.save_state(state, shrinking=True)
            return freed

        freed = self.lock.with_lock(_free, timeout=self.lock_timeout)
        self._released.add(session_id)
        if freed:
            log.info(f"Released cores {format_cores(freed)} from session {session_id}")
        else:
            log.debug(f"Session {session_id} held no cores")
        return freed

    # ==================== DIAGNOSTICS / ADMIN ====================

    def status(self, locked: bool = True) -> dict:
        """Snapshot of leased, free and owned cores plus a consistency report."""
        state = self.lock.with_lock(self.store.load_state, timeout=self.lock_timeout) if locked else self.store.peek()
        data = state.to_dict(total_cores=self.total_cores)
        data["consistency"] = check_consistency(state).to_dict()
        return data

    def reset(self) -> LeaseState:
        """Administrative wholesale clear. Returns the state that was discarded."""

        def _clear() -> LeaseState:
            previous = self.store.load_state()
            self.store.save_state(LeaseState(), shrinking=True)
            return previous

        previous = self.lock.with_lock(_clear, timeout=self.lock_timeout)
        self.logger.warning(
            f"Lease state reset; discarded {len(previous.owners)} session(s) "
            f"holding cores {format_cores(sorted(previous.leased))}"
        )
        return previous

    # ==================== HELPERS ====================

    def _load_for_update(self, session_id: str) -> LeaseState:
        state = self.store.load_state()
        if session_id in state.owners:
            raise InvalidRequest(
                f"Session {session_id} already holds a lease",
                cores=list(state.owners[session_id]),
                details="release it before acquiring again",
            )
        report = check_consistency(state)
        if not report.consistent:
            self._warn_drift(report)
        return state

    @staticmethod
    def _busy_cores(state: LeaseState) -> set[int]:
        # Cores claimed in either record are unavailable, even when the records disagree
        busy = set(state.leased)
        for cores in state.owners.values():
            busy.update(cores)
        return busy

    def _warn_drift(self, report: ConsistencyReport) -> None:
        self.logger.warning(
            "Lease record and owner registry disagree (unowned=%s, untracked=%s, shared=%s); "
            "treating all of them as leased until an administrator resets the state",
            report.unowned,
            report.untracked,
            report.shared,
        )
