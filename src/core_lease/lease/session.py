"""
Scoped core lease for one session.

``CoreLeaseSession`` acquires a lease on entry and guarantees a single
release on every way out of the session: leaving the ``with`` block,
interpreter exit, Ctrl-C, or SIGTERM.

Usage:
    manager = LeaseManager.from_config(LeaseConfig.from_env())
    with CoreLeaseSession(manager, LeaseRequest(count=4)) as session:
        run_pinned_workload(session.cores)
"""

from __future__ import annotations

import atexit
import logging
import signal
import threading
from types import FrameType

from core_lease.core.exceptions import CoreLeaseError
from core_lease.core.logging import flush_logging_handlers, with_log_context
from core_lease.lease.manager import LeaseManager, new_session_id
from core_lease.lease.models import LeaseRequest, format_cores

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class CoreLeaseSession:
    """Lease held for the lifetime of a session, released exactly once.

    Signals are turned into exceptions (``KeyboardInterrupt`` through
    Python's own SIGINT handler, ``SystemExit(128 + signum)`` otherwise) so
    the release runs while the stack unwinds. A signal that arrives while
    the lease lock is held is deferred until the critical section is over.

    Args:
        manager: Lease manager to acquire from
        request: Count or explicit-list request
        session_id: Identifier for the owner registry (generated if omitted)
        install_signal_handlers: Install SIGINT/SIGTERM handlers while leased
        register_atexit: Release at interpreter exit if still held
        signals: Signals to handle (default SIGINT, SIGTERM)
    """

    def __init__(
        self,
        manager: LeaseManager,
        request: LeaseRequest,
        session_id: str | None = None,
        *,
        install_signal_handlers: bool = True,
        register_atexit: bool = True,
        signals: tuple[signal.Signals, ...] = DEFAULT_SIGNALS,
        logger: logging.Logger | None = None,
    ):
        self.manager = manager
        self.request = request
        self.session_id = session_id or new_session_id()
        self.install_signal_handlers = install_signal_handlers
        self.register_atexit = register_atexit
        self.signals = signals
        self.logger = with_log_context(logger or logging.getLogger(__name__), session=self.session_id)

        self.cores: list[int] | None = None
        self.freed: list[int] = []
        self._released = False
        self._acquiring = False
        self._pending_signal: int | None = None
        self._previous_handlers: dict[int, object] = {}
        self._atexit_registered = False

    @property
    def active(self) -> bool:
        return self.cores is not None and not self._released

    def __enter__(self) -> CoreLeaseSession:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def acquire(self) -> list[int]:
        """Acquire the lease; lease errors propagate and leave nothing installed."""
        if self._released:
            raise RuntimeError(f"session {self.session_id} was already released")
        if self.cores is not None:
            return self.cores

        self.logger.debug(f"Requesting {self.request.describe()}")
        self._install_signal_handlers()
        self._acquiring = True
        try:
            self.cores = self.manager.acquire(self.request, self.session_id)
        except (KeyboardInterrupt, SystemExit):
            # Interrupted just after the grant was saved; do not leave it behind
            self._acquiring = False
            self._restore_signal_handlers()
            self._release_quietly()
            raise
        except BaseException:
            self._acquiring = False
            try:
                self._deliver_pending()
            finally:
                self._restore_signal_handlers()
            raise
        self._acquiring = False

        if self.register_atexit:
            atexit.register(self.release)
            self._atexit_registered = True

        try:
            self._deliver_pending()
        except BaseException:
            # Raised from __enter__, so __exit__ will not run
            self.release()
            raise
        return self.cores

    def release(self) -> list[int]:
        """Release the lease once; later calls return an empty list.

        Lease errors are logged, never raised, so session teardown always
        completes. A failed release is not retried.
        """
        if self._released:
            return []
        self._released = True
        self._restore_signal_handlers()
        if self._atexit_registered:
            atexit.unregister(self.release)
            self._atexit_registered = False
        if self.cores is None:
            return []

        self.freed = self._release_quietly()
        self.logger.debug(f"Session released cores: {format_cores(self.freed)}")
        flush_logging_handlers(self.logger)
        return list(self.freed)

    def _release_quietly(self) -> list[int]:
        try:
            return self.manager.release(self.session_id)
        except CoreLeaseError as e:
            self.logger.error(f"Failed to release cores for session {self.session_id}; they stay leased: {e}")
            return []

    # ==================== SIGNALS ====================

    def _install_signal_handlers(self) -> None:
        if not self.install_signal_handlers or self._previous_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            self.logger.debug("Not in main thread; relying on context manager and atexit for release")
            return
        for signum in self.signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        if not self._previous_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        previous = self._previous_handlers.get(signum)
        if previous is signal.SIG_IGN:
            return
        if self._acquiring and self.manager.lock.acquired:
            self._pending_signal = signum
            return
        self._deliver(signum, frame)

    def _deliver_pending(self) -> None:
        if self._pending_signal is None:
            return
        signum, self._pending_signal = self._pending_signal, None
        self._deliver(signum, None)

    def _deliver(self, signum: int, frame: FrameType | None) -> None:
        previous = self._previous_handlers.get(signum)
        self.logger.warning(f"Received {signal.Signals(signum).name}; ending session")
        if callable(previous):
            previous(signum, frame)
            return
        raise SystemExit(128 + signum)
