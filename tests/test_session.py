"""Tests for CoreLeaseSession lifecycle, signals and exit hooks."""

import logging
import os
import signal
import threading
from unittest.mock import patch

import pytest

from core_lease.core.exceptions import InsufficientResources, StateIOError
from core_lease.lease.manager import LeaseManager
from core_lease.lease.models import LeaseRequest
from core_lease.lease.session import CoreLeaseSession


@pytest.fixture
def manager(tmp_path):
    return LeaseManager.at(tmp_path, total_cores=4)


def _session(manager, count=2, **kwargs):
    kwargs.setdefault("register_atexit", False)
    return CoreLeaseSession(manager, LeaseRequest(count=count), **kwargs)


class TestLifecycle:
    def test_context_manager_acquires_and_releases(self, manager):
        with _session(manager, session_id="s1") as session:
            assert session.cores == [0, 1]
            assert session.active
            assert manager.store.load_state().owners == {"s1": [0, 1]}

        assert not session.active
        assert session.freed == [0, 1]
        assert manager.store.load_state().leased == set()

    def test_release_runs_when_block_raises(self, manager):
        with pytest.raises(RuntimeError, match="workload failed"):
            with _session(manager, session_id="s1"):
                raise RuntimeError("workload failed")
        assert manager.store.load_state().leased == set()

    def test_release_is_one_shot(self, manager):
        session = _session(manager, session_id="s1")
        session.acquire()
        assert session.release() == [0, 1]
        assert session.release() == []

    def test_cannot_reacquire_after_release(self, manager):
        session = _session(manager)
        session.acquire()
        session.release()
        with pytest.raises(RuntimeError, match="already released"):
            session.acquire()

    def test_release_before_acquire_is_noop(self, manager):
        assert _session(manager).release() == []

    def test_generated_session_id(self, manager):
        session = _session(manager)
        assert session.session_id.startswith(f"{os.getpid()}-")

    def test_failed_acquire_leaves_nothing_installed(self, manager):
        previous = signal.getsignal(signal.SIGTERM)
        session = _session(manager, count=10)
        with pytest.raises(InsufficientResources):
            session.acquire()
        assert signal.getsignal(signal.SIGTERM) is previous
        assert session.cores is None

    def test_release_errors_are_logged_not_raised(self, manager, caplog):
        session = _session(manager, session_id="s1")
        session.acquire()
        with patch.object(manager, "release", side_effect=StateIOError("Cannot write lease state")):
            with caplog.at_level(logging.ERROR):
                assert session.release() == []
        assert "they stay leased" in caplog.text

    def test_release_logs_freed_cores(self, manager, caplog):
        with caplog.at_level(logging.INFO):
            with _session(manager, session_id="s1"):
                pass
        assert "Released cores 0,1 from session s1" in caplog.text

    def test_unreadable_lock_token_is_logged_on_release(self, manager, caplog):
        session = _session(manager, session_id="s1")
        session.acquire()
        lock_path = manager.lock.lock_path
        lock_path.unlink()
        lock_path.mkdir()

        with caplog.at_level(logging.ERROR):
            assert session.release() == []
        assert "they stay leased" in caplog.text
        assert manager.store.load_state().owners == {"s1": [0, 1]}


class TestInterrupts:
    def test_interrupt_right_after_grant_releases(self, manager):
        real_acquire = manager.acquire

        def _granted_then_interrupted(request, session_id):
            real_acquire(request, session_id)
            raise KeyboardInterrupt

        session = _session(manager, session_id="s1")
        with patch.object(manager, "acquire", side_effect=_granted_then_interrupted):
            with pytest.raises(KeyboardInterrupt):
                session.acquire()
        assert manager.store.load_state().owners == {}

    def test_sigterm_releases_and_exits(self, manager):
        previous = signal.getsignal(signal.SIGTERM)
        with pytest.raises(SystemExit) as exc_info:
            with _session(manager, session_id="s1"):
                os.kill(os.getpid(), signal.SIGTERM)
        assert exc_info.value.code == 128 + signal.SIGTERM
        assert manager.store.load_state().leased == set()
        assert signal.getsignal(signal.SIGTERM) is previous

    def test_sigint_becomes_keyboard_interrupt(self, manager):
        with pytest.raises(KeyboardInterrupt):
            with _session(manager, session_id="s1"):
                os.kill(os.getpid(), signal.SIGINT)
        assert manager.store.load_state().leased == set()

    def test_signal_during_locked_write_is_deferred(self, manager):
        real_save = manager.store.save_state
        seen_inside = []

        def _save_and_signal(state, **kwargs):
            if not seen_inside:
                os.kill(os.getpid(), signal.SIGTERM)
                seen_inside.append(manager.lock.acquired)
            real_save(state, **kwargs)

        session = _session(manager, session_id="s1")
        with patch.object(manager.store, "save_state", side_effect=_save_and_signal):
            with pytest.raises(SystemExit):
                session.acquire()

        # The grant was written completely, then released by the deferred signal
        assert seen_inside == [True]
        assert session.cores == [0, 1]
        assert manager.store.load_state().owners == {}

    def test_signal_during_refused_acquire_is_delivered(self, manager):
        manager.acquire(4, "busy")
        previous = signal.getsignal(signal.SIGTERM)
        real_load = manager.store.load_state

        def _load_and_signal():
            os.kill(os.getpid(), signal.SIGTERM)
            return real_load()

        session = _session(manager, session_id="s1")
        with patch.object(manager.store, "load_state", side_effect=_load_and_signal):
            with pytest.raises(SystemExit) as exc_info:
                session.acquire()

        assert exc_info.value.code == 128 + signal.SIGTERM
        assert isinstance(exc_info.value.__context__, InsufficientResources)
        assert signal.getsignal(signal.SIGTERM) is previous
        assert session.cores is None

    def test_no_signal_handlers_outside_main_thread(self, manager):
        previous = signal.getsignal(signal.SIGTERM)
        results = {}

        def _worker():
            with _session(manager, session_id="thread") as session:
                results["cores"] = session.cores
                results["handler"] = signal.getsignal(signal.SIGTERM)

        thread = threading.Thread(target=_worker)
        thread.start()
        thread.join(timeout=10)
        assert results["cores"] == [0, 1]
        assert results["handler"] is previous


class TestAtexit:
    def test_registers_and_unregisters_release(self, manager):
        with patch("core_lease.lease.session.atexit") as mock_atexit:
            session = CoreLeaseSession(manager, LeaseRequest(count=1), session_id="s1")
            session.acquire()
            mock_atexit.register.assert_called_once_with(session.release)

            session.release()
            mock_atexit.unregister.assert_called_once_with(session.release)

    def test_atexit_not_registered_when_acquire_fails(self, manager):
        with patch("core_lease.lease.session.atexit") as mock_atexit:
            session = CoreLeaseSession(manager, LeaseRequest(count=5), session_id="s1")
            with pytest.raises(InsufficientResources):
                session.acquire()
            mock_atexit.register.assert_not_called()
