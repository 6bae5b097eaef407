"""Pytest configuration and fixtures for core-lease tests"""
import logging
import os

import pytest

from core_lease.lease.manager import LeaseManager


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep host-level CORE_LEASE_* settings out of the tests"""
    for name in list(os.environ):
        if name.startswith("CORE_LEASE_") or name == "LOG_LEVEL":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture
def state_dir(tmp_path):
    """Empty lease state directory"""
    path = tmp_path / "core_lease"
    path.mkdir()
    return path


@pytest.fixture
def cli_base_args(state_dir):
    """Global CLI options pointing at the temporary state directory with an 8-core pool"""
    return ["--state-dir", str(state_dir), "--total-cores", "8", "--no-color"]


@pytest.fixture
def lease_manager(state_dir):
    """Manager over the same state the CLI fixtures use"""
    return LeaseManager.at(state_dir, total_cores=8)


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; undo it so later tests do not log into closed capture streams"""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
