"""Tests for configuration loading and validation."""

import argparse
from pathlib import Path

import pytest

from core_lease.core.config import LeaseConfig, LogConfig, detect_total_cores
from core_lease.core.constants import DEFAULT_STATE_DIR
from core_lease.core.exceptions import ConfigurationError


class TestDefaults:
    def test_defaults(self):
        config = LeaseConfig()
        assert config.state_dir == DEFAULT_STATE_DIR
        assert config.total_cores == detect_total_cores()
        assert config.lock_backend == "auto"
        assert config.lock_timeout is None
        assert config.session_id_mode == "token"
        assert config.log == LogConfig()

    def test_state_paths(self, tmp_path):
        config = LeaseConfig(state_dir=str(tmp_path))
        assert config.state_dir == tmp_path
        assert config.lease_path == tmp_path / "allocation.json"
        assert config.owner_path == tmp_path / "owners.json"
        assert config.lock_path == tmp_path / "allocation.lock"


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"total_cores": 0}, "total_cores"),
            ({"lock_backend": "nfs"}, "lock_backend"),
            ({"lock_timeout": -1}, "lock_timeout"),
            ({"poll_interval": 0}, "poll_interval"),
            ({"stale_threshold_seconds": 0}, "stale_threshold_seconds"),
            ({"session_id_mode": "random"}, "session_id_mode"),
            ({"log": LogConfig(level="LOUD")}, "log_level"),
        ],
    )
    def test_rejects_invalid_values(self, kwargs, field):
        with pytest.raises(ConfigurationError) as exc_info:
            LeaseConfig(**kwargs)
        assert exc_info.value.field == field


class TestFromEnv:
    def test_reads_variables(self, tmp_path):
        config = LeaseConfig.from_env(
            {
                "CORE_LEASE_STATE_DIR": str(tmp_path),
                "CORE_LEASE_TOTAL_CORES": "12",
                "CORE_LEASE_LOCK_BACKEND": "Lease",
                "CORE_LEASE_LOCK_TIMEOUT": "2.5",
                "CORE_LEASE_POLL_INTERVAL": "0.1",
                "CORE_LEASE_STALE_SECONDS": "60",
                "CORE_LEASE_SESSION_ID": "pid",
                "LOG_LEVEL": "debug",
            }
        )
        assert config.state_dir == tmp_path
        assert config.total_cores == 12
        assert config.lock_backend == "lease"
        assert config.lock_timeout == 2.5
        assert config.poll_interval == 0.1
        assert config.stale_threshold_seconds == 60
        assert config.session_id_mode == "pid"
        assert config.log.level == "DEBUG"

    def test_empty_environment_gives_defaults(self):
        assert LeaseConfig.from_env({}) == LeaseConfig()

    def test_non_numeric_values_raise(self):
        with pytest.raises(ConfigurationError, match="CORE_LEASE_TOTAL_CORES must be an integer"):
            LeaseConfig.from_env({"CORE_LEASE_TOTAL_CORES": "many"})
        with pytest.raises(ConfigurationError, match="must be a number"):
            LeaseConfig.from_env({"CORE_LEASE_LOCK_TIMEOUT": "soon"})

    def test_loads_dotenv_file(self, tmp_path, monkeypatch):
        state_dir = tmp_path / "from-dotenv"
        (tmp_path / ".env").write_text(f"CORE_LEASE_STATE_DIR={state_dir}\nCORE_LEASE_TOTAL_CORES=3\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CORE_LEASE_STATE_DIR", raising=False)
        monkeypatch.delenv("CORE_LEASE_TOTAL_CORES", raising=False)

        try:
            config = LeaseConfig.from_env()
        finally:
            # load_dotenv writes into os.environ
            monkeypatch.delenv("CORE_LEASE_STATE_DIR", raising=False)
            monkeypatch.delenv("CORE_LEASE_TOTAL_CORES", raising=False)

        assert config.state_dir == state_dir
        assert config.total_cores == 3

    def test_existing_variables_win_over_dotenv(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("CORE_LEASE_TOTAL_CORES=3\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CORE_LEASE_TOTAL_CORES", "5")
        assert LeaseConfig.from_env().total_cores == 5


class TestFromArgs:
    def test_arguments_override_base(self, tmp_path):
        base = LeaseConfig(total_cores=4)
        args = argparse.Namespace(
            state_dir=str(tmp_path),
            total_cores=16,
            lock_backend="lease",
            lock_timeout=1.0,
            log_level="warning",
            log_format="json",
            log_file=str(tmp_path / "lease.log"),
        )
        config = LeaseConfig.from_args(args, base=base)
        assert config.state_dir == tmp_path
        assert config.total_cores == 16
        assert config.lock_backend == "lease"
        assert config.lock_timeout == 1.0
        assert config.log == LogConfig(level="WARNING", log_format="json", log_file=tmp_path / "lease.log")

    def test_missing_arguments_keep_base(self):
        base = LeaseConfig(state_dir=Path("/srv/leases"), total_cores=4, lock_timeout=3)
        config = LeaseConfig.from_args(argparse.Namespace(), base=base)
        assert config == base

    def test_invalid_override_raises(self):
        with pytest.raises(ConfigurationError):
            LeaseConfig.from_args(argparse.Namespace(total_cores=0), base=LeaseConfig(total_cores=4))
