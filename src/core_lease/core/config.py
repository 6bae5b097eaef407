"""Configuration dataclasses for core-lease.

These dataclasses centralize all configuration options for type safety
and easy testing. They can be created from the environment, from
command-line arguments, or used directly in code.
"""

from __future__ import annotations

import argparse
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from core_lease.core.constants import (
    DEFAULT_LOCK_BACKEND,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SESSION_ID_MODE,
    DEFAULT_STALE_THRESHOLD_SECONDS,
    DEFAULT_STATE_DIR,
    ENV_LOCK_BACKEND,
    ENV_LOCK_TIMEOUT,
    ENV_POLL_INTERVAL,
    ENV_SESSION_ID_MODE,
    ENV_STALE_SECONDS,
    ENV_STATE_DIR,
    ENV_TOTAL_CORES,
    LEASE_FILE_NAME,
    LOCK_BACKENDS,
    LOCK_FILE_NAME,
    OWNER_FILE_NAME,
    SESSION_ID_MODES,
    VALID_LOG_LEVELS,
)
from core_lease.core.exceptions import ConfigurationError


def detect_total_cores() -> int:
    """Return the host's core count, the size of the core pool."""
    return os.cpu_count() or 1


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer", field=name, value=raw) from e


def _parse_float(name: str, raw: str) -> float:
    try:
        return float(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number", field=name, value=raw) from e


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
        log_format: "text" or "json" (default: "text")
        log_file: Optional path of a rotating log file
    """

    level: str = "INFO"
    log_format: str = "text"
    log_file: Path | None = None


@dataclass
class LeaseConfig:
    """Master configuration for the core lease manager.

    Attributes:
        state_dir: Directory holding the lease record, owner record and lock token
        total_cores: Size of the core pool (indices 0..total_cores-1)
        lock_backend: Lock backend name (auto, fcntl, lease)
        lock_timeout: Seconds to wait for the lock; None blocks indefinitely
        poll_interval: Seconds between lock attempts while contended
        stale_threshold_seconds: Age after which a lease-backend marker is reclaimed
        session_id_mode: "token" for generated ids, "pid" for bare process ids
        log: Logging configuration
    """

    state_dir: Path = DEFAULT_STATE_DIR
    total_cores: int = field(default_factory=detect_total_cores)
    lock_backend: str = DEFAULT_LOCK_BACKEND
    lock_timeout: float | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS
    session_id_mode: str = DEFAULT_SESSION_ID_MODE
    log: LogConfig = field(default_factory=LogConfig)

    def __post_init__(self) -> None:
        self.state_dir = Path(self.state_dir)
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for out-of-range values."""
        if self.total_cores < 1:
            raise ConfigurationError("total_cores must be at least 1", field="total_cores", value=self.total_cores)
        if self.lock_backend not in LOCK_BACKENDS:
            raise ConfigurationError(
                f"lock_backend must be one of {', '.join(LOCK_BACKENDS)}",
                field="lock_backend",
                value=self.lock_backend,
            )
        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ConfigurationError("lock_timeout cannot be negative", field="lock_timeout", value=self.lock_timeout)
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive", field="poll_interval", value=self.poll_interval)
        if self.stale_threshold_seconds < 1:
            raise ConfigurationError(
                "stale_threshold_seconds must be at least 1",
                field="stale_threshold_seconds",
                value=self.stale_threshold_seconds,
            )
        if self.session_id_mode not in SESSION_ID_MODES:
            raise ConfigurationError(
                f"session_id_mode must be one of {', '.join(SESSION_ID_MODES)}",
                field="session_id_mode",
                value=self.session_id_mode,
            )
        if self.log.level.upper() not in VALID_LOG_LEVELS:
            raise ConfigurationError("Invalid log level", field="log_level", value=self.log.level)

    @property
    def lease_path(self) -> Path:
        return self.state_dir / LEASE_FILE_NAME

    @property
    def owner_path(self) -> Path:
        return self.state_dir / OWNER_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILE_NAME

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, *, load_dotenv_file: bool = True) -> LeaseConfig:
        """Create configuration from environment variables.

        A ``.env`` file in the working directory is loaded first when
        ``environ`` is not given; variables already set take precedence.
        """
        if environ is None:
            if load_dotenv_file:
                load_dotenv(find_dotenv(usecwd=True))
            environ = os.environ

        kwargs: dict = {}
        if environ.get(ENV_STATE_DIR):
            kwargs["state_dir"] = Path(environ[ENV_STATE_DIR])
        if environ.get(ENV_TOTAL_CORES):
            kwargs["total_cores"] = _parse_int(ENV_TOTAL_CORES, environ[ENV_TOTAL_CORES])
        if environ.get(ENV_LOCK_BACKEND):
            kwargs["lock_backend"] = environ[ENV_LOCK_BACKEND].strip().lower()
        if environ.get(ENV_LOCK_TIMEOUT):
            kwargs["lock_timeout"] = _parse_float(ENV_LOCK_TIMEOUT, environ[ENV_LOCK_TIMEOUT])
        if environ.get(ENV_POLL_INTERVAL):
            kwargs["poll_interval"] = _parse_float(ENV_POLL_INTERVAL, environ[ENV_POLL_INTERVAL])
        if environ.get(ENV_STALE_SECONDS):
            kwargs["stale_threshold_seconds"] = _parse_int(ENV_STALE_SECONDS, environ[ENV_STALE_SECONDS])
        if environ.get(ENV_SESSION_ID_MODE):
            kwargs["session_id_mode"] = environ[ENV_SESSION_ID_MODE].strip().lower()
        if environ.get("LOG_LEVEL"):
            kwargs["log"] = LogConfig(level=environ["LOG_LEVEL"].strip().upper())
        return cls(**kwargs)

    @classmethod
    def from_args(cls, args: argparse.Namespace, base: LeaseConfig | None = None) -> LeaseConfig:
        """Overlay parsed command-line arguments on top of ``base`` (or the environment)."""
        config = base if base is not None else cls.from_env()
        overrides: dict = {}
        if getattr(args, "state_dir", None):
            overrides["state_dir"] = Path(args.state_dir)
        if getattr(args, "total_cores", None) is not None:
            overrides["total_cores"] = args.total_cores
        if getattr(args, "lock_backend", None):
            overrides["lock_backend"] = args.lock_backend
        if getattr(args, "lock_timeout", None) is not None:
            overrides["lock_timeout"] = args.lock_timeout
        log = replace(
            config.log,
            level=(getattr(args, "log_level", None) or config.log.level).upper(),
            log_format=getattr(args, "log_format", None) or config.log.log_format,
            log_file=Path(args.log_file) if getattr(args, "log_file", None) else config.log.log_file,
        )
        overrides["log"] = log
        return replace(config, **overrides)
