"""Constants and default values for core-lease.

This module centralizes file names, environment variable names and
default tuning values used throughout the application.
"""

from pathlib import Path

# ==================== STATE LAYOUT ====================

# Shared, host-local directory holding the lease record, owner record and lock token
DEFAULT_STATE_DIR: Path = Path("/var/tmp/core_lease")

LEASE_FILE_NAME: str = "allocation.json"  # Set of leased core indices
OWNER_FILE_NAME: str = "owners.json"  # Session id -> held cores
LOCK_FILE_NAME: str = "allocation.lock"  # Lock token; holds diagnostic LockInfo JSON

STATE_FORMAT_VERSION: int = 1

# State files are shared by every user on the host
STATE_FILE_MODE: int = 0o666

# ==================== LOCKING ====================

DEFAULT_LOCK_BACKEND: str = "auto"
LOCK_BACKENDS: tuple[str, ...] = ("auto", "fcntl", "lease")
DEFAULT_POLL_INTERVAL: float = 0.05  # Seconds between non-blocking lock attempts
DEFAULT_STALE_THRESHOLD_SECONDS: int = 300  # Lease-backend marker age before reclaim

# ==================== SESSIONS ====================

SESSION_ID_MODES: tuple[str, ...] = ("token", "pid")
DEFAULT_SESSION_ID_MODE: str = "token"

# ==================== LOGGING DEFAULTS ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB max per log file
LOG_FILE_BACKUP_COUNT: int = 5  # Number of backup log files to keep
VALID_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ==================== ENVIRONMENT ====================

ENV_STATE_DIR = "CORE_LEASE_STATE_DIR"
ENV_TOTAL_CORES = "CORE_LEASE_TOTAL_CORES"
ENV_LOCK_BACKEND = "CORE_LEASE_LOCK_BACKEND"
ENV_LOCK_TIMEOUT = "CORE_LEASE_LOCK_TIMEOUT"
ENV_POLL_INTERVAL = "CORE_LEASE_POLL_INTERVAL"
ENV_STALE_SECONDS = "CORE_LEASE_STALE_SECONDS"
ENV_SESSION_ID_MODE = "CORE_LEASE_SESSION_ID"

# ==================== CLI ====================

EXIT_OK: int = 0
EXIT_LEASE_ERROR: int = 1
EXIT_USAGE_ERROR: int = 2

# Command used to pin a child process to its leased cores
TASKSET_COMMAND: str = "taskset"
