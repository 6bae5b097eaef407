"""Custom exceptions for core-lease.

Every failure a lease operation can surface derives from ``CoreLeaseError``,
so callers (launchers, the CLI) can decide whether to abort session startup
with a single ``except`` clause while still inspecting the specific cause.
"""


class CoreLeaseError(Exception):
    """Base exception for all core-lease errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(CoreLeaseError):
    """Exception raised for configuration-related errors.

    Examples:
        - Non-numeric CORE_LEASE_TOTAL_CORES
        - Negative lock timeout
        - Unknown session id mode
    """

    def __init__(self, message: str, field: str | None = None, value: object = None, details: str | None = None):
        self.field = field
        self.value = value
        super().__init__(message, details)


class InvalidRequest(CoreLeaseError):
    """Raised for malformed lease requests.

    Examples:
        - Core index outside the host's core pool
        - Duplicate indices in an explicit core list
        - Non-positive core count
    """

    def __init__(self, message: str, cores: list[int] | None = None, count: int | None = None, details: str | None = None):
        self.cores = cores
        self.count = count
        super().__init__(message, details)


class InsufficientResources(CoreLeaseError):
    """Raised when a count request exceeds the number of free cores.

    Attributes:
        requested: Number of cores asked for
        available: Number of cores free at the time of the request
    """

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot lease {requested} core(s)",
            f"only {available} free",
        )


class ResourceConflict(CoreLeaseError):
    """Raised when an explicit core list overlaps cores leased by another session."""

    def __init__(self, conflicting: list[int]):
        self.conflicting = sorted(conflicting)
        super().__init__(
            "Requested cores are already leased",
            ",".join(str(core) for core in self.conflicting),
        )


class LockTimeout(CoreLeaseError):
    """Raised when the host-wide lease lock could not be taken within the configured wait."""

    def __init__(self, lock_path: str, timeout_seconds: float):
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out waiting for lease lock '{lock_path}'",
            f"waited {timeout_seconds:.2f}s",
        )


class StateIOError(CoreLeaseError):
    """Raised when persisted lease state cannot be read or written.

    Fatal for the current operation only; the state on disk is left as it
    was before the failed write.
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.path = path
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.path:
            parts.append(f"path {self.path}")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)
