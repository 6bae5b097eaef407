"""
Lease data models.

This module contains the dataclasses shared by the store, the allocator and
the session wrapper, plus helpers for the ``--cpus`` request syntax.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from core_lease.core.exceptions import InvalidRequest

_COUNT_PATTERN = re.compile(r"^\d+$")


@dataclass
class LeaseState:
    """Whole shared lease state as loaded from disk.

    Attributes:
        leased: Core indices currently leased by any session
        owners: Session identifier -> ordered list of cores it holds
    """

    leased: set[int] = field(default_factory=set)
    owners: dict[str, list[int]] = field(default_factory=dict)

    def free_cores(self, total_cores: int) -> list[int]:
        """Unleased pool indices in ascending order."""
        return [core for core in range(total_cores) if core not in self.leased]

    def grant(self, session_id: str, cores: list[int]) -> None:
        self.leased.update(cores)
        self.owners[session_id] = list(cores)

    def revoke(self, session_id: str) -> list[int]:
        """Drop a session's entry and its cores; returns the freed cores (empty if unknown)."""
        cores = self.owners.pop(session_id, None)
        if not cores:
            return []
        self.leased.difference_update(cores)
        return list(cores)

    def to_dict(self, total_cores: int | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "leased": sorted(self.leased),
            "owners": {session: list(cores) for session, cores in sorted(self.owners.items())},
        }
        if total_cores is not None:
            data["total_cores"] = total_cores
            data["free"] = self.free_cores(total_cores)
        return data


@dataclass
class LeaseRequest:
    """A lease request: either a core count or an explicit core list.

    Exactly one of ``count`` and ``cores`` is set.
    """

    count: int | None = None
    cores: list[int] | None = None

    def __post_init__(self) -> None:
        if (self.count is None) == (self.cores is None):
            raise InvalidRequest("A lease request needs exactly one of count or cores")
        if self.cores is not None:
            self.cores = list(self.cores)

    @property
    def is_explicit(self) -> bool:
        return self.cores is not None

    def describe(self) -> str:
        if self.cores is not None:
            return f"cores {format_cores(self.cores)}"
        return f"{self.count} core(s)"


@dataclass
class ConsistencyReport:
    """Drift between the lease record and the owner registry.

    Attributes:
        unowned: Leased cores no session claims
        untracked: Cores claimed by a session but missing from the lease record
        shared: Cores claimed by more than one session
        empty_sessions: Sessions registered with no cores
    """

    unowned: list[int] = field(default_factory=list)
    untracked: list[int] = field(default_factory=list)
    shared: list[int] = field(default_factory=list)
    empty_sessions: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not (self.unowned or self.untracked or self.shared or self.empty_sessions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "consistent": self.consistent,
            "unowned": self.unowned,
            "untracked": self.untracked,
            "shared": self.shared,
            "empty_sessions": self.empty_sessions,
        }


def check_consistency(state: LeaseState) -> ConsistencyReport:
    """Compare the owner registry against the lease record."""
    counts: Counter[int] = Counter()
    for cores in state.owners.values():
        counts.update(cores)
    owned = set(counts)
    return ConsistencyReport(
        unowned=sorted(state.leased - owned),
        untracked=sorted(owned - state.leased),
        shared=sorted(core for core, n in counts.items() if n > 1),
        empty_sessions=sorted(session for session, cores in state.owners.items() if not cores),
    )


def validate_cores(cores: list[int], total_cores: int) -> list[int]:
    """Check an explicit core list against the pool; returns it unchanged."""
    if not cores:
        raise InvalidRequest("Explicit core list is empty", cores=[])
    for core in cores:
        if isinstance(core, bool) or not isinstance(core, int):
            raise InvalidRequest("Core indices must be integers", cores=list(cores), details=repr(core))
    out_of_range = sorted({core for core in cores if not 0 <= core < total_cores})
    if out_of_range:
        raise InvalidRequest(
            f"Core indices must be within 0..{total_cores - 1}",
            cores=list(cores),
            details=", ".join(str(core) for core in out_of_range),
        )
    duplicates = sorted(core for core, n in Counter(cores).items() if n > 1)
    if duplicates:
        raise InvalidRequest(
            "Duplicate core indices",
            cores=list(cores),
            details=", ".join(str(core) for core in duplicates),
        )
    return cores


def parse_cpu_spec(text: str) -> LeaseRequest | None:
    """Parse a ``--cpus`` value.

    ``"4"`` asks for four cores, ``"0,2,4"`` for exactly those cores and
    ``"0"`` for no lease at all (returns None). A single explicit core is
    written with a trailing comma, e.g. ``"3,"``.
    """
    value = text.strip()
    if _COUNT_PATTERN.match(value):
        count = int(value)
        return LeaseRequest(count=count) if count > 0 else None

    if "," not in value:
        raise InvalidRequest(
            "--cpus must be a number or comma-separated list of CPU numbers",
            details=repr(text),
        )

    parts = [part.strip() for part in value.split(",")]
    # Allow one trailing comma ("3,") but no other empty items
    if parts and parts[-1] == "":
        parts = parts[:-1]
    if not parts or any(not _COUNT_PATTERN.match(part) for part in parts):
        raise InvalidRequest(
            "--cpus must be a number or comma-separated list of CPU numbers",
            details=repr(text),
        )
    return LeaseRequest(cores=[int(part) for part in parts])


def format_cores(cores: list[int]) -> str:
    """Render cores the way ``taskset -c`` expects them."""
    return ",".join(str(core) for core in cores)
