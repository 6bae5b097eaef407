"""
Durable lease record and owner registry.

Both records are small JSON documents in the shared state directory. They
are read and written whole, and callers must hold the lease lock around any
load/modify/save sequence; ``peek()`` is the only lock-free read and is for
diagnostics.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from core_lease.core.constants import STATE_FILE_MODE, STATE_FORMAT_VERSION
from core_lease.core.exceptions import StateIOError
from core_lease.lease.models import LeaseState


def _coerce_core(value: Any, path: Path) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise StateIOError("Malformed lease state", path=str(path), details=f"bad core index {value!r}")
    return value


class LeaseStore:
    """Whole-state access to the lease record and the owner registry.

    Args:
        lease_path: JSON file holding the set of leased cores
        owner_path: JSON file mapping session ids to their cores
        logger: Optional logger for load/save diagnostics
    """

    def __init__(self, lease_path: Path, owner_path: Path, logger: logging.Logger | None = None):
        self.lease_path = Path(lease_path)
        self.owner_path = Path(owner_path)
        self.logger = logger or logging.getLogger(__name__)

    def load_state(self) -> LeaseState:
        """Read both records; missing files load as empty."""
        lease_doc = self._read_json(self.lease_path)
        owner_doc = self._read_json(self.owner_path)

        leased: set[int] = set()
        if lease_doc is not None:
            raw_leased = lease_doc.get("leased", [])
            if not isinstance(raw_leased, list):
                raise StateIOError("Malformed lease state", path=str(self.lease_path), details="'leased' is not a list")
            leased = {_coerce_core(core, self.lease_path) for core in raw_leased}

        owners: dict[str, list[int]] = {}
        if owner_doc is not None:
            raw_owners = owner_doc.get("owners", {})
            if not isinstance(raw_owners, dict):
                raise StateIOError("Malformed owner registry", path=str(self.owner_path), details="'owners' is not a map")
            for session_id, cores in raw_owners.items():
                if not isinstance(cores, list):
                    raise StateIOError(
                        "Malformed owner registry",
                        path=str(self.owner_path),
                        details=f"entry for {session_id!r} is not a list",
                    )
                owners[str(session_id)] = [_coerce_core(core, self.owner_path) for core in cores]

        return LeaseState(leased=leased, owners=owners)

    def save_state(self, state: LeaseState, *, shrinking: bool = False) -> None:
        """Persist both records, each via atomic write-then-rename.

        Growing saves write the lease record first and shrinking saves write
        it last, so a save interrupted between the two files can only leave
        cores leased without an owner, never owned without being leased.
        """
        owner_payload = {
            "version": STATE_FORMAT_VERSION,
            "owners": {session: list(cores) for session, cores in sorted(state.owners.items())},
        }
        lease_payload = {"version": STATE_FORMAT_VERSION, "leased": sorted(state.leased)}
        if shrinking:
            self._write_json(self.owner_path, owner_payload)
            self._write_json(self.lease_path, lease_payload)
        else:
            self._write_json(self.lease_path, lease_payload)
            self._write_json(self.owner_path, owner_payload)

    def peek(self) -> LeaseState:
        """Lock-free read for diagnostics; may observe a stale state."""
        return self.load_state()

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StateIOError("Cannot read lease state", path=str(path), details=str(e), original_error=e) from e

        if not text.strip():
            # Created by an administrator with `touch` or truncated by hand
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StateIOError("Malformed lease state", path=str(path), details=str(e), original_error=e) from e
        if not isinstance(data, dict):
            raise StateIOError("Malformed lease state", path=str(path), details="top level is not an object")
        return data

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(tmp_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, STATE_FILE_MODE)
            with contextlib.suppress(OSError):
                os.fchmod(fd, STATE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise StateIOError("Cannot write lease state", path=str(path), details=str(e), original_error=e) from e
        self.logger.debug("Wrote lease state to %s", path)
