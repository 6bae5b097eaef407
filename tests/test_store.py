"""Tests for the on-disk lease record and owner registry."""

import json
from unittest.mock import patch

import pytest

from core_lease.core.exceptions import StateIOError
from core_lease.lease.models import LeaseState
from core_lease.lease.store import LeaseStore


@pytest.fixture
def store(tmp_path):
    return LeaseStore(tmp_path / "allocation.json", tmp_path / "owners.json")


class TestLoad:
    def test_missing_files_load_as_empty(self, store):
        state = store.load_state()
        assert state.leased == set()
        assert state.owners == {}

    def test_empty_files_load_as_empty(self, store):
        store.lease_path.write_text("")
        store.owner_path.write_text("\n")
        assert store.load_state() == LeaseState()

    def test_malformed_json_raises(self, store):
        store.lease_path.write_text("{not json")
        with pytest.raises(StateIOError) as exc_info:
            store.load_state()
        assert exc_info.value.path == str(store.lease_path)

    def test_wrong_shapes_raise(self, store):
        store.lease_path.write_text(json.dumps({"version": 1, "leased": "0,1"}))
        with pytest.raises(StateIOError, match="not a list"):
            store.load_state()

    def test_bad_core_index_raises(self, store):
        store.owner_path.write_text(json.dumps({"version": 1, "owners": {"a": [-1]}}))
        with pytest.raises(StateIOError, match="bad core index"):
            store.load_state()

    def test_top_level_must_be_object(self, store):
        store.owner_path.write_text("[]")
        with pytest.raises(StateIOError):
            store.load_state()


class TestSave:
    def test_round_trip_and_file_format(self, store):
        state = LeaseState(leased={4, 0, 1}, owners={"s2": [4], "s1": [0, 1]})
        store.save_state(state)

        assert store.load_state() == state
        lease_doc = json.loads(store.lease_path.read_text())
        owner_doc = json.loads(store.owner_path.read_text())
        assert lease_doc == {"version": 1, "leased": [0, 1, 4]}
        assert owner_doc == {"version": 1, "owners": {"s1": [0, 1], "s2": [4]}}

    def test_files_are_shared_with_other_users(self, store):
        store.save_state(LeaseState(leased={0}, owners={"a": [0]}))
        assert store.lease_path.stat().st_mode & 0o666 == 0o666
        assert store.owner_path.stat().st_mode & 0o666 == 0o666

    def test_no_temp_files_left_behind(self, store, tmp_path):
        store.save_state(LeaseState(leased={0}, owners={"a": [0]}))
        assert sorted(p.name for p in tmp_path.iterdir()) == ["allocation.json", "owners.json"]

    def test_growing_save_writes_lease_record_first(self, store):
        written = []
        with patch.object(store, "_write_json", side_effect=lambda path, payload: written.append(path.name)):
            store.save_state(LeaseState(leased={0}, owners={"a": [0]}))
        assert written == ["allocation.json", "owners.json"]

    def test_shrinking_save_writes_owner_registry_first(self, store):
        written = []
        with patch.object(store, "_write_json", side_effect=lambda path, payload: written.append(path.name)):
            store.save_state(LeaseState(), shrinking=True)
        assert written == ["owners.json", "allocation.json"]

    def test_interrupted_growing_save_only_leaks(self, store):
        original = store._write_json

        def _fail_on_owner(path, payload):
            if path == store.owner_path:
                raise StateIOError("Cannot write lease state", path=str(path))
            original(path, payload)

        with patch.object(store, "_write_json", side_effect=_fail_on_owner):
            with pytest.raises(StateIOError):
                store.save_state(LeaseState(leased={2}, owners={"a": [2]}))

        state = store.load_state()
        # Core 2 is leased but unowned: unavailable, never double-granted
        assert state.leased == {2}
        assert state.owners == {}

    def test_write_failure_raises_state_io_error(self, store):
        with patch("core_lease.lease.store.os.replace", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(StateIOError, match="Cannot write lease state"):
                store.save_state(LeaseState(leased={0}, owners={"a": [0]}))
        assert not store.lease_path.exists()
        assert [p for p in store.lease_path.parent.iterdir() if p.name.endswith(".tmp")] == []

    def test_creates_missing_state_directory(self, tmp_path):
        nested = tmp_path / "var" / "core_lease"
        store = LeaseStore(nested / "allocation.json", nested / "owners.json")
        store.save_state(LeaseState(leased={0}, owners={"a": [0]}))
        assert store.peek().leased == {0}
