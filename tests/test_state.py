"""
State store and lifecycle tests.
"""
import json
import os
import threading

import pytest

from iamgraph.engine.lifecycle import OPERATION_APPLY, OPERATION_DESTROY, Lifecycle
from iamgraph.errors import InvalidTransitionError, StateError
from iamgraph.models.state import RemoteResourceState, ResourceStatus
from iamgraph.state.store import STATE_VERSION, JsonStateStore, MemoryStateStore


def _entry(name="ci", **kwargs):
    return RemoteResourceState("aws_iam_user", name, name, attributes={"name": name}, **kwargs)


class TestMemoryStateStore:
    def setup_method(self):
        self.store = MemoryStateStore()

    def test_put_and_get(self):
        self.store.put(_entry())
        assert self.store.get("aws_iam_user.ci").remote_id == "ci"
        assert "aws_iam_user.ci" in self.store
        assert "aws_iam_user.other" not in self.store

    def test_update_returning_none_deletes(self):
        self.store.put(_entry())
        self.store.update("aws_iam_user.ci", lambda current: None)
        assert self.store.get("aws_iam_user.ci") is None

    def test_update_sees_current_entry(self):
        self.store.put(_entry())
        seen = []

        def bump(current):
            seen.append(current.remote_id)
            current.remote_id = "renamed"
            return current

        self.store.update("aws_iam_user.ci", bump)
        assert seen == ["ci"]
        assert self.store.get("aws_iam_user.ci").remote_id == "renamed"

    def test_concurrent_updates_are_serialised(self):
        self.store.put(_entry(outputs={"n": 0}))

        def increment(current):
            current.outputs["n"] += 1
            return current

        threads = [
            threading.Thread(target=lambda: [self.store.update("aws_iam_user.ci", increment) for _ in range(50)])
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert self.store.get("aws_iam_user.ci").outputs["n"] == 200

    def test_output_lookup(self):
        entry = _entry(outputs={"arn": "arn:aws:iam::123456789012:user/ci"})
        assert entry.output("id") == "ci"
        assert entry.output("arn") == "arn:aws:iam::123456789012:user/ci"
        assert entry.output("name") == "ci"
        assert entry.output("missing") is None


class TestJsonStateStore:
    def test_roundtrip(self, tmp_path):
        path = tmp_path / "state" / "state.json"
        store = JsonStateStore(str(path))
        store.put(_entry(outputs={"arn": "arn:x"}, dependencies=["aws_iam_policy.p"],
                         sensitive_attributes=["tags"]))

        reopened = JsonStateStore(str(path))
        entry = reopened.get("aws_iam_user.ci")
        assert entry.outputs == {"arn": "arn:x"}
        assert entry.dependencies == ["aws_iam_policy.p"]
        assert entry.sensitive_attributes == ["tags"]
        assert entry.status is ResourceStatus.CREATED

    def test_serial_increments(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        store.put(_entry("a"))
        store.put(_entry("b"))
        store.delete("aws_iam_user.a")
        doc = json.loads(path.read_text())
        assert doc["version"] == STATE_VERSION
        assert doc["serial"] == 3
        assert [r["name"] for r in doc["resources"]] == ["b"]
        assert JsonStateStore(str(path)).serial == 3

    def test_failed_write_leaves_memory_unchanged(self, tmp_path, monkeypatch):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        original = _entry()
        store.put(original)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            store.put(_entry(outputs={"arn": "arn:new"}))
        with pytest.raises(OSError):
            store.put(_entry("other"))
        with pytest.raises(OSError):
            store.delete("aws_iam_user.ci")

        assert store.get("aws_iam_user.ci") is original
        assert store.addresses() == ["aws_iam_user.ci"]
        assert store.serial == 1
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_no_temp_files_left(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "state.json"))
        store.put(_entry())
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonStateStore(str(tmp_path / "nope.json"))
        assert store.entries() == []
        assert not (tmp_path / "nope.json").exists()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateError):
            JsonStateStore(str(path))

    def test_wrong_version(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99, "serial": 1, "resources": []}))
        with pytest.raises(StateError, match="version"):
            JsonStateStore(str(path))

    def test_bad_entry(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": STATE_VERSION, "serial": 1, "resources": [{"kind": "x"}]}))
        with pytest.raises(StateError):
            JsonStateStore(str(path))


class TestLifecycle:
    def setup_method(self):
        self.lc = Lifecycle()

    def test_full_lifecycle(self):
        addr = "aws_iam_user.ci"
        for status in (ResourceStatus.PENDING, ResourceStatus.CREATED, ResourceStatus.PENDING,
                       ResourceStatus.UPDATED, ResourceStatus.DESTROYING, ResourceStatus.ABSENT):
            self.lc.transition(addr, status)
        assert self.lc.history(addr) == [
            ResourceStatus.ABSENT, ResourceStatus.PENDING, ResourceStatus.CREATED,
            ResourceStatus.PENDING, ResourceStatus.UPDATED, ResourceStatus.DESTROYING,
            ResourceStatus.ABSENT,
        ]

    def test_unknown_address_is_absent(self):
        assert self.lc.status("aws_iam_user.nobody") is ResourceStatus.ABSENT

    @pytest.mark.parametrize("start,target", [
        (ResourceStatus.ABSENT, ResourceStatus.CREATED),
        (ResourceStatus.ABSENT, ResourceStatus.DESTROYING),
        (ResourceStatus.CREATED, ResourceStatus.ABSENT),
        (ResourceStatus.PENDING, ResourceStatus.DESTROYING),
        (ResourceStatus.DESTROYING, ResourceStatus.PENDING),
        (ResourceStatus.FAILED, ResourceStatus.PENDING),
    ])
    def test_illegal_transitions(self, start, target):
        self.lc.seed("r", start)
        with pytest.raises(InvalidTransitionError):
            self.lc.transition("r", target)

    def test_retry_same_operation(self):
        self.lc.seed("r", ResourceStatus.CREATED)
        self.lc.transition("r", ResourceStatus.DESTROYING)
        self.lc.fail("r", OPERATION_DESTROY)
        assert self.lc.failed_operation("r") == OPERATION_DESTROY

        self.lc.retry("r", OPERATION_DESTROY, ResourceStatus.CREATED)
        assert self.lc.status("r") is ResourceStatus.CREATED
        assert self.lc.failed_operation("r") is None

    def test_retry_other_operation_rejected(self):
        self.lc.transition("r", ResourceStatus.PENDING)
        self.lc.fail("r", OPERATION_APPLY)
        with pytest.raises(InvalidTransitionError):
            self.lc.retry("r", OPERATION_DESTROY, ResourceStatus.ABSENT)
        assert self.lc.status("r") is ResourceStatus.FAILED

    def test_retry_requires_failure(self):
        self.lc.seed("r", ResourceStatus.CREATED)
        with pytest.raises(InvalidTransitionError):
            self.lc.retry("r", OPERATION_APPLY, ResourceStatus.CREATED)
