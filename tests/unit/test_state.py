"""Tests for applied state persistence."""

import json

import pytest

from envstack.errors import StateError
from envstack.state import AppliedState, ResourceRecord, StateStore
from envstack.types import CompositionStatus


def make_state(environment="dev"):
    state = AppliedState(environment=environment, region="us-east-1")
    state.put(ResourceRecord(
        address="vpc.aws_vpc.main",
        type="network",
        instance="vpc",
        attributes={"cidr_block": "10.0.0.0/16"},
        outputs={"id": "vpc-0123", "cidr_block": "10.0.0.0/16"},
        position=0,
    ))
    state.put(ResourceRecord(
        address="vpc.aws_subnet.public[0]",
        type="subnet",
        instance="vpc",
        dependencies=["vpc.aws_vpc.main"],
        position=1,
    ))
    return state


class TestAppliedState:
    def test_records(self):
        state = make_state()
        assert state.record("vpc.aws_vpc.main").outputs["id"] == "vpc-0123"
        assert state.record("missing") is None
        assert not state.is_empty

    def test_remove(self):
        state = make_state()
        state.remove("vpc.aws_vpc.main")
        state.remove("vpc.aws_vpc.main")
        assert list(state.resources) == ["vpc.aws_subnet.public[0]"]

    def test_ordered_records(self):
        state = AppliedState(environment="dev")
        for address, position in (("c", 2), ("a", 0), ("b", 1)):
            state.put(ResourceRecord(address=address, type="gateway", instance="x", position=position))
        assert [r.address for r in state.ordered_records()] == ["a", "b", "c"]


class TestStateStore:
    def test_load_missing(self, state_store):
        assert state_store.load("dev") is None

    def test_save_and_load(self, state_store):
        state_store.save(make_state())

        loaded = state_store.load("dev")
        assert loaded.status is CompositionStatus.APPLIED
        assert loaded.region == "us-east-1"
        assert loaded.record("vpc.aws_subnet.public[0]").dependencies == ["vpc.aws_vpc.main"]
        assert loaded.record("vpc.aws_vpc.main").attributes == {"cidr_block": "10.0.0.0/16"}

    def test_save_bumps_serial(self, state_store):
        state = make_state()
        state_store.save(state)
        state_store.save(state)

        assert state.serial == 2
        assert state_store.load("dev").serial == 2

    def test_one_document_per_environment(self, state_store):
        state_store.save(make_state("dev"))
        state_store.save(make_state("prod"))

        assert state_store.environments() == ["dev", "prod"]
        assert state_store.path_for("prod").name == "prod.json"
        assert json.loads(state_store.path_for("prod").read_text())["environment"] == "prod"

    def test_no_temporary_files_left(self, state_store):
        state_store.save(make_state())
        assert [p.name for p in state_store.state_dir.iterdir()] == ["dev.json"]

    def test_corrupt_document(self, state_store):
        state_store.state_dir.mkdir(parents=True)
        state_store.path_for("dev").write_text("{not json")

        with pytest.raises(StateError) as exc_info:
            state_store.load("dev")
        assert exc_info.value.operation == "load"

    def test_invalid_document(self, state_store):
        state_store.state_dir.mkdir(parents=True)
        state_store.path_for("dev").write_text(json.dumps({"status": "applied"}))

        with pytest.raises(StateError):
            state_store.load("dev")

    def test_delete(self, state_store):
        state_store.save(make_state())

        assert state_store.delete("dev") is True
        assert state_store.delete("dev") is False
        assert state_store.environments() == []

    def test_environments_without_directory(self, tmp_path):
        assert StateStore(str(tmp_path / "nowhere")).environments() == []

    def test_lock_is_per_environment(self, state_store):
        assert state_store.lock("dev") is state_store.lock("dev")
        assert state_store.lock("dev") is not state_store.lock("prod")
