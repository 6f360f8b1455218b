"""Tests for the plan executor."""

import threading
import time

import pytest

from envstack.backends import Backend, SimulatedBackend
from envstack.environments import build_environment
from envstack.errors import BackendError, PartialApplyFailure
from envstack.executors import PlanExecutor
from envstack.planning import plan, plan_destroy
from envstack.state import StateStore
from envstack.types import CompositionStatus, NodeStatus, PlanAction


class RecordingBackend(Backend):
    """Simulated backend that records call start/end events and peak concurrency."""

    name = "recording"

    def __init__(self, latency=0.01, broken=()):
        self.inner = SimulatedBackend()
        self.latency = latency
        self.broken = set(broken)
        self.events = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def _enter(self, address):
        with self._lock:
            self.events.append(("start", address))
            self.active += 1
            self.peak = max(self.peak, self.active)

    def _exit(self, address):
        with self._lock:
            self.events.append(("end", address))
            self.active -= 1

    def reconcile(self, spec, previous_attributes, context):
        self._enter(spec.address)
        try:
            time.sleep(self.latency)
            if spec.address in self.broken:
                raise RuntimeError("connection reset")
            return self.inner.reconcile(spec, previous_attributes, context)
        finally:
            self._exit(spec.address)

    def delete(self, spec, attributes, context):
        self._enter(spec.address)
        try:
            self.inner.delete(spec, attributes, context)
        finally:
            self._exit(spec.address)


class CountingStateStore(StateStore):
    def __init__(self, state_dir):
        super().__init__(state_dir)
        self.saves = 0

    def save(self, state):
        self.saves += 1
        return super().save(state)


@pytest.fixture
def composition(parameter_store):
    return build_environment("dev", parameter_store)


class TestPlanExecutor:
    def test_applies_every_entry(self, composition, state_store):
        result = PlanExecutor(SimulatedBackend(), state_store).execute(plan(composition), None)

        assert len(result.succeeded) == 15
        assert result.failed == []
        assert result.state.status is CompositionStatus.APPLIED
        assert result.outputs["eks_cluster_name"] == "dev-eks-cluster"
        assert state_store.load("dev").outputs == result.outputs

    def test_dependencies_finish_before_dependents_start(self, composition, state_store):
        backend = RecordingBackend()
        resolved = plan(composition)

        PlanExecutor(backend, state_store, max_parallelism=4).execute(resolved, None)

        index = {event: i for i, event in enumerate(backend.events)}
        for entry in resolved.entries:
            for dep in entry.dependencies:
                assert index[("end", dep)] < index[("start", entry.address)]

    def test_parallelism_is_bounded(self, composition, state_store):
        backend = RecordingBackend(latency=0.03)

        PlanExecutor(backend, state_store, max_parallelism=2).execute(plan(composition), None)

        assert 1 < backend.peak <= 2

    def test_one_state_write_per_node(self, composition, tmp_path):
        store = CountingStateStore(str(tmp_path / "counted"))

        PlanExecutor(SimulatedBackend(), store).execute(plan(composition), None)

        # Applying marker, one write per node, final status.
        assert store.saves == 1 + 15 + 1

    def test_progress_callback(self, composition, state_store):
        seen = []
        PlanExecutor(SimulatedBackend(), state_store, progress=seen.append).execute(plan(composition), None)

        assert len(seen) == 15
        assert all(node.status is NodeStatus.SUCCEEDED for node in seen)
        assert all(node.action is PlanAction.CREATE for node in seen)

    def test_plain_exceptions_become_backend_errors(self, composition, state_store):
        backend = RecordingBackend(broken={"ecr.aws_ecr_repository.main"})

        with pytest.raises(PartialApplyFailure) as exc_info:
            PlanExecutor(backend, state_store).execute(plan(composition), None)

        error = exc_info.value.failed["ecr.aws_ecr_repository.main"]
        assert isinstance(error, BackendError)
        assert error.details["error_type"] == "RuntimeError"
        assert "connection reset" in str(error)

    def test_failure_stops_scheduling(self, composition, state_store):
        backend = RecordingBackend(broken={"vpc.aws_vpc.main"})

        with pytest.raises(PartialApplyFailure) as exc_info:
            PlanExecutor(backend, state_store, max_parallelism=1).execute(plan(composition), None)

        assert exc_info.value.succeeded == []
        assert list(exc_info.value.failed) == ["vpc.aws_vpc.main"]
        assert len(exc_info.value.skipped) == 14

        state = state_store.load("dev")
        assert state.status is CompositionStatus.FAILED
        assert state.last_error["kind"] == "BackendError"

    def test_destroy_removes_state_file(self, composition, state_store):
        backend = SimulatedBackend()
        applied = PlanExecutor(backend, state_store).execute(plan(composition), None).state

        result = PlanExecutor(backend, state_store).execute(plan_destroy("dev", applied), applied)

        assert len(result.succeeded) == 15
        assert result.state is None
        assert state_store.load("dev") is None

    def test_noop_plan_writes_nothing(self, composition, tmp_path):
        store = CountingStateStore(str(tmp_path / "counted"))
        backend = SimulatedBackend()
        applied = PlanExecutor(backend, store).execute(plan(composition), None).state
        saves = store.saves

        result = PlanExecutor(backend, store).execute(plan(composition, applied), applied)

        assert result.succeeded == []
        assert store.saves == saves

    def test_defaults_come_from_config(self, state_store):
        executor = PlanExecutor(SimulatedBackend(), state_store)
        assert executor.max_parallelism == 4
        assert executor.node_timeout_seconds == 300.0

    def test_zero_parallelism_is_rejected(self, state_store):
        with pytest.raises(ValueError, match="max_parallelism must be at least 1"):
            PlanExecutor(SimulatedBackend(), state_store, max_parallelism=0)

    def test_zero_timeout_is_rejected(self, state_store):
        with pytest.raises(ValueError, match="node_timeout_seconds must be positive"):
            PlanExecutor(SimulatedBackend(), state_store, node_timeout_seconds=0)
