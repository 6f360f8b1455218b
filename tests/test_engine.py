"""End-to-end tests: plan and apply the built-in environments on the simulated backend."""

import ipaddress

import pytest

from envstack.backends import FaultInjectingBackend, SimulatedBackend
from envstack.config import EnvStackConfig, ExecutionConfig, PolicyConfig, StateConfig
from envstack.engine import Engine
from envstack.environments import default_parameter_store
from envstack.errors import (
    BackendTimeout,
    InvalidTransition,
    PartialApplyFailure,
    PolicyViolation,
    StateError,
    UnknownEnvironment,
    UnknownOutput,
)
from envstack.executors import ApplyResult
from envstack.policy import network_cidrs
from envstack.state import AppliedState
from envstack.types import CompositionStatus, PlanAction

NODE_POOL = "eks.aws_eks_node_group.main"
REPOSITORY = "ecr.aws_ecr_repository.main"
CLUSTER = "eks.aws_eks_cluster.main"
ORPHAN_SUBNET = "vpc.aws_subnet.public[1]"
DEV_REPOSITORY_URL = "000000000000.dkr.ecr.us-east-1.amazonaws.com/dev-java-app"
RESOURCE_COUNT = 15


class TestIdempotentApply:
    def test_first_plan_creates_everything(self, engine):
        resolved = engine.plan("dev")
        assert len(resolved.entries) == RESOURCE_COUNT
        assert resolved.summary()["create"] == RESOURCE_COUNT

    def test_plan_after_apply_is_all_noop(self, engine):
        engine.apply("dev")

        resolved = engine.plan("dev")
        assert not resolved.has_changes
        assert all(entry.action is PlanAction.NOOP for entry in resolved.entries)

    def test_second_apply_calls_no_backend(self, engine, backend, state_store):
        engine.apply("dev")
        serial = state_store.load("dev").serial
        calls = len(backend.calls)

        result = engine.apply("dev")

        assert result.succeeded == []
        assert len(backend.calls) == calls
        assert state_store.load("dev").serial == serial

    def test_apply_records_every_resource(self, engine, state_store):
        engine.apply("dev")

        state = state_store.load("dev")
        assert state.status is CompositionStatus.APPLIED
        assert len(state.resources) == RESOURCE_COUNT
        assert engine.status("dev") is CompositionStatus.APPLIED

    def test_changed_parameter_updates_only_affected_resources(self, parameter_store, backend, state_store):
        Engine(parameters=parameter_store, backend=backend, state_store=state_store).apply("dev")

        resized = default_parameter_store()
        resized.set("dev", "node_count", 5)
        engine = Engine(parameters=resized, backend=backend, state_store=state_store)

        resolved = engine.plan("dev")
        assert [e.address for e in resolved.actionable()] == [NODE_POOL]
        assert resolved.entry(NODE_POOL).action is PlanAction.UPDATE
        assert resolved.entry(NODE_POOL).changed_attributes == ["scaling_config"]


class TestOutputs:
    def test_repository_url_is_exported(self, engine):
        engine.apply("dev")
        assert engine.output("dev", "ecr_repository_url") == DEV_REPOSITORY_URL

    def test_cluster_outputs(self, engine):
        engine.apply("dev")
        outputs = engine.outputs("dev")

        assert outputs["eks_cluster_name"] == "dev-eks-cluster"
        assert outputs["eks_cluster_endpoint"].startswith("https://")
        assert outputs["vpc_id"].startswith("vpc-")

    def test_output_before_apply(self, engine):
        with pytest.raises(UnknownOutput) as exc_info:
            engine.output("dev", "ecr_repository_url")
        assert exc_info.value.reason == "environment has not been applied"

    def test_output_not_exported(self, engine):
        with pytest.raises(UnknownOutput) as exc_info:
            engine.output("dev", "node_role_arn")
        assert exc_info.value.reason == "not exported"

    def test_unknown_environment(self, engine):
        with pytest.raises(UnknownEnvironment):
            engine.plan("qa")

    def test_handoff_image_reference(self, engine):
        engine.apply("dev")
        handoff = engine.handoff("dev", "feature/login", 42)

        assert handoff.cluster_name == "dev-eks-cluster"
        assert handoff.image == f"{DEV_REPOSITORY_URL}:feature-login-42"
        assert handoff.deploy_application == "java-app-dev"


class TestPartialFailure:
    def _failing_engine(self, parameter_store, state_store):
        inner = SimulatedBackend()
        backend = FaultInjectingBackend(inner)
        # The delay lets every independent node finish before the failure lands.
        backend.delay(NODE_POOL, 0.2)
        backend.fail(NODE_POOL, reason="capacity unavailable", times=1)
        return Engine(parameters=parameter_store, backend=backend, state_store=state_store), inner

    def test_node_pool_failure_keeps_completed_nodes(self, parameter_store, state_store):
        engine, _ = self._failing_engine(parameter_store, state_store)

        with pytest.raises(PartialApplyFailure) as exc_info:
            engine.apply("dev")

        error = exc_info.value
        assert list(error.failed) == [NODE_POOL]
        assert error.skipped == []
        assert len(error.succeeded) == RESOURCE_COUNT - 1
        assert error.first_failure.reason == "capacity unavailable"

        state = state_store.load("dev")
        assert state.status is CompositionStatus.FAILED
        assert NODE_POOL not in state.resources
        assert len(state.resources) == RESOURCE_COUNT - 1
        assert state.last_error["address"] == NODE_POOL
        assert engine.status("dev") is CompositionStatus.FAILED

    def test_retry_runs_only_the_failed_node(self, parameter_store, state_store):
        engine, inner = self._failing_engine(parameter_store, state_store)
        with pytest.raises(PartialApplyFailure):
            engine.apply("dev")

        retry = engine.plan("dev")
        assert [e.address for e in retry.actionable()] == [NODE_POOL]
        assert retry.entry(NODE_POOL).action is PlanAction.CREATE

        result = engine.apply_plan(retry)

        assert result.succeeded == [NODE_POOL]
        assert inner.addresses("reconcile").count(NODE_POOL) == 1
        assert state_store.load("dev").status is CompositionStatus.APPLIED
        assert engine.status("dev") is CompositionStatus.APPLIED

    def test_timeout_fails_the_slow_node(self, parameter_store, state_store, state_dir):
        backend = FaultInjectingBackend(SimulatedBackend())
        backend.delay(REPOSITORY, 1.0)
        config = EnvStackConfig(
            execution=ExecutionConfig(node_timeout_seconds=0.2),
            state=StateConfig(state_dir=state_dir),
        )
        engine = Engine(parameters=parameter_store, backend=backend, state_store=state_store, config=config)

        with pytest.raises(PartialApplyFailure) as exc_info:
            engine.apply("dev")

        assert list(exc_info.value.failed) == [REPOSITORY]
        assert isinstance(exc_info.value.failed[REPOSITORY], BackendTimeout)
        assert REPOSITORY not in state_store.load("dev").resources

    def test_apply_after_persisted_applying_is_treated_as_failed(self, engine, state_store):
        state_store.save(AppliedState(environment="dev", status=CompositionStatus.APPLYING))

        assert engine.status("dev") is CompositionStatus.FAILED
        engine.apply("dev")
        assert engine.status("dev") is CompositionStatus.APPLIED


class TestDestroy:
    def test_destroy_runs_in_reverse_create_order(self, parameter_store, backend, state_store, state_dir):
        config = EnvStackConfig(
            execution=ExecutionConfig(max_parallelism=1),
            state=StateConfig(state_dir=state_dir),
        )
        engine = Engine(parameters=parameter_store, backend=backend, state_store=state_store, config=config)
        engine.apply("dev")

        engine.destroy("dev")

        created = backend.addresses("reconcile", "dev")
        deleted = backend.addresses("delete", "dev")
        assert len(deleted) == RESOURCE_COUNT
        assert deleted == list(reversed(created))

    def _shrunk_engine(self, parameter_store, state_store):
        inner = SimulatedBackend()
        Engine(parameters=parameter_store, backend=inner, state_store=state_store).apply("dev")

        shrunk = default_parameter_store()
        shrunk.set("dev", "public_subnet_cidrs", ["10.0.1.0/24"])
        shrunk.set("dev", "availability_zones", ["us-east-1a"])
        backend = FaultInjectingBackend(inner)
        backend.delay(CLUSTER, 0.3)
        return Engine(parameters=shrunk, backend=backend, state_store=state_store), backend, inner

    def test_orphans_are_destroyed_after_surviving_resources_update(self, parameter_store, state_store):
        engine, _, inner = self._shrunk_engine(parameter_store, state_store)
        inner.calls.clear()

        resolved = engine.plan("dev")
        assert resolved.entry(ORPHAN_SUBNET).action is PlanAction.DESTROY
        engine.apply_plan(resolved)

        calls = [(op, address) for op, _, address in inner.calls]
        assert calls.index(("reconcile", CLUSTER)) < calls.index(("delete", ORPHAN_SUBNET))
        assert calls.index(("reconcile", NODE_POOL)) < calls.index(("delete", ORPHAN_SUBNET))
        assert state_store.load("dev").record(ORPHAN_SUBNET) is None

    def test_failed_update_skips_orphan_destroys(self, parameter_store, state_store):
        engine, backend, inner = self._shrunk_engine(parameter_store, state_store)
        backend.fail(CLUSTER, reason="update rejected", times=1)
        inner.calls.clear()

        with pytest.raises(PartialApplyFailure) as exc_info:
            engine.apply("dev")

        assert ORPHAN_SUBNET in exc_info.value.skipped
        assert inner.addresses("delete") == []
        assert state_store.load("dev").record(ORPHAN_SUBNET) is not None

    def test_destroy_removes_state(self, engine, state_store):
        engine.apply("dev")
        engine.destroy("dev")

        assert state_store.load("dev") is None
        assert not state_store.path_for("dev").exists()

    def test_destroy_of_unapplied_environment_is_empty(self, engine, backend):
        resolved = engine.destroy_plan("dev")
        assert resolved.entries == []

        engine.apply_plan(resolved)
        assert backend.calls == []

    def test_destroy_unknown_environment(self, engine):
        with pytest.raises(UnknownEnvironment):
            engine.destroy_plan("qa")


class TestEnvironments:
    @pytest.mark.parametrize("environment,node_count", [("dev", 2), ("stage", 3), ("prod", 4)])
    def test_node_pool_scaling(self, engine, environment, node_count):
        resolved = engine.plan(environment)
        scaling = resolved.entry(NODE_POOL).desired["scaling_config"]

        assert scaling == {"desired_size": node_count, "max_size": node_count + 2, "min_size": node_count}

    def test_network_ranges_do_not_overlap(self, engine):
        ranges = []
        for environment in engine.environments():
            ranges.extend(network_cidrs(engine.composition(environment)))

        assert len(ranges) == 3
        for i, first in enumerate(ranges):
            for second in ranges[i + 1:]:
                assert not first.overlaps(second)
        assert ipaddress.ip_network("10.1.0.0/16") in ranges

    def test_default_plan_flags_open_security_group(self, engine):
        resolved = engine.plan("dev")

        assert [w.rule for w in resolved.warnings] == ["open-security-group"]
        assert resolved.warnings[0].address == "eks.aws_security_group.eks"

    def test_apply_many(self, engine):
        results = engine.apply_many(["dev", "stage", "prod"])

        assert all(isinstance(result, ApplyResult) for result in results.values())
        assert engine.output("stage", "ecr_repository_url").endswith("/stage-java-app")
        assert engine.output("prod", "eks_cluster_name") == "prod-eks-cluster"

    def test_apply_many_returns_errors_in_place(self, engine):
        results = engine.apply_many(["dev", "qa"])

        assert isinstance(results["dev"], ApplyResult)
        assert isinstance(results["qa"], UnknownEnvironment)


class TestPolicyAndSafety:
    def _strict_config(self, state_dir):
        return EnvStackConfig(policy=PolicyConfig(strict=True), state=StateConfig(state_dir=state_dir))

    def test_strict_policy_rejects_open_ingress(self, parameter_store, backend, state_store, state_dir):
        engine = Engine(parameters=parameter_store, backend=backend, state_store=state_store,
                        config=self._strict_config(state_dir))

        with pytest.raises(PolicyViolation) as exc_info:
            engine.plan("dev")
        assert exc_info.value.warnings[0].rule == "open-security-group"

    def test_strict_policy_accepts_private_ingress(self, parameter_store, backend, state_store, state_dir):
        parameter_store.set("dev", "cluster_ingress_cidrs", ["10.0.0.0/16"])
        engine = Engine(parameters=parameter_store, backend=backend, state_store=state_store,
                        config=self._strict_config(state_dir))

        resolved = engine.plan("dev")
        assert resolved.warnings == []

    def test_stale_plan_is_rejected(self, engine):
        stale = engine.plan("dev")
        engine.apply("dev")

        with pytest.raises(StateError):
            engine.apply_plan(stale)

    def test_apply_without_plan_is_invalid(self, engine, parameter_store, backend, state_store):
        resolved = engine.plan("dev")
        other = Engine(parameters=parameter_store, backend=backend, state_store=state_store)

        with pytest.raises(InvalidTransition):
            other.apply_plan(resolved)
