"""
ThreadPool Plan Executor

This module applies a resolved plan on a thread pool. Nodes are scheduled as
soon as everything they depend on has completed, with at most
``max_parallelism`` backend calls in flight. Every node completion is
written to the state store before the next node is scheduled, so an
interrupted apply never loses work that the backend already did.
"""

import contextvars
import copy
import heapq
import time
from concurrent.futures import FIRST_COMPLETED, Future
from concurrent.futures import ThreadPoolExecutor as StdThreadPoolExecutor
from concurrent.futures import wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..backends.base import Backend, BackendContext
from ..config import get_config
from ..errors import (
    BackendError,
    BackendTimeout,
    EnvStackError,
    PartialApplyFailure,
    UnresolvedBinding,
)
from ..expressions import UNKNOWN, contains_unknown
from ..logging import get_logger
from ..planning.planner import PlanEntry, ResolvedPlan, Resolver
from ..state import AppliedState, ResourceRecord, StateStore
from ..types import CompositionStatus, NodeStatus, PlanAction, ResourceSpec, ResourceType

logger = get_logger(__name__)


@dataclass
class NodeResult:
    """Outcome of one plan entry."""

    address: str
    action: PlanAction
    status: NodeStatus
    error: Optional[EnvStackError] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is NodeStatus.SUCCEEDED


@dataclass
class ApplyResult:
    """Outcome of applying a plan."""

    environment: str
    results: Dict[str, NodeResult] = field(default_factory=dict)
    state: Optional[AppliedState] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    def _with_status(self, status: NodeStatus) -> List[str]:
        return [a for a, r in self.results.items() if r.status is status]

    @property
    def succeeded(self) -> List[str]:
        return self._with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(NodeStatus.SKIPPED)


@dataclass
class _Work:
    entry: PlanEntry
    spec: ResourceSpec
    record: Optional[ResourceRecord]
    started: float = 0.0
    deadline: float = 0.0


class PlanExecutor:
    """
    Dependency-driven plan executor.

    Features:
    - At most ``max_parallelism`` nodes in flight
    - Per-node deadline raising BackendTimeout for that node
    - Stops scheduling on the first failure and lets in-flight nodes finish
    - One atomic state write per completed node
    """

    def __init__(
        self,
        backend: Backend,
        store: StateStore,
        max_parallelism: Optional[int] = None,
        node_timeout_seconds: Optional[float] = None,
        progress: Optional[Callable[[NodeResult], None]] = None,
    ):
        """
        Initialize the plan executor.

        Args:
            backend: Backend every node is reconciled through
            store: Where state is written after each node
            max_parallelism: Maximum nodes in flight (from config if None)
            node_timeout_seconds: Per-node deadline (from config if None)
            progress: Called on the scheduling thread after each node finishes
        """
        config = get_config()

        self.backend = backend
        self.store = store
        self.max_parallelism = config.execution.max_parallelism if max_parallelism is None else max_parallelism
        self.node_timeout_seconds = (
            config.execution.node_timeout_seconds if node_timeout_seconds is None else node_timeout_seconds
        )
        self.progress = progress

        if self.max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")

        if self.node_timeout_seconds <= 0:
            raise ValueError("node_timeout_seconds must be positive")

    def execute(self, plan: ResolvedPlan, state: Optional[AppliedState]) -> ApplyResult:
        """
        Apply ``plan`` on top of ``state``.

        Returns:
            ApplyResult with the final state (None once a destroy empties it)

        Raises:
            PartialApplyFailure: If any node failed or timed out
        """
        environment = plan.environment
        region = plan.composition.region if plan.composition else (state.region if state else None)
        context = BackendContext(environment=environment, region=region)

        working = copy.deepcopy(state) if state else AppliedState(environment=environment, region=region)
        if region:
            working.region = region

        entries = plan.actionable()
        result = ApplyResult(environment=environment)
        resolver = Resolver(plan.composition, self._lookup(working)) if plan.composition else None

        if not entries:
            return self._finish(plan, working, state, resolver, result, changed=False)

        lock = self.store.lock(environment)
        with lock:
            working.status = CompositionStatus.APPLYING
            self.store.save(working)

        order = {entry.address: index for index, entry in enumerate(entries)}
        waiting, dependents = self._dependencies(entries)

        ready: List[Tuple[int, str]] = [(order[a], a) for a, deps in waiting.items() if not deps]
        heapq.heapify(ready)

        by_address = {entry.address: entry for entry in entries}
        in_flight: Dict[Future, _Work] = {}
        abandoned: List[Future] = []
        failures: Dict[str, EnvStackError] = {}

        logger.info(
            "Apply started",
            environment=environment,
            nodes=len(entries),
            max_parallelism=self.max_parallelism,
        )

        pool = StdThreadPoolExecutor(
            max_workers=self.max_parallelism, thread_name_prefix=f"envstack-{environment}"
        )
        try:
            while ready or in_flight:
                while ready and not failures and len(in_flight) < self.max_parallelism:
                    _, address = heapq.heappop(ready)
                    entry = by_address[address]

                    try:
                        work = self._prepare(entry, working, plan, resolver)
                    except EnvStackError as e:
                        self._record_failure(result, failures, entry, e, 0.0)
                        break

                    work.started = time.monotonic()
                    work.deadline = work.started + self.node_timeout_seconds
                    future = pool.submit(contextvars.copy_context().run, self._run, work, context)
                    in_flight[future] = work
                    logger.debug("Node started", address=address, action=entry.action.value)

                if not in_flight:
                    break

                timeout = max(0.0, min(w.deadline for w in in_flight.values()) - time.monotonic())
                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)

                for future in done:
                    work = in_flight.pop(future)
                    duration = time.monotonic() - work.started
                    try:
                        outcome = future.result()
                    except EnvStackError as e:
                        self._record_failure(result, failures, work.entry, e, duration)
                        continue
                    except Exception as e:
                        error = BackendError(work.entry.address, str(e), error_type=type(e).__name__)
                        self._record_failure(result, failures, work.entry, error, duration)
                        continue

                    with lock:
                        self._commit(working, work, outcome)
                        self.store.save(working)

                    self._record(result, NodeResult(
                        work.entry.address, work.entry.action, NodeStatus.SUCCEEDED,
                        duration_seconds=duration,
                    ))

                    for dependent in dependents.get(work.entry.address, ()):
                        waiting[dependent].discard(work.entry.address)
                        if not waiting[dependent]:
                            heapq.heappush(ready, (order[dependent], dependent))

                now = time.monotonic()
                for future, work in list(in_flight.items()):
                    if work.deadline <= now:
                        del in_flight[future]
                        future.cancel()
                        abandoned.append(future)
                        error = BackendTimeout(work.entry.address, self.node_timeout_seconds)
                        self._record_failure(result, failures, work.entry, error, now - work.started)
        finally:
            # Timed-out calls cannot be interrupted; leave their threads behind.
            pool.shutdown(wait=not abandoned, cancel_futures=True)

        for entry in entries:
            if entry.address not in result.results:
                self._record(result, NodeResult(entry.address, entry.action, NodeStatus.SKIPPED))

        if failures:
            with lock:
                working.status = CompositionStatus.FAILED
                first_address, first_error = next(iter(failures.items()))
                working.last_error = {
                    "address": first_address,
                    "kind": first_error.kind,
                    "message": str(first_error),
                }
                self.store.save(working)

            logger.error(
                "Apply failed",
                environment=environment,
                succeeded=len(result.succeeded),
                failed=list(failures),
                skipped=len(result.skipped),
            )
            raise PartialApplyFailure(environment, result.succeeded, failures, result.skipped)

        return self._finish(plan, working, state, resolver, result, changed=True)

    def _dependencies(self, entries: List[PlanEntry]) -> Tuple[Dict[str, Set[str]], Dict[str, List[str]]]:
        """Which scheduled nodes each node waits for, and the reverse mapping."""
        scheduled = {entry.address: entry for entry in entries}
        waiting: Dict[str, Set[str]] = {address: set() for address in scheduled}
        forward = [entry.address for entry in entries if entry.action is not PlanAction.DESTROY]

        for entry in entries:
            if entry.action is PlanAction.DESTROY:
                # Orphans go after the forward pass, so nothing surviving still references them.
                waiting[entry.address].update(forward)
                # A resource goes only after everything that depends on it is gone.
                for other in entries:
                    if other.action is PlanAction.DESTROY and entry.address in other.dependencies:
                        waiting[entry.address].add(other.address)
            else:
                for dep in entry.dependencies:
                    if dep in scheduled and scheduled[dep].action is not PlanAction.DESTROY:
                        waiting[entry.address].add(dep)

        dependents: Dict[str, List[str]] = {}
        for address, deps in waiting.items():
            for dep in deps:
                dependents.setdefault(dep, []).append(address)
        return waiting, dependents

    def _prepare(
        self, entry: PlanEntry, working: AppliedState, plan: ResolvedPlan, resolver: Optional[Resolver]
    ) -> _Work:
        record = working.record(entry.address)
        resource_type = ResourceType(entry.resource_type)

        if entry.action is PlanAction.DESTROY:
            spec = ResourceSpec(entry.address, resource_type, copy.deepcopy(record.attributes))
            return _Work(entry=entry, spec=spec, record=record)

        node = plan.graph.nodes[entry.address]
        attributes = resolver.attributes(node.instance, node.spec)
        if contains_unknown(attributes):
            raise UnresolvedBinding(
                working.environment, entry.address, "depends on values that were never produced"
            )
        return _Work(entry=entry, spec=ResourceSpec(entry.address, resource_type, attributes), record=record)

    def _run(self, work: _Work, context: BackendContext):
        entry = work.entry
        try:
            if entry.action is PlanAction.DESTROY:
                self.backend.delete(work.spec, work.record.backend_attributes, context)
                return None

            previous = work.record.backend_attributes if work.record else None
            return self.backend.reconcile(work.spec, previous, context)
        except EnvStackError:
            raise
        except Exception as e:
            raise BackendError(entry.address, str(e), error_type=type(e).__name__) from e

    @staticmethod
    def _commit(working: AppliedState, work: _Work, outcome) -> None:
        entry = work.entry
        if entry.action is PlanAction.DESTROY:
            working.remove(entry.address)
            return

        new_attributes, outputs = outcome
        working.put(
            ResourceRecord(
                address=entry.address,
                type=entry.resource_type,
                instance=entry.instance,
                attributes=work.spec.attributes,
                backend_attributes=new_attributes,
                outputs=outputs,
                dependencies=list(entry.dependencies),
                position=entry.position,
            )
        )

    def _finish(
        self,
        plan: ResolvedPlan,
        working: AppliedState,
        state: Optional[AppliedState],
        resolver: Optional[Resolver],
        result: ApplyResult,
        changed: bool,
    ) -> ApplyResult:
        environment = plan.environment

        if plan.is_destroy or working.is_empty:
            if working.is_empty:
                if state is not None or changed:
                    self.store.delete(environment)
                logger.info("Apply completed", environment=environment, resources=0)
                return result
            working.outputs = {}
        else:
            # Recorded order and dependencies follow the latest plan.
            for entry in plan.entries:
                record = working.record(entry.address)
                if record is not None and entry.action is not PlanAction.DESTROY:
                    record.position = entry.position
                    record.dependencies = list(entry.dependencies)

            working.outputs = {
                name: value
                for name, value in ((n, resolver.export(n)) for n in plan.composition.exports)
                if value is not UNKNOWN and not contains_unknown(value)
            }

        unchanged = (
            not changed
            and state is not None
            and state.status is CompositionStatus.APPLIED
            and state.outputs == working.outputs
            and all(
                state.resources[a].position == r.position
                and state.resources[a].dependencies == r.dependencies
                for a, r in working.resources.items()
            )
        )
        if not unchanged:
            working.status = CompositionStatus.APPLIED
            working.last_error = None
            with self.store.lock(environment):
                self.store.save(working)

        result.state = working
        result.outputs = dict(working.outputs)

        logger.info(
            "Apply completed",
            environment=environment,
            resources=len(working.resources),
            changed=len(result.succeeded),
        )
        return result

    @staticmethod
    def _lookup(working: AppliedState):
        def lookup(address: str):
            record = working.record(address)
            return record.outputs if record is not None else None

        return lookup

    def _record(self, result: ApplyResult, node: NodeResult) -> None:
        result.results[node.address] = node
        if self.progress is not None:
            self.progress(node)

    def _record_failure(self, result, failures, entry: PlanEntry, error: EnvStackError, duration) -> None:
        failures[entry.address] = error
        logger.error(
            "Node failed",
            address=entry.address,
            action=entry.action.value,
            error_kind=error.kind,
            error=str(error),
        )
        self._record(result, NodeResult(entry.address, entry.action, NodeStatus.FAILED, error, duration))
