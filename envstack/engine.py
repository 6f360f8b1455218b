"""
Engine

Ties the pieces together: builds compositions from the parameter store,
plans them against the state store, checks policy, applies plans through
the backend and drives each environment's lifecycle. The environment is an
explicit argument of every operation.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from . import policy
from .backends import Backend, create_backend
from .composition import Composition
from .config import EnvStackConfig, get_config
from .environments import build_environment
from .errors import (
    EnvStackError,
    InvalidTransition,
    PlanningError,
    PolicyViolation,
    StateError,
    UnknownEnvironment,
    UnknownOutput,
)
from .executors import ApplyResult, NodeResult, PlanExecutor
from .handoff import DeploymentHandoff, build_handoff
from .logging import get_logger, run_context
from .parameters import ParameterStore, load_parameter_store
from .planning import ResolvedPlan, build_graph, plan, plan_destroy
from .state import AppliedState, StateStore
from .types import STATUS_TRANSITIONS, CompositionStatus, EnvironmentName

logger = get_logger(__name__)


class Engine:
    """Plans and applies environment compositions."""

    def __init__(
        self,
        parameters: Optional[ParameterStore] = None,
        backend: Optional[Backend] = None,
        state_store: Optional[StateStore] = None,
        config: Optional[EnvStackConfig] = None,
        progress: Optional[Callable[[NodeResult], None]] = None,
    ):
        self.config = config or get_config()
        self.parameters = parameters or load_parameter_store(self.config.state.parameters_file)
        self.backend = backend or create_backend(self.config.backend)
        self.state_store = state_store or StateStore(self.config.state.state_dir)
        self.progress = progress

        self._compositions: Dict[EnvironmentName, Composition] = {}
        self._status: Dict[EnvironmentName, CompositionStatus] = {}
        self._lock = threading.RLock()

        logger.debug(
            "Engine initialized",
            backend=getattr(self.backend, "name", type(self.backend).__name__),
            state_dir=str(self.state_store.state_dir),
            environments=self.parameters.environments(),
        )

    def environments(self) -> List[EnvironmentName]:
        return self.parameters.environments()

    def composition(self, environment: EnvironmentName) -> Composition:
        """The composition of ``environment``, built on first use.

        The parameter store is sealed once the first composition is built.
        """
        with self._lock:
            composition = self._compositions.get(environment)
            if composition is None:
                composition = build_environment(environment, self.parameters)
                build_graph(composition).topological_order()
                self._compositions[environment] = composition
                self.parameters.seal()
            return composition

    def status(self, environment: EnvironmentName) -> CompositionStatus:
        """Lifecycle status of ``environment`` as seen by this engine."""
        with self._lock:
            if environment in self._status:
                return self._status[environment]

        state = self.state_store.load(environment)
        if state is None:
            return CompositionStatus.UNPLANNED
        if state.status is CompositionStatus.APPLYING:
            # An apply that never finished.
            return CompositionStatus.FAILED
        return state.status

    def _transition(self, environment: EnvironmentName, requested: CompositionStatus) -> None:
        with self._lock:
            current = self.status(environment)
            if requested not in STATUS_TRANSITIONS[current]:
                raise InvalidTransition(environment, current.value, requested.value)
            self._status[environment] = requested
            logger.debug(
                "Status changed", environment=environment, current=current.value, status=requested.value
            )

    def plan(self, environment: EnvironmentName) -> ResolvedPlan:
        """
        Plan ``environment`` against its applied state.

        Raises:
            UnknownEnvironment: If the environment has no parameters
            PlanningError: For any validation failure, before any backend call
            PolicyViolation: If policy is strict and the plan has warnings
        """
        with run_context(environment):
            composition = self.composition(environment)
            state = self.state_store.load(environment)
            resolved = plan(composition, state)

            policy.evaluate(resolved, self.config.policy, self._other_compositions(environment))
            if resolved.warnings and self.config.policy.strict:
                raise PolicyViolation(resolved.warnings, environment=environment)

            self._transition(environment, CompositionStatus.PLANNED)
            return resolved

    def destroy_plan(self, environment: EnvironmentName) -> ResolvedPlan:
        """Plan the removal of everything recorded for ``environment``."""
        with run_context(environment):
            state = self.state_store.load(environment)
            if state is None and not self.parameters.has_environment(environment):
                raise UnknownEnvironment(environment, self.environments())

            resolved = plan_destroy(environment, state)
            self._transition(environment, CompositionStatus.PLANNED)
            return resolved

    def apply_plan(self, resolved: ResolvedPlan) -> ApplyResult:
        """
        Apply a plan produced by :meth:`plan` or :meth:`destroy_plan`.

        Raises:
            StateError: If the state changed since the plan was computed
            InvalidTransition: If the environment is not in the planned state
            PartialApplyFailure: If any node failed
        """
        environment = resolved.environment
        with run_context(environment):
            state = self.state_store.load(environment)
            serial = state.serial if state else 0
            if serial != resolved.base_serial:
                raise StateError(
                    str(self.state_store.path_for(environment)),
                    "apply",
                    "state changed since the plan was computed; plan again",
                    plan_serial=resolved.base_serial,
                    state_serial=serial,
                )

            self._transition(environment, CompositionStatus.APPLYING)

            executor = PlanExecutor(
                self.backend,
                self.state_store,
                max_parallelism=self.config.execution.max_parallelism,
                node_timeout_seconds=self.config.execution.node_timeout_seconds,
                progress=self.progress,
            )
            try:
                result = executor.execute(resolved, state)
            except Exception:
                self._transition(environment, CompositionStatus.FAILED)
                raise

            self._transition(environment, CompositionStatus.APPLIED)
            return result

    def apply(self, environment: EnvironmentName) -> ApplyResult:
        """Plan and apply ``environment``."""
        return self.apply_plan(self.plan(environment))

    def destroy(self, environment: EnvironmentName) -> ApplyResult:
        """Remove every resource recorded for ``environment``."""
        return self.apply_plan(self.destroy_plan(environment))

    def outputs(self, environment: EnvironmentName) -> Dict[str, Any]:
        """Exported values of the last successful apply."""
        self.composition(environment)
        state = self.state_store.load(environment)
        return dict(state.outputs) if state else {}

    def output(self, environment: EnvironmentName, name: str) -> Any:
        """
        One exported value of ``environment``.

        Raises:
            UnknownOutput: If ``name`` is not exported or has not been applied yet
        """
        composition = self.composition(environment)
        if name not in composition.exports:
            raise UnknownOutput(
                environment, name, "not exported", exports=", ".join(composition.exports)
            )

        state = self.state_store.load(environment)
        if state is None:
            raise UnknownOutput(environment, name, "environment has not been applied")
        if name not in state.outputs:
            raise UnknownOutput(environment, name, "known after apply")
        return state.outputs[name]

    def state(self, environment: EnvironmentName) -> Optional[AppliedState]:
        return self.state_store.load(environment)

    def handoff(self, environment: EnvironmentName, branch: str, build_number: int) -> DeploymentHandoff:
        """Deployment facts for a build of ``branch`` against ``environment``."""
        outputs = self.outputs(environment)
        app_name = self.parameters.get(environment, "app_name")
        return build_handoff(environment, outputs, branch, build_number, app_name=app_name)

    def plan_many(
        self, environments: Sequence[EnvironmentName]
    ) -> Dict[EnvironmentName, Union[ResolvedPlan, EnvStackError]]:
        """Plan several environments concurrently."""
        return self._run_many(self.plan, environments)

    def apply_many(
        self, environments: Sequence[EnvironmentName]
    ) -> Dict[EnvironmentName, Union[ApplyResult, EnvStackError]]:
        """Apply several independent environments concurrently.

        A failing environment does not stop the others; its error is
        returned in place of a result.
        """
        return self._run_many(self.apply, environments)

    def _run_many(self, operation, environments: Sequence[EnvironmentName]) -> Dict[str, Any]:
        workers = min(self.config.execution.max_concurrent_environments, max(len(environments), 1))
        results: Dict[str, Any] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="envstack-env") as pool:
            futures = {environment: pool.submit(operation, environment) for environment in environments}
            for environment, future in futures.items():
                try:
                    results[environment] = future.result()
                except EnvStackError as e:
                    logger.error(
                        "Environment failed", environment=environment, error_kind=e.kind, error=str(e)
                    )
                    results[environment] = e

        return results

    def _other_compositions(self, environment: EnvironmentName) -> List[Composition]:
        others = []
        for other in self.environments():
            if other == environment:
                continue
            try:
                others.append(self.composition(other))
            except PlanningError as e:
                logger.warning(
                    "Environment left out of cross-environment checks",
                    environment=other,
                    error_kind=e.kind,
                )
        return others
