"""
Plan computation for envstack.

Planning is a pure function of a composition and the last applied state: it
resolves each resource's desired attributes from the values recorded in
state, compares them with what was applied, and tags the resource
``create``, ``update``, ``noop`` or ``destroy``. Nothing is written and no
backend is called.
"""

import copy
import heapq
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..composition import Composition
from ..expressions import UNKNOWN, InputRef, OutputRef, ResourceRef, transform
from ..logging import get_logger
from ..modules.base import ModuleInstance
from ..state import AppliedState, ResourceRecord
from ..types import EnvironmentName, PlanAction, ResourceSpec
from .graph import DependencyGraph, build_graph

logger = get_logger(__name__)

# Looks up the values a resource exposes, by qualified address. None means
# the resource has not been applied yet.
OutputLookup = Callable[[str], Optional[Mapping[str, Any]]]


class Resolver:
    """Resolves references in a composition against applied resource values."""

    def __init__(self, composition: Composition, lookup: OutputLookup):
        self.composition = composition
        self.lookup = lookup

    def attributes(self, instance: ModuleInstance, spec: ResourceSpec) -> Dict[str, Any]:
        """Desired attributes of ``spec`` with every reference resolved or UNKNOWN."""
        return transform(spec.attributes, lambda ref: self._resolve(instance, ref))

    def output(self, ref: OutputRef) -> Any:
        """Value of an instance output, or UNKNOWN until its resources are applied."""
        instance = self.composition.instance(ref.instance)
        expr = instance.outputs()[ref.output]
        return transform(expr, lambda inner: self._resolve(instance, inner))

    def export(self, name: str) -> Any:
        return self.composition.export(name, self.output)

    def _resolve(self, instance: ModuleInstance, ref) -> Any:
        if isinstance(ref, ResourceRef):
            values = self.lookup(instance.qualify(ref.address))
            if values is None or ref.attribute not in values:
                return UNKNOWN
            return copy.deepcopy(values[ref.attribute])

        if isinstance(ref, InputRef):
            source = instance.inputs[ref.name]
            if isinstance(source, OutputRef):
                return self.output(source)
            return copy.deepcopy(source)

        return self.output(ref)


@dataclass
class PlanEntry:
    """One resource and what apply will do to it."""

    address: str
    action: PlanAction
    resource_type: str
    instance: str
    desired: Optional[Dict[str, Any]] = None
    current: Optional[Dict[str, Any]] = None
    dependencies: List[str] = field(default_factory=list)
    position: int = 0

    @property
    def changed_attributes(self) -> List[str]:
        """Top-level attribute names whose value differs from state."""
        desired = self.desired or {}
        current = self.current or {}
        return sorted(k for k in set(desired) | set(current) if desired.get(k) != current.get(k))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "action": self.action.value,
            "type": self.resource_type,
            "instance": self.instance,
            "changed": self.changed_attributes if self.action is PlanAction.UPDATE else [],
            "dependencies": list(self.dependencies),
        }


@dataclass
class ResolvedPlan:
    """Ordered, diff-tagged resource list for one environment."""

    environment: EnvironmentName
    entries: List[PlanEntry]
    composition: Optional[Composition] = None
    graph: Optional[DependencyGraph] = None
    base_serial: int = 0
    warnings: List[Any] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_destroy(self) -> bool:
        return self.composition is None

    def entry(self, address: str) -> PlanEntry:
        for entry in self.entries:
            if entry.address == address:
                return entry
        raise KeyError(address)

    def actionable(self) -> List[PlanEntry]:
        """Entries apply has to execute."""
        return [e for e in self.entries if e.action is not PlanAction.NOOP]

    def addresses(self, action: Optional[PlanAction] = None) -> List[str]:
        return [e.address for e in self.entries if action is None or e.action is action]

    @property
    def has_changes(self) -> bool:
        return bool(self.actionable())

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in PlanAction}
        for entry in self.entries:
            counts[entry.action.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "base_serial": self.base_serial,
            "summary": self.summary(),
            "entries": [e.to_dict() for e in self.entries],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def plan(
    composition: Composition,
    state: Optional[AppliedState] = None,
    graph: Optional[DependencyGraph] = None,
) -> ResolvedPlan:
    """
    Diff ``composition`` against ``state``.

    Forward entries (create, update, noop) come first in dependency order;
    destroy entries for resources no longer declared follow in reverse
    dependency order.

    Raises:
        CyclicDependency: If the composition's graph has a cycle
    """
    graph = graph or build_graph(composition)
    order = graph.resource_order()
    records = state.resources if state else {}

    # Values of resources that exist in state, overlaid with their desired
    # attributes so dependents see pending changes.
    known: Dict[str, Dict[str, Any]] = {}
    resolver = Resolver(composition, known.get)

    entries: List[PlanEntry] = []
    for position, address in enumerate(order):
        node = graph.nodes[address]
        desired = resolver.attributes(node.instance, node.spec)
        record = records.get(address)

        if record is None:
            action = PlanAction.CREATE
        elif record.type == node.spec.type.value and desired == record.attributes:
            action = PlanAction.NOOP
        else:
            action = PlanAction.UPDATE

        if record is not None:
            values = copy.deepcopy(record.outputs)
            values.update({k: v for k, v in desired.items() if k in values})
            known[address] = values

        entries.append(
            PlanEntry(
                address=address,
                action=action,
                resource_type=node.spec.type.value,
                instance=node.instance.name,
                desired=desired,
                current=copy.deepcopy(record.attributes) if record else None,
                dependencies=graph.resource_dependencies(address),
                position=position,
            )
        )

    declared = set(order)
    entries.extend(_destroy_entries([r for a, r in records.items() if a not in declared]))

    resolved = ResolvedPlan(
        environment=composition.name,
        entries=entries,
        composition=composition,
        graph=graph,
        base_serial=state.serial if state else 0,
    )
    logger.info("Plan computed", environment=composition.name, **resolved.summary())
    return resolved


def plan_destroy(environment: EnvironmentName, state: Optional[AppliedState]) -> ResolvedPlan:
    """Plan the removal of every resource recorded for ``environment``."""
    records = state.ordered_records() if state else []
    resolved = ResolvedPlan(
        environment=environment,
        entries=_destroy_entries(records),
        base_serial=state.serial if state else 0,
    )
    logger.info("Destroy plan computed", environment=environment, destroy=len(records))
    return resolved


def destroy_order(records: List[ResourceRecord]) -> List[str]:
    """Addresses of ``records`` ordered so dependents are removed first.

    This is the reverse of the order the records were created in: a
    topological sort over recorded dependencies with ties broken by the
    recorded create position.
    """
    by_address = {r.address: r for r in records}
    dependents: Dict[str, List[str]] = {a: [] for a in by_address}
    in_degree = {a: 0 for a in by_address}

    for record in records:
        for dep in record.dependencies:
            if dep in by_address:
                dependents[dep].append(record.address)
                in_degree[record.address] += 1

    ready = [(by_address[a].position, a) for a, d in in_degree.items() if d == 0]
    heapq.heapify(ready)

    create_order = []
    while ready:
        _, address = heapq.heappop(ready)
        create_order.append(address)
        for dependent in dependents[address]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (by_address[dependent].position, dependent))

    # Recorded dependencies are acyclic unless the file was edited by hand;
    # anything left over is removed last, in position order.
    created = set(create_order)
    leftover = sorted(
        (a for a in by_address if a not in created),
        key=lambda a: (by_address[a].position, a),
    )
    return list(reversed(create_order)) + leftover


def _destroy_entries(records: List[ResourceRecord]) -> List[PlanEntry]:
    by_address = {r.address: r for r in records}
    return [
        PlanEntry(
            address=address,
            action=PlanAction.DESTROY,
            resource_type=by_address[address].type,
            instance=by_address[address].instance,
            current=copy.deepcopy(by_address[address].attributes),
            dependencies=list(by_address[address].dependencies),
            position=by_address[address].position,
        )
        for address in destroy_order(records)
    ]
