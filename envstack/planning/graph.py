"""
Dependency Graph for envstack

This module builds the directed acyclic graph a composition is applied in.
Resource nodes come from module instances; synthetic ``input:``, ``output:``
and ``export:`` nodes carry cross-module bindings so that every edge of the
composition is visible to the ordering algorithms. An edge always points from
producer to consumer.
"""

import heapq
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set

from ..composition import Composition
from ..errors import CyclicDependency
from ..expressions import InputRef, OutputRef, ResourceRef, iter_refs
from ..logging import get_logger
from ..modules.base import ModuleInstance
from ..types import ResourceSpec

logger = get_logger(__name__)

RESOURCE = "resource"
INPUT = "input"
OUTPUT = "output"
EXPORT = "export"


@dataclass
class GraphNode:
    """A node in the dependency graph."""

    key: str
    kind: str
    index: int
    instance: Optional[ModuleInstance] = None
    spec: Optional[ResourceSpec] = None
    dependencies: Set[str] = field(default_factory=set)
    dependents: Set[str] = field(default_factory=set)

    @property
    def is_resource(self) -> bool:
        return self.kind == RESOURCE


class DependencyGraph:
    """Producer-before-consumer graph over resources and binding nodes."""

    def __init__(self, name: str = ""):
        self.name = name
        self.nodes: Dict[str, GraphNode] = {}
        self._order: Optional[List[str]] = None

    def add_node(self, key: str, kind: str, **kwargs) -> GraphNode:
        if key in self.nodes:
            raise ValueError(f"Node {key} already exists in graph")

        node = GraphNode(key=key, kind=kind, index=len(self.nodes), **kwargs)
        self.nodes[key] = node
        self._order = None
        return node

    def add_edge(self, producer: str, consumer: str) -> None:
        """Record that ``producer`` must be resolved before ``consumer``."""
        for key in (producer, consumer):
            if key not in self.nodes:
                raise ValueError(f"Node {key} not found in graph")

        self.nodes[producer].dependents.add(consumer)
        self.nodes[consumer].dependencies.add(producer)
        self._order = None

    def topological_order(self) -> List[str]:
        """
        Nodes in dependency order.

        Kahn's algorithm; among ready nodes, the one declared first wins, so
        the order is reproducible for a given composition.

        Raises:
            CyclicDependency: Naming every node on one cycle, in edge order
        """
        if self._order is not None:
            return list(self._order)

        in_degree = {key: len(node.dependencies) for key, node in self.nodes.items()}
        ready = [(node.index, key) for key, node in self.nodes.items() if not node.dependencies]
        heapq.heapify(ready)

        result = []
        while ready:
            _, key = heapq.heappop(ready)
            result.append(key)

            for dependent in self.nodes[key].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (self.nodes[dependent].index, dependent))

        if len(result) != len(self.nodes):
            cycle = self.find_cycle()
            logger.error("Dependency cycle detected", graph=self.name, cycle=cycle)
            raise CyclicDependency(cycle, composition=self.name)

        self._order = result
        return list(result)

    def find_cycle(self) -> List[str]:
        """Return the nodes of one cycle, or an empty list if the graph is acyclic."""
        white, grey, black = 0, 1, 2
        color = {key: white for key in self.nodes}

        for root in self._by_index(self.nodes):
            if color[root] != white:
                continue

            path = [root]
            color[root] = grey
            stack = [iter(self._by_index(self.nodes[root].dependents))]

            while stack:
                child = next(stack[-1], None)
                if child is None:
                    stack.pop()
                    color[path.pop()] = black
                elif color[child] == grey:
                    # Back edge: the cycle is the path suffix starting at child.
                    return path[path.index(child):]
                elif color[child] == white:
                    color[child] = grey
                    path.append(child)
                    stack.append(iter(self._by_index(self.nodes[child].dependents)))

        return []

    def parallel_levels(self) -> List[List[str]]:
        """Group nodes by depth; nodes in one level do not depend on each other."""
        depth: Dict[str, int] = {}
        for key in self.topological_order():
            deps = self.nodes[key].dependencies
            depth[key] = 1 + max((depth[d] for d in deps), default=-1)

        levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for key in self.topological_order():
            levels[depth[key]].append(key)
        return levels

    def resource_order(self) -> List[str]:
        """Resource addresses only, in dependency order."""
        return [key for key in self.topological_order() if self.nodes[key].is_resource]

    def resource_dependencies(self, key: str) -> List[str]:
        """Resources ``key`` depends on, looking through binding nodes."""
        found: Set[str] = set()
        stack = list(self.nodes[key].dependencies)
        seen: Set[str] = set()

        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)

            node = self.nodes[current]
            if node.is_resource:
                found.add(current)
            else:
                stack.extend(node.dependencies)

        return self._by_index(found)

    def _by_index(self, keys) -> List[str]:
        return sorted(keys, key=lambda k: self.nodes[k].index)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, key: str) -> bool:
        return key in self.nodes

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self.nodes.values())


def input_key(instance: str, name: str) -> str:
    return f"input:{instance}.{name}"


def output_key(instance: str, name: str) -> str:
    return f"output:{instance}.{name}"


def export_key(name: str) -> str:
    return f"export:{name}"


def build_graph(composition: Composition) -> DependencyGraph:
    """Build the dependency graph of ``composition``."""
    graph = DependencyGraph(composition.name)

    for instance in composition.instances.values():
        for name in instance.bound_inputs():
            graph.add_node(input_key(instance.name, name), INPUT, instance=instance)
        for spec in instance.resources:
            graph.add_node(instance.qualify(spec.address), RESOURCE, instance=instance, spec=spec)
        for declaration in instance.definition.outputs:
            graph.add_node(output_key(instance.name, declaration.name), OUTPUT, instance=instance)

    for name in composition.exports:
        graph.add_node(export_key(name), EXPORT)

    for instance in composition.instances.values():
        bound = instance.bound_inputs()

        for name, source in bound.items():
            graph.add_edge(output_key(source.instance, source.output), input_key(instance.name, name))

        for spec in instance.resources:
            key = instance.qualify(spec.address)
            for dep in spec.depends_on:
                graph.add_edge(instance.qualify(dep), key)
            for producer in _producers(instance, spec.attributes, bound):
                graph.add_edge(producer, key)

        for output_name, expr in instance.outputs().items():
            for producer in _producers(instance, expr, bound):
                graph.add_edge(producer, output_key(instance.name, output_name))

    for name, ref in composition.exports.items():
        graph.add_edge(output_key(ref.instance, ref.output), export_key(name))

    logger.debug(
        "Dependency graph built",
        composition=composition.name,
        nodes=len(graph),
        resources=sum(1 for node in graph if node.is_resource),
    )
    return graph


def _producers(instance: ModuleInstance, value, bound: Dict[str, OutputRef]) -> Set[str]:
    producers = set()
    for ref in iter_refs(value):
        if isinstance(ref, ResourceRef):
            producers.add(instance.qualify(ref.address))
        elif isinstance(ref, InputRef) and ref.name in bound:
            producers.add(input_key(instance.name, ref.name))
    return producers
