"""Tests for the dependency graph."""

import pytest

from envstack.composition import Binding, compose
from envstack.environments import build_environment
from envstack.errors import CyclicDependency
from envstack.expressions import InputRef, OutputRef, ResourceRef
from envstack.modules import ModuleBody, ModuleDefinition, OutputDeclaration
from envstack.planning import DependencyGraph, build_graph, plan
from envstack.types import Parameter, ParameterType, ResourceSpec, ResourceType


def build_relay(name, inputs):
    return ModuleBody(
        resources=[
            ResourceSpec("thing.main", ResourceType.GATEWAY, {"source": InputRef("upstream")}),
        ],
        outputs={"id": ResourceRef("thing.main", "id")},
    )


RELAY = ModuleDefinition(
    kind="relay",
    inputs=(Parameter("upstream", ParameterType.STRING),),
    outputs=(OutputDeclaration("id", ParameterType.STRING),),
    builder=build_relay,
)


def looped_composition():
    return compose(
        "loop",
        {"a": RELAY, "b": RELAY},
        [
            Binding("a", "upstream", OutputRef("b", "id")),
            Binding("b", "upstream", OutputRef("a", "id")),
        ],
    )


@pytest.fixture
def dev_graph(parameter_store):
    return build_graph(build_environment("dev", parameter_store))


class TestDependencyGraph:
    def test_every_dependency_comes_first(self, dev_graph):
        order = dev_graph.topological_order()
        position = {key: i for i, key in enumerate(order)}

        assert len(order) == len(dev_graph)
        for node in dev_graph:
            for dep in node.dependencies:
                assert position[dep] < position[node.key]

    def test_order_is_reproducible(self, parameter_store):
        first = build_graph(build_environment("dev", parameter_store)).topological_order()
        second = build_graph(build_environment("dev", parameter_store)).topological_order()
        assert first == second

    def test_resource_order_starts_with_vpc(self, dev_graph):
        order = dev_graph.resource_order()
        assert order[0] == "vpc.aws_vpc.main"
        assert len(order) == 15
        assert order.index("eks.aws_eks_cluster.main") < order.index("eks.aws_eks_node_group.main")

    def test_cross_module_edges_go_through_binding_nodes(self, dev_graph):
        assert "output:vpc.vpc_id" in dev_graph.nodes["input:eks.vpc_id"].dependencies
        assert "input:eks.vpc_id" in dev_graph.nodes["eks.aws_security_group.eks"].dependencies
        assert "output:ecr.ecr_repository_url" in dev_graph.nodes["export:ecr_repository_url"].dependencies

    def test_resource_dependencies_look_through_bindings(self, dev_graph):
        deps = dev_graph.resource_dependencies("eks.aws_eks_cluster.main")
        assert set(deps) == {
            "vpc.aws_subnet.public[0]",
            "vpc.aws_subnet.public[1]",
            "eks.aws_iam_role.eks",
            "eks.aws_iam_role_policy_attachment.eks",
            "eks.aws_security_group.eks",
        }

    def test_parallel_levels(self, dev_graph):
        levels = dev_graph.parallel_levels()
        assert "vpc.aws_vpc.main" in levels[0]
        assert "ecr.aws_ecr_repository.main" in levels[0]
        for level in levels:
            for key in level:
                assert not dev_graph.nodes[key].dependencies & set(level)

    def test_duplicate_node(self):
        graph = DependencyGraph()
        graph.add_node("a", "resource")
        with pytest.raises(ValueError, match="already exists"):
            graph.add_node("a", "resource")

    def test_edge_to_unknown_node(self):
        graph = DependencyGraph()
        graph.add_node("a", "resource")
        with pytest.raises(ValueError, match="not found"):
            graph.add_edge("a", "b")


class TestCycles:
    def test_cycle_names_every_node(self):
        graph = build_graph(looped_composition())

        with pytest.raises(CyclicDependency) as exc_info:
            graph.topological_order()

        assert exc_info.value.cycle == [
            "input:a.upstream",
            "a.thing.main",
            "output:a.id",
            "input:b.upstream",
            "b.thing.main",
            "output:b.id",
        ]

    def test_plan_fails_on_cycle(self):
        with pytest.raises(CyclicDependency):
            plan(looped_composition())

    def test_find_cycle_on_acyclic_graph(self, dev_graph):
        assert dev_graph.find_cycle() == []

    def test_simple_cycle(self):
        graph = DependencyGraph("manual")
        for key in ("x", "y", "z"):
            graph.add_node(key, "resource")
        graph.add_edge("x", "y")
        graph.add_edge("y", "z")
        graph.add_edge("z", "x")

        assert graph.find_cycle() == ["x", "y", "z"]
