"""
Planning Components for envstack

This package contains the dependency graph resolver and the planner that
diffs a composition against its applied state.
"""

from .graph import DependencyGraph, GraphNode, build_graph
from .planner import PlanEntry, ResolvedPlan, Resolver, destroy_order, plan, plan_destroy

__all__ = [
    "DependencyGraph",
    "GraphNode",
    "build_graph",
    "PlanEntry",
    "ResolvedPlan",
    "Resolver",
    "destroy_order",
    "plan",
    "plan_destroy",
]
