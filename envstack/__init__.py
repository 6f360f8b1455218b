"""
envstack - Declarative environment composition.

This package contains the building blocks for composing environment-scoped
infrastructure: a typed parameter store, the network, cluster and registry
modules, compositions that wire them together, the graph resolver and
planner, and the executor that applies plans through a provisioning backend.
"""

__version__ = "0.1.0"

from .composition import Binding, Composition, compose
from .config import EnvStackConfig, get_config
from .engine import Engine
from .errors import (
    BackendError,
    ConfigurationError,
    CyclicDependency,
    EnvStackError,
    PartialApplyFailure,
    PlanningError,
    UnknownEnvironment,
    UnknownOutput,
)
from .handoff import DeploymentHandoff, build_handoff
from .parameters import ParameterStore
from .planning import ResolvedPlan, plan, plan_destroy
from .types import CompositionStatus, Parameter, ParameterType, PlanAction, ResourceSpec, ResourceType

__all__ = [
    "Binding",
    "Composition",
    "compose",
    "EnvStackConfig",
    "get_config",
    "Engine",
    "EnvStackError",
    "ConfigurationError",
    "PlanningError",
    "CyclicDependency",
    "BackendError",
    "PartialApplyFailure",
    "UnknownEnvironment",
    "UnknownOutput",
    "DeploymentHandoff",
    "build_handoff",
    "ParameterStore",
    "ResolvedPlan",
    "plan",
    "plan_destroy",
    "CompositionStatus",
    "Parameter",
    "ParameterType",
    "PlanAction",
    "ResourceSpec",
    "ResourceType",
]
