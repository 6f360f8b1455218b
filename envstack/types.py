"""
Core Type Definitions for envstack

This module defines the fundamental data types shared by modules,
compositions, the planner and the executor: typed parameters, resource
specifications, plan actions and composition lifecycle states.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple

EnvironmentName = str


class _NoDefault:
    """Sentinel type for parameters without a default value."""

    def __repr__(self) -> str:
        return "NO_DEFAULT"

    def __deepcopy__(self, memo):
        return self


NO_DEFAULT = _NoDefault()


class ParameterType(str, Enum):
    """Types a parameter value may take."""

    STRING = "string"
    NUMBER = "number"
    LIST_OF_STRING = "list(string)"

    def accepts(self, value: Any) -> bool:
        """Check whether a literal value matches this type."""
        if self is ParameterType.STRING:
            return isinstance(value, str)
        if self is ParameterType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


@dataclass(frozen=True)
class Parameter:
    """A named, typed input with an optional default."""

    name: str
    type: ParameterType = ParameterType.STRING
    default: Any = NO_DEFAULT
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("Parameter name cannot be empty")

        if self.has_default and not self.type.accepts(self.default):
            raise ValueError(
                f"Default for '{self.name}' does not match type {self.type.value}"
            )

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def default_value(self) -> Any:
        """Return a private copy of the default value."""
        return copy.deepcopy(self.default)


class ResourceType(str, Enum):
    """Kinds of infrastructure resources a module can declare."""

    NETWORK = "network"
    SUBNET = "subnet"
    GATEWAY = "gateway"
    ROUTE_TABLE = "route-table"
    ROUTE_TABLE_ASSOCIATION = "route-table-association"
    IAM_ROLE = "iam-role"
    IAM_POLICY_ATTACHMENT = "iam-policy-attachment"
    SECURITY_GROUP = "security-group"
    MANAGED_CLUSTER = "managed-cluster"
    NODE_POOL = "node-pool"
    IMAGE_REPOSITORY = "image-repository"


@dataclass(frozen=True)
class ResourceSpec:
    """A single declared resource within a module instance.

    ``attributes`` may contain literals or reference objects from
    :mod:`envstack.expressions`. ``depends_on`` lists addresses of other
    resources in the same instance that must be reconciled first.
    """

    address: str
    type: ResourceType
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.address:
            raise ValueError("Resource address cannot be empty")

        if self.address in self.depends_on:
            raise ValueError(f"Resource {self.address} cannot depend on itself")

    def with_attributes(self, attributes: Dict[str, Any]) -> "ResourceSpec":
        """Return a copy with ``attributes`` replaced."""
        return ResourceSpec(
            address=self.address,
            type=self.type,
            attributes=attributes,
            depends_on=self.depends_on,
        )


class PlanAction(str, Enum):
    """Diff tag attached to each plan entry."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    DESTROY = "destroy"


class CompositionStatus(str, Enum):
    """Lifecycle of a composition within one engine."""

    UNPLANNED = "unplanned"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"


# Allowed lifecycle transitions, keyed by current status.
STATUS_TRANSITIONS: Dict[CompositionStatus, List[CompositionStatus]] = {
    CompositionStatus.UNPLANNED: [CompositionStatus.PLANNED],
    CompositionStatus.PLANNED: [CompositionStatus.PLANNED, CompositionStatus.APPLYING],
    CompositionStatus.APPLYING: [CompositionStatus.APPLIED, CompositionStatus.FAILED],
    CompositionStatus.APPLIED: [CompositionStatus.PLANNED],
    CompositionStatus.FAILED: [CompositionStatus.PLANNED],
}


class NodeStatus(str, Enum):
    """Outcome of a single plan entry during apply."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
