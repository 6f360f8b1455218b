"""
Error Definitions for envstack

This module defines the exception hierarchy used throughout envstack. Every
error carries a stable ``exit_code`` so that scripts driving the CLI can tell
failure kinds apart without parsing messages.
"""

from typing import Any, Dict, List, Optional, Sequence


class EnvStackError(Exception):
    """Base exception class for all envstack errors."""

    exit_code = 1

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Stable name of the failure kind, as printed by the CLI."""
        return type(self).__name__

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(EnvStackError):
    """Raised when configuration is invalid or inconsistent."""

    exit_code = 2

    def __init__(self, field: str, value: Any, expected: str, **details):
        message = f"Invalid configuration for {field}: got {value}, expected {expected}"

        super().__init__(message, {"field": field, "value": value, "expected": expected, **details})
        self.field = field
        self.value = value
        self.expected = expected


# Validation errors. These are raised while composing and planning, before any
# backend call is made.


class PlanningError(EnvStackError):
    """Base class for errors detected while building or planning a composition."""


class UndefinedParameter(PlanningError):
    """Raised when a parameter has neither an explicit value nor a default."""

    exit_code = 10

    def __init__(self, environment: str, name: str, **details):
        message = f"Parameter '{name}' is not defined for environment '{environment}'"

        super().__init__(message, {"environment": environment, "parameter": name, **details})
        self.environment = environment
        self.name = name


class MissingInput(PlanningError):
    """Raised when a module is instantiated without a declared input."""

    exit_code = 11

    def __init__(self, module: str, missing: Sequence[str], **details):
        missing = list(missing)
        message = f"Module '{module}' is missing inputs: {', '.join(missing)}"

        super().__init__(message, {"module": module, **details})
        self.module = module
        self.missing = missing


class TypeMismatch(PlanningError):
    """Raised when a value does not match the declared parameter type."""

    exit_code = 12

    def __init__(self, name: str, expected: str, value: Any, **details):
        message = f"Type mismatch for '{name}': expected {expected}, got {value!r}"

        super().__init__(message, details)
        self.name = name
        self.expected = expected
        self.value = value


class SubnetZoneMismatch(PlanningError):
    """Raised when subnet CIDRs and availability zones differ in length."""

    exit_code = 13

    def __init__(self, module: str, subnet_count: int, zone_count: int, **details):
        message = (
            f"Module '{module}' declares {subnet_count} public subnets "
            f"but {zone_count} availability zones"
        )

        super().__init__(
            message,
            {"module": module, "subnets": subnet_count, "zones": zone_count, **details},
        )
        self.module = module
        self.subnet_count = subnet_count
        self.zone_count = zone_count


class UnresolvedBinding(PlanningError):
    """Raised when a binding or export points at something that does not exist."""

    exit_code = 14

    def __init__(self, composition: str, reference: str, reason: str, **details):
        message = f"Unresolved binding in '{composition}': {reference} ({reason})"

        super().__init__(message, details)
        self.composition = composition
        self.reference = reference
        self.reason = reason


class DanglingInput(PlanningError):
    """Raised when a module input is left unbound in a composition."""

    exit_code = 15

    def __init__(self, composition: str, instance: str, inputs: Sequence[str], **details):
        inputs = list(inputs)
        message = (
            f"Composition '{composition}' leaves inputs of '{instance}' unbound: "
            f"{', '.join(inputs)}"
        )

        super().__init__(message, details)
        self.composition = composition
        self.instance = instance
        self.inputs = inputs


class CyclicDependency(PlanningError):
    """Raised when the dependency graph of a composition contains a cycle."""

    exit_code = 16

    def __init__(self, cycle: Sequence[str], **details):
        cycle = list(cycle)
        path = " -> ".join(cycle + cycle[:1])
        message = f"Cyclic dependency detected: {path}"

        super().__init__(message, details)
        self.cycle = cycle


class PolicyViolation(PlanningError):
    """Raised in strict mode when a plan carries policy warnings."""

    exit_code = 17

    def __init__(self, warnings: Sequence[Any], **details):
        warnings = list(warnings)
        rules = sorted({w.rule for w in warnings})
        message = f"Policy violations: {', '.join(rules)}"

        super().__init__(message, {"count": len(warnings), **details})
        self.warnings = warnings


# Execution errors. These are raised while applying a plan.


class BackendError(EnvStackError):
    """Raised when the provisioning backend fails to reconcile a resource."""

    exit_code = 20

    def __init__(self, address: str, reason: str, **details):
        message = f"Backend failed for {address}: {reason}"

        super().__init__(message, {"address": address, **details})
        self.address = address
        self.reason = reason


class BackendTimeout(BackendError):
    """Raised when a backend call exceeds the per-node timeout."""

    exit_code = 21

    def __init__(self, address: str, timeout_seconds: float, **details):
        super().__init__(
            address,
            f"exceeded {timeout_seconds}s timeout",
            timeout_seconds=timeout_seconds,
            **details,
        )
        self.timeout_seconds = timeout_seconds


class PartialApplyFailure(EnvStackError):
    """Terminal summary raised when any node of an apply failed."""

    exit_code = 22

    def __init__(
        self,
        environment: str,
        succeeded: List[str],
        failed: Dict[str, EnvStackError],
        skipped: List[str],
    ):
        message = (
            f"Apply of '{environment}' failed: {len(succeeded)} succeeded, "
            f"{len(failed)} failed, {len(skipped)} skipped"
        )

        super().__init__(message, {"failed_nodes": ", ".join(failed)})
        self.environment = environment
        self.succeeded = succeeded
        self.failed = failed
        self.skipped = skipped

    @property
    def first_failure(self) -> Optional[EnvStackError]:
        """The first recorded node failure, if any."""
        for error in self.failed.values():
            return error
        return None


class InvalidTransition(EnvStackError):
    """Raised when a composition is driven through an invalid state change."""

    exit_code = 23

    def __init__(self, environment: str, current: str, requested: str, **details):
        message = f"Composition '{environment}' cannot go from {current} to {requested}"

        super().__init__(message, details)
        self.environment = environment
        self.current = current
        self.requested = requested


class StateError(EnvStackError):
    """Raised when the applied state store cannot be read or written."""

    exit_code = 24

    def __init__(self, path: str, operation: str, reason: str, **details):
        message = f"State error during {operation} on {path}: {reason}"

        super().__init__(message, {"path": path, "operation": operation, **details})
        self.path = path
        self.operation = operation
        self.reason = reason


class UnknownEnvironment(EnvStackError):
    """Raised when an environment has no parameters configured."""

    exit_code = 30

    def __init__(self, environment: str, available: Sequence[str] = (), **details):
        message = f"Unknown environment '{environment}'"
        if available:
            message += f". Available: {', '.join(available)}"

        super().__init__(message, details)
        self.environment = environment


class UnknownOutput(EnvStackError):
    """Raised when an output is not exported or not yet applied."""

    exit_code = 31

    def __init__(self, environment: str, name: str, reason: str, **details):
        message = f"Output '{name}' of '{environment}' is unavailable: {reason}"

        super().__init__(message, details)
        self.environment = environment
        self.name = name
        self.reason = reason
