"""
Module Definitions for envstack

This package contains the reusable module templates (network, cluster and
registry) and the machinery that binds them to input values.
"""

from typing import Dict

from .base import (
    ModuleBody,
    ModuleDefinition,
    ModuleInstance,
    OutputDeclaration,
    instantiate,
)
from .cluster import CLUSTER
from .network import NETWORK
from .registry import REGISTRY

MODULE_DEFINITIONS: Dict[str, ModuleDefinition] = {
    definition.kind: definition for definition in (NETWORK, CLUSTER, REGISTRY)
}


def get_module_definition(kind: str) -> ModuleDefinition:
    """Look up a built-in module definition by kind."""
    try:
        return MODULE_DEFINITIONS[kind]
    except KeyError:
        raise KeyError(
            f"Unknown module kind '{kind}'. Available: {', '.join(MODULE_DEFINITIONS)}"
        ) from None


__all__ = [
    "ModuleBody",
    "ModuleDefinition",
    "ModuleInstance",
    "OutputDeclaration",
    "instantiate",
    "NETWORK",
    "CLUSTER",
    "REGISTRY",
    "MODULE_DEFINITIONS",
    "get_module_definition",
]
