"""
Provisioning backends for envstack

This package provides the backend protocol, the deterministic simulated
backend and a failure-injecting wrapper for tests.
"""

from ..config import BackendConfig
from .base import (
    Backend,
    BackendContext,
    available_backends,
    get_backend,
    register_backend,
)
from .faults import Fault, FaultInjectingBackend
from .simulated import SimulatedBackend

register_backend("simulated", SimulatedBackend)


def create_backend(config: BackendConfig) -> Backend:
    """Instantiate the backend selected in ``config``."""
    if config.kind == "simulated":
        return get_backend("simulated", region=config.region, account_id=config.account_id)
    return get_backend(config.kind)


__all__ = [
    "Backend",
    "BackendContext",
    "Fault",
    "FaultInjectingBackend",
    "SimulatedBackend",
    "available_backends",
    "create_backend",
    "get_backend",
    "register_backend",
]
