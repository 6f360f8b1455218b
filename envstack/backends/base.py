"""
Provisioning backend protocol.

A backend turns a resolved resource spec into a realized resource. It is the
only component that talks to the outside world; the engine never calls a
cloud API directly.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import ConfigurationError
from ..logging import get_logger
from ..types import ResourceSpec

logger = get_logger(__name__)


@dataclass(frozen=True)
class BackendContext:
    """Where a resource lives: its environment and region."""

    environment: str
    region: Optional[str] = None


class Backend(ABC):
    """Abstract base class for provisioning backends.

    ``spec.address`` is the composition-wide address (``vpc.aws_vpc.main``)
    and ``spec.attributes`` hold concrete values only. Implementations must
    be safe to call from several threads at once.
    """

    name = "base"

    @abstractmethod
    def reconcile(
        self,
        spec: ResourceSpec,
        previous_attributes: Optional[Dict[str, Any]],
        context: BackendContext,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Create or update a resource.

        Args:
            spec: Resolved resource spec
            previous_attributes: What the backend reported last time, None on create
            context: Environment and region of the resource

        Returns:
            (new_attributes, outputs): the realized attributes and the values
            other resources may reference (``id``, ``arn``, ...)
        """

    @abstractmethod
    def delete(self, spec: ResourceSpec, attributes: Dict[str, Any], context: BackendContext) -> None:
        """Remove a resource previously reconciled with ``attributes``."""


BackendFactory = Callable[..., Backend]

_BACKENDS: Dict[str, BackendFactory] = {}


def register_backend(name: str, factory: BackendFactory) -> None:
    """Make a backend available under ``name``."""
    _BACKENDS[name] = factory
    logger.debug("Backend registered", backend=name)


def get_backend(name: str, **kwargs) -> Backend:
    """Instantiate the backend registered as ``name``.

    Raises:
        ConfigurationError: If no backend is registered under ``name``
    """
    factory = _BACKENDS.get(name)
    if factory is None:
        raise ConfigurationError("backend.kind", name, " or ".join(sorted(_BACKENDS)) or "a registered backend")
    return factory(**kwargs)


def available_backends():
    return sorted(_BACKENDS)
