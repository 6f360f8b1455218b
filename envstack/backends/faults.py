"""
Failure injection for backends.

Wraps any backend so that chosen resource addresses fail or stall. Used to
exercise partial-failure and timeout handling without touching real
infrastructure.
"""

import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..errors import BackendError
from ..logging import get_logger
from ..types import ResourceSpec
from .base import Backend, BackendContext

logger = get_logger(__name__)


@dataclass
class Fault:
    """An injected failure for one address."""

    reason: str = "injected failure"
    delay_seconds: float = 0.0
    times: Optional[int] = None  # None fails every call
    operations: Tuple[str, ...] = ("reconcile", "delete")

    def __post_init__(self):
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")

        if self.times is not None and self.times < 1:
            raise ValueError("times must be at least 1")


class FaultInjectingBackend(Backend):
    """Backend wrapper that fails or delays configured addresses."""

    name = "faulty"

    def __init__(self, inner: Backend, seed: int = 42):
        self.inner = inner
        self.rng = random.Random(seed)
        self.faults: Dict[str, Fault] = {}
        self.delays: Dict[str, float] = {}
        self.failure_probability = 0.0
        self.injection_history: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def fail(self, address: str, reason: str = "injected failure", times: Optional[int] = None,
             operations: Tuple[str, ...] = ("reconcile", "delete")) -> None:
        """Make calls for ``address`` raise BackendError."""
        with self._lock:
            self.faults[address] = Fault(reason=reason, times=times, operations=operations)
        logger.debug("Failure configured", address=address, reason=reason, times=times)

    def delay(self, address: str, seconds: float) -> None:
        """Make calls for ``address`` sleep before reaching the wrapped backend."""
        if seconds < 0:
            raise ValueError("seconds cannot be negative")
        with self._lock:
            self.delays[address] = seconds

    def fail_randomly(self, probability: float) -> None:
        """Fail any call with ``probability``, reproducibly for a given seed."""
        if not 0.0 <= probability <= 1.0:
            raise ValueError("Failure probability must be between 0.0 and 1.0")
        self.failure_probability = probability

    def clear(self) -> None:
        with self._lock:
            self.faults.clear()
            self.delays.clear()
            self.failure_probability = 0.0

    def reconcile(
        self,
        spec: ResourceSpec,
        previous_attributes: Optional[Dict[str, Any]],
        context: BackendContext,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        self._inject("reconcile", spec.address)
        return self.inner.reconcile(spec, previous_attributes, context)

    def delete(self, spec: ResourceSpec, attributes: Dict[str, Any], context: BackendContext) -> None:
        self._inject("delete", spec.address)
        self.inner.delete(spec, attributes, context)

    def _inject(self, operation: str, address: str) -> None:
        delay = self.delays.get(address, 0.0)
        if delay:
            time.sleep(delay)

        with self._lock:
            fault = self.faults.get(address)
            if fault is not None and operation not in fault.operations:
                fault = None

            if fault is not None and fault.times is not None:
                fault.times -= 1
                if fault.times == 0:
                    del self.faults[address]

            if fault is None and self.failure_probability:
                if self.rng.random() < self.failure_probability:
                    fault = Fault(reason="random failure")

            if fault is None:
                return

            self.injection_history.append(
                {"timestamp": time.time(), "operation": operation, "address": address, "reason": fault.reason}
            )

        logger.warning("Failure injected", operation=operation, address=address, reason=fault.reason)
        raise BackendError(address, fault.reason, injected=True)
