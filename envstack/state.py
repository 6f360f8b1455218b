"""
Applied state persistence.

One JSON document per environment records every resource the last apply
reconciled: the desired attributes it was applied with, what the backend
reported back, the values it exposes to other resources and what it
depends on. The state is the only input planning uses to decide whether a
resource needs work.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import StateError
from .logging import get_logger
from .types import CompositionStatus, EnvironmentName

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResourceRecord(BaseModel):
    """One reconciled resource."""

    address: str
    type: str
    instance: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    backend_attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    position: int = 0
    updated_at: str = Field(default_factory=_now)


class AppliedState(BaseModel):
    """Persisted state of one environment."""

    environment: str
    status: CompositionStatus = CompositionStatus.APPLIED
    serial: int = 0
    region: Optional[str] = None
    updated_at: str = Field(default_factory=_now)
    resources: Dict[str, ResourceRecord] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[Dict[str, Any]] = None

    def record(self, address: str) -> Optional[ResourceRecord]:
        return self.resources.get(address)

    def put(self, record: ResourceRecord) -> None:
        self.resources[record.address] = record

    def remove(self, address: str) -> None:
        self.resources.pop(address, None)

    @property
    def is_empty(self) -> bool:
        return not self.resources

    def ordered_records(self) -> List[ResourceRecord]:
        """Records in the order they were created."""
        return sorted(self.resources.values(), key=lambda r: (r.position, r.address))


class StateStore:
    """Reads and writes applied state documents under ``state_dir``."""

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)
        self._locks: Dict[EnvironmentName, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, environment: EnvironmentName) -> Path:
        return self.state_dir / f"{environment}.json"

    def lock(self, environment: EnvironmentName) -> threading.Lock:
        """The lock serializing writes for ``environment``."""
        with self._locks_guard:
            return self._locks.setdefault(environment, threading.Lock())

    def load(self, environment: EnvironmentName) -> Optional[AppliedState]:
        """Load the state of ``environment``, or None if it was never applied."""
        path = self.path_for(environment)
        if not path.exists():
            return None

        try:
            data = json.loads(path.read_text())
            return AppliedState(**data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StateError(str(path), "load", str(e)) from e

    def save(self, state: AppliedState) -> AppliedState:
        """Write ``state`` atomically and bump its serial."""
        path = self.path_for(state.environment)
        state.serial += 1
        state.updated_at = _now()

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=f".{state.environment}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(state.model_dump_json(indent=2))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StateError(str(path), "save", str(e)) from e

        logger.debug(
            "State saved",
            environment=state.environment,
            serial=state.serial,
            resources=len(state.resources),
        )
        return state

    def delete(self, environment: EnvironmentName) -> bool:
        """Remove the state document; returns False if there was none."""
        path = self.path_for(environment)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateError(str(path), "delete", str(e)) from e

        logger.info("State removed", environment=environment)
        return True

    def environments(self) -> List[EnvironmentName]:
        """Environments that currently have a state document."""
        if not self.state_dir.exists():
            return []
        return sorted(p.stem for p in self.state_dir.glob("*.json"))
