"""
Simulated provisioning backend.

Produces deterministic identifiers, ARNs and URLs for every resource type
without calling any cloud API. The same environment, address and region
always yield the same values, so repeated applies converge.
"""

import hashlib
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from ..errors import BackendError
from ..expressions import contains_unknown
from ..logging import get_logger
from ..types import ResourceSpec, ResourceType
from .base import Backend, BackendContext

logger = get_logger(__name__)

ID_PREFIXES = {
    ResourceType.NETWORK: "vpc",
    ResourceType.SUBNET: "subnet",
    ResourceType.GATEWAY: "igw",
    ResourceType.ROUTE_TABLE: "rtb",
    ResourceType.ROUTE_TABLE_ASSOCIATION: "rtbassoc",
    ResourceType.SECURITY_GROUP: "sg",
    ResourceType.IAM_POLICY_ATTACHMENT: "attach",
}


def _digest(*parts: str, length: int = 17) -> str:
    return hashlib.sha256("/".join(parts).encode()).hexdigest()[:length]


class SimulatedBackend(Backend):
    """Deterministic in-process backend.

    ``calls`` records every operation as ``(operation, environment, address)``
    in the order the calls were made.
    """

    name = "simulated"

    def __init__(
        self,
        region: str = "us-east-1",
        account_id: str = "000000000000",
        latency_seconds: float = 0.0,
    ):
        self.region = region
        self.account_id = account_id
        self.latency_seconds = latency_seconds
        self.calls: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def reconcile(
        self,
        spec: ResourceSpec,
        previous_attributes: Optional[Dict[str, Any]],
        context: BackendContext,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        if contains_unknown(spec.attributes):
            raise BackendError(spec.address, "attributes are not fully resolved")

        self._record("reconcile", context, spec.address)
        region = context.region or self.region
        computed = self._computed(spec, context, region)

        new_attributes = {**spec.attributes, **computed}
        outputs = dict(new_attributes)

        logger.debug(
            "Resource reconciled",
            address=spec.address,
            type=spec.type.value,
            id=computed["id"],
            created=previous_attributes is None,
        )
        return new_attributes, outputs

    def delete(self, spec: ResourceSpec, attributes: Dict[str, Any], context: BackendContext) -> None:
        self._record("delete", context, spec.address)
        logger.debug("Resource deleted", address=spec.address, id=attributes.get("id"))

    def _record(self, operation: str, context: BackendContext, address: str) -> None:
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        with self._lock:
            self.calls.append((operation, context.environment, address))

    def addresses(self, operation: str, environment: Optional[str] = None) -> List[str]:
        """Addresses passed to ``operation``, in call order."""
        with self._lock:
            return [
                address
                for op, env, address in self.calls
                if op == operation and (environment is None or env == environment)
            ]

    def _computed(self, spec: ResourceSpec, context: BackendContext, region: str) -> Dict[str, Any]:
        attrs = spec.attributes
        digest = _digest(self.account_id, region, context.environment, spec.address)
        account = self.account_id

        if spec.type is ResourceType.IAM_ROLE:
            name = attrs["name"]
            return {"id": name, "arn": f"arn:aws:iam::{account}:role/{name}"}

        if spec.type is ResourceType.MANAGED_CLUSTER:
            name = attrs["name"]
            return {
                "id": name,
                "arn": f"arn:aws:eks:{region}:{account}:cluster/{name}",
                "endpoint": f"https://{digest[:16].upper()}.gr7.{region}.eks.amazonaws.com",
                "status": "ACTIVE",
            }

        if spec.type is ResourceType.NODE_POOL:
            pool_id = f"{attrs['cluster_name']}:{attrs['node_group_name']}"
            return {
                "id": pool_id,
                "arn": (
                    f"arn:aws:eks:{region}:{account}:nodegroup/"
                    f"{attrs['cluster_name']}/{attrs['node_group_name']}/{digest[:8]}"
                ),
                "status": "ACTIVE",
            }

        if spec.type is ResourceType.IMAGE_REPOSITORY:
            name = attrs["name"]
            return {
                "id": name,
                "arn": f"arn:aws:ecr:{region}:{account}:repository/{name}",
                "registry_id": account,
                "repository_url": f"{account}.dkr.ecr.{region}.amazonaws.com/{name}",
            }

        resource_id = f"{ID_PREFIXES[spec.type]}-{digest}"
        return {
            "id": resource_id,
            "arn": f"arn:aws:ec2:{region}:{account}:{ID_PREFIXES[spec.type]}/{resource_id}",
        }
