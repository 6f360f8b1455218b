"""
Built-in environments.

The dev, stage and prod environments each compose a network, a cluster and a
registry. Environments differ only in their parameter values.
"""

from typing import Dict, List

from .composition import Binding, Composition, compose
from .errors import UnknownEnvironment
from .expressions import OutputRef
from .modules import CLUSTER, NETWORK, REGISTRY
from .parameters import ParameterStore
from .types import EnvironmentName, Parameter, ParameterType

ENVIRONMENTS: List[EnvironmentName] = ["dev", "stage", "prod"]

DECLARATIONS = [
    Parameter("aws_region", ParameterType.STRING, default="us-east-1",
              description="Region the environment is provisioned in"),
    Parameter("app_name", ParameterType.STRING, default="java-app",
              description="Application name used for the image repository"),
    Parameter("vpc_cidr", ParameterType.STRING, description="VPC address range"),
    Parameter("public_subnet_cidrs", ParameterType.LIST_OF_STRING,
              description="One CIDR per public subnet"),
    Parameter("availability_zones", ParameterType.LIST_OF_STRING,
              default=["us-east-1a", "us-east-1b"],
              description="One zone per public subnet"),
    Parameter("node_count", ParameterType.NUMBER, description="Desired node pool size"),
    Parameter("node_instance_type", ParameterType.STRING, default="t3.medium"),
    Parameter("cluster_ingress_cidrs", ParameterType.LIST_OF_STRING, default=["0.0.0.0/0"],
              description="Ranges allowed to reach the cluster security group"),
]

ENVIRONMENT_VALUES: Dict[EnvironmentName, Dict[str, object]] = {
    "dev": {
        "vpc_cidr": "10.0.0.0/16",
        "public_subnet_cidrs": ["10.0.1.0/24", "10.0.2.0/24"],
        "node_count": 2,
    },
    "stage": {
        "vpc_cidr": "10.1.0.0/16",
        "public_subnet_cidrs": ["10.1.1.0/24", "10.1.2.0/24"],
        "node_count": 3,
    },
    "prod": {
        "vpc_cidr": "10.2.0.0/16",
        "public_subnet_cidrs": ["10.2.1.0/24", "10.2.2.0/24"],
        "node_count": 4,
    },
}

EXPORTS = {
    "eks_cluster_name": OutputRef("eks", "eks_cluster_name"),
    "eks_cluster_endpoint": OutputRef("eks", "eks_cluster_endpoint"),
    "ecr_repository_url": OutputRef("ecr", "ecr_repository_url"),
    "vpc_id": OutputRef("vpc", "vpc_id"),
}


def default_parameter_store() -> ParameterStore:
    """Parameter store holding the dev, stage and prod values."""
    store = ParameterStore(DECLARATIONS)
    for environment in ENVIRONMENTS:
        store.add_environment(environment, ENVIRONMENT_VALUES[environment])
    return store


def build_environment(environment: EnvironmentName, store: ParameterStore) -> Composition:
    """Compose the network, cluster and registry for ``environment``.

    Raises:
        UnknownEnvironment: If the store has no values for ``environment``
    """
    if not store.has_environment(environment):
        raise UnknownEnvironment(environment, store.environments())

    def param(name):
        return store.get(environment, name)

    bindings = [
        Binding("vpc", "env", environment),
        Binding("vpc", "vpc_cidr", param("vpc_cidr")),
        Binding("vpc", "public_subnet_cidrs", param("public_subnet_cidrs")),
        Binding("vpc", "availability_zones", param("availability_zones")),
        Binding("eks", "env", environment),
        Binding("eks", "subnet_ids", OutputRef("vpc", "public_subnet_ids")),
        Binding("eks", "vpc_id", OutputRef("vpc", "vpc_id")),
        Binding("eks", "node_count", param("node_count")),
        Binding("eks", "instance_type", param("node_instance_type")),
        Binding("eks", "ingress_cidrs", param("cluster_ingress_cidrs")),
        Binding("ecr", "env", environment),
        Binding("ecr", "app_name", param("app_name")),
    ]

    composition = compose(
        environment,
        {"vpc": NETWORK, "eks": CLUSTER, "ecr": REGISTRY},
        bindings,
        EXPORTS,
        region=param("aws_region"),
    )
    return composition
