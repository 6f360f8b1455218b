"""Network module: a VPC with public subnets routed through an internet gateway."""

from typing import Any, Mapping

from ..errors import SubnetZoneMismatch, TypeMismatch
from ..expressions import InputRef, ResourceRef, fmt
from ..types import Parameter, ParameterType, ResourceSpec, ResourceType
from .base import ModuleBody, ModuleDefinition, OutputDeclaration

VPC = "aws_vpc.main"
GATEWAY = "aws_internet_gateway.main"
ROUTE_TABLE = "aws_route_table.public"


def subnet_address(index: int) -> str:
    return f"aws_subnet.public[{index}]"


def association_address(index: int) -> str:
    return f"aws_route_table_association.public[{index}]"


def _name(suffix: str, **extra: Any):
    return fmt("{env}-" + suffix, env=InputRef("env"), **extra)


def build_network(name: str, inputs: Mapping[str, Any]) -> ModuleBody:
    cidrs = inputs["public_subnet_cidrs"]
    zones = inputs["availability_zones"]

    # Subnet count drives how many resources exist, so both lists must be literal.
    for key, value in (("public_subnet_cidrs", cidrs), ("availability_zones", zones)):
        if not isinstance(value, list):
            raise TypeMismatch(
                key, "list(string) known at plan time", value, module=name,
            )

    if len(cidrs) != len(zones):
        raise SubnetZoneMismatch(name, len(cidrs), len(zones))

    resources = [
        ResourceSpec(
            address=VPC,
            type=ResourceType.NETWORK,
            attributes={
                "cidr_block": InputRef("vpc_cidr"),
                "enable_dns_support": True,
                "enable_dns_hostnames": True,
                "tags": {"Name": _name("vpc")},
            },
        )
    ]

    for index, (cidr, zone) in enumerate(zip(cidrs, zones)):
        resources.append(
            ResourceSpec(
                address=subnet_address(index),
                type=ResourceType.SUBNET,
                attributes={
                    "vpc_id": ResourceRef(VPC, "id"),
                    "cidr_block": cidr,
                    "availability_zone": zone,
                    "map_public_ip_on_launch": True,
                    "tags": {
                        "Name": _name("public-subnet-{index}", index=index),
                        "kubernetes.io/role/elb": "1",
                    },
                },
            )
        )

    resources.append(
        ResourceSpec(
            address=GATEWAY,
            type=ResourceType.GATEWAY,
            attributes={"vpc_id": ResourceRef(VPC, "id"), "tags": {"Name": _name("igw")}},
        )
    )
    resources.append(
        ResourceSpec(
            address=ROUTE_TABLE,
            type=ResourceType.ROUTE_TABLE,
            attributes={
                "vpc_id": ResourceRef(VPC, "id"),
                "routes": [{"cidr_block": "0.0.0.0/0", "gateway_id": ResourceRef(GATEWAY, "id")}],
                "tags": {"Name": _name("public-rt")},
            },
        )
    )

    for index in range(len(cidrs)):
        resources.append(
            ResourceSpec(
                address=association_address(index),
                type=ResourceType.ROUTE_TABLE_ASSOCIATION,
                attributes={
                    "subnet_id": ResourceRef(subnet_address(index), "id"),
                    "route_table_id": ResourceRef(ROUTE_TABLE, "id"),
                },
            )
        )

    return ModuleBody(
        resources=resources,
        outputs={
            "vpc_id": ResourceRef(VPC, "id"),
            "public_subnet_ids": [ResourceRef(subnet_address(i), "id") for i in range(len(cidrs))],
        },
    )


NETWORK = ModuleDefinition(
    kind="network",
    inputs=(
        Parameter("env", ParameterType.STRING),
        Parameter("vpc_cidr", ParameterType.STRING),
        Parameter("public_subnet_cidrs", ParameterType.LIST_OF_STRING),
        Parameter("availability_zones", ParameterType.LIST_OF_STRING),
    ),
    outputs=(
        OutputDeclaration("vpc_id", ParameterType.STRING),
        OutputDeclaration("public_subnet_ids", ParameterType.LIST_OF_STRING),
    ),
    builder=build_network,
    description="VPC, public subnets, internet gateway and a public route table",
)
