"""Cluster module: a managed Kubernetes cluster, its node pool, IAM roles and security group."""

from typing import Any, Mapping

from ..errors import TypeMismatch
from ..expressions import InputRef, ResourceRef, fmt
from ..types import Parameter, ParameterType, ResourceSpec, ResourceType
from .base import ModuleBody, ModuleDefinition, OutputDeclaration

MANAGED_CLUSTER = "aws_eks_cluster.main"
NODE_GROUP = "aws_eks_node_group.main"
CLUSTER_ROLE = "aws_iam_role.eks"
CLUSTER_ROLE_ATTACHMENT = "aws_iam_role_policy_attachment.eks"
NODE_ROLE = "aws_iam_role.node"
NODE_ROLE_ATTACHMENT = "aws_iam_role_policy_attachment.node"
SECURITY_GROUP = "aws_security_group.eks"

CLUSTER_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonEKSClusterPolicy"
WORKER_NODE_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"

# Node pools scale up to this many nodes above the requested count.
NODE_HEADROOM = 2


def _assume_role_policy(service: str) -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"Service": service},
            }
        ],
    }


def _name(suffix: str):
    return fmt("{env}-" + suffix, env=InputRef("env"))


def build_cluster(name: str, inputs: Mapping[str, Any]) -> ModuleBody:
    node_count = inputs["node_count"]
    if not ParameterType.NUMBER.accepts(node_count) or node_count < 1:
        raise TypeMismatch("node_count", "positive number known at plan time", node_count, module=name)

    resources = [
        ResourceSpec(
            address=MANAGED_CLUSTER,
            type=ResourceType.MANAGED_CLUSTER,
            attributes={
                "name": _name("eks-cluster"),
                "role_arn": ResourceRef(CLUSTER_ROLE, "arn"),
                "vpc_config": {
                    "subnet_ids": InputRef("subnet_ids"),
                    "security_group_ids": [ResourceRef(SECURITY_GROUP, "id")],
                },
            },
            depends_on=(CLUSTER_ROLE_ATTACHMENT,),
        ),
        ResourceSpec(
            address=NODE_GROUP,
            type=ResourceType.NODE_POOL,
            attributes={
                "cluster_name": ResourceRef(MANAGED_CLUSTER, "name"),
                "node_group_name": _name("node-group"),
                "node_role_arn": ResourceRef(NODE_ROLE, "arn"),
                "subnet_ids": InputRef("subnet_ids"),
                "scaling_config": {
                    "desired_size": node_count,
                    "max_size": node_count + NODE_HEADROOM,
                    "min_size": node_count,
                },
                "instance_types": [InputRef("instance_type")],
            },
            depends_on=(NODE_ROLE_ATTACHMENT,),
        ),
        ResourceSpec(
            address=CLUSTER_ROLE,
            type=ResourceType.IAM_ROLE,
            attributes={
                "name": _name("eks-role"),
                "assume_role_policy": _assume_role_policy("eks.amazonaws.com"),
            },
        ),
        ResourceSpec(
            address=CLUSTER_ROLE_ATTACHMENT,
            type=ResourceType.IAM_POLICY_ATTACHMENT,
            attributes={
                "policy_arn": CLUSTER_POLICY_ARN,
                "role": ResourceRef(CLUSTER_ROLE, "name"),
            },
        ),
        ResourceSpec(
            address=NODE_ROLE,
            type=ResourceType.IAM_ROLE,
            attributes={
                "name": _name("eks-node-role"),
                "assume_role_policy": _assume_role_policy("ec2.amazonaws.com"),
            },
        ),
        ResourceSpec(
            address=NODE_ROLE_ATTACHMENT,
            type=ResourceType.IAM_POLICY_ATTACHMENT,
            attributes={
                "policy_arn": WORKER_NODE_POLICY_ARN,
                "role": ResourceRef(NODE_ROLE, "name"),
            },
        ),
        ResourceSpec(
            address=SECURITY_GROUP,
            type=ResourceType.SECURITY_GROUP,
            attributes={
                "vpc_id": InputRef("vpc_id"),
                "name": _name("eks-sg"),
                "ingress": [
                    {
                        "from_port": 0,
                        "to_port": 0,
                        "protocol": "-1",
                        "cidr_blocks": InputRef("ingress_cidrs"),
                    }
                ],
                "egress": [
                    {
                        "from_port": 0,
                        "to_port": 0,
                        "protocol": "-1",
                        "cidr_blocks": ["0.0.0.0/0"],
                    }
                ],
                "tags": {"Name": _name("eks-sg")},
            },
        ),
    ]

    return ModuleBody(
        resources=resources,
        outputs={
            "eks_cluster_name": ResourceRef(MANAGED_CLUSTER, "name"),
            "eks_cluster_endpoint": ResourceRef(MANAGED_CLUSTER, "endpoint"),
        },
    )


CLUSTER = ModuleDefinition(
    kind="cluster",
    inputs=(
        Parameter("env", ParameterType.STRING),
        Parameter("subnet_ids", ParameterType.LIST_OF_STRING),
        Parameter("vpc_id", ParameterType.STRING),
        Parameter("node_count", ParameterType.NUMBER),
        Parameter("instance_type", ParameterType.STRING, default="t3.medium"),
        # TODO: drop the permit-all default once every environment sets its own ingress range.
        Parameter("ingress_cidrs", ParameterType.LIST_OF_STRING, default=["0.0.0.0/0"]),
    ),
    outputs=(
        OutputDeclaration("eks_cluster_name", ParameterType.STRING),
        OutputDeclaration("eks_cluster_endpoint", ParameterType.STRING),
    ),
    builder=build_cluster,
    description="Managed cluster with one node pool, IAM roles and a security group",
)
