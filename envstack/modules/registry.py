"""Registry module: one container image repository per environment."""

from typing import Any, Mapping

from ..expressions import InputRef, ResourceRef, fmt
from ..types import Parameter, ParameterType, ResourceSpec, ResourceType
from .base import ModuleBody, ModuleDefinition, OutputDeclaration

REPOSITORY = "aws_ecr_repository.main"


def build_registry(name: str, inputs: Mapping[str, Any]) -> ModuleBody:
    repository_name = fmt("{env}-{app}", env=InputRef("env"), app=InputRef("app_name"))

    return ModuleBody(
        resources=[
            ResourceSpec(
                address=REPOSITORY,
                type=ResourceType.IMAGE_REPOSITORY,
                attributes={
                    "name": repository_name,
                    "image_tag_mutability": "MUTABLE",
                    "image_scanning_configuration": {"scan_on_push": True},
                    "tags": {
                        "Name": fmt("{env}-{app}-ecr", env=InputRef("env"), app=InputRef("app_name"))
                    },
                },
            )
        ],
        outputs={"ecr_repository_url": ResourceRef(REPOSITORY, "repository_url")},
    )


REGISTRY = ModuleDefinition(
    kind="registry",
    inputs=(
        Parameter("env", ParameterType.STRING),
        Parameter("app_name", ParameterType.STRING, default="java-app"),
    ),
    outputs=(OutputDeclaration("ecr_repository_url", ParameterType.STRING),),
    builder=build_registry,
    description="Image repository with mutable tags and scan-on-push",
)
