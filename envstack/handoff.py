"""
Deployment handoff.

After an environment is applied, the build and deploy tooling needs three
facts from it: which cluster to deploy to, which repository to push images
to, and which image tag a given build produces. This module packages those
facts; it never builds or deploys anything itself.
"""

import re
from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator

from .errors import UnknownOutput

REQUIRED_OUTPUTS = ("eks_cluster_name", "ecr_repository_url")

# Image tags allow letters, digits, underscores, periods and dashes.
_INVALID_TAG_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
MAX_TAG_LENGTH = 128


class DeploymentHandoff(BaseModel):
    """What the build and deploy collaborators need for one environment."""

    environment: str
    cluster_name: str
    cluster_endpoint: str = ""
    repository_url: str
    branch: str
    build_number: int = Field(ge=0)
    app_name: str = "java-app"

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v):
        if not v.strip():
            raise ValueError("branch cannot be empty")
        return v

    @property
    def image_tag(self) -> str:
        tag = _INVALID_TAG_CHARS.sub("-", f"{self.branch}-{self.build_number}")
        return tag[:MAX_TAG_LENGTH]

    @property
    def image(self) -> str:
        return f"{self.repository_url}:{self.image_tag}"

    @property
    def latest_image(self) -> str:
        return f"{self.repository_url}:latest"

    @property
    def helm_values_file(self) -> str:
        return f"helm/values-{self.environment}.yaml"

    @property
    def deploy_application(self) -> str:
        return f"{self.app_name}-{self.environment}"

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "cluster_name": self.cluster_name,
            "cluster_endpoint": self.cluster_endpoint,
            "repository_url": self.repository_url,
            "image_tag": self.image_tag,
            "image": self.image,
            "latest_image": self.latest_image,
            "helm_values_file": self.helm_values_file,
            "deploy_application": self.deploy_application,
        }


def build_handoff(
    environment: str,
    outputs: Mapping[str, Any],
    branch: str,
    build_number: int,
    app_name: str = "java-app",
) -> DeploymentHandoff:
    """Build the handoff for ``environment`` from its applied outputs.

    Raises:
        UnknownOutput: If the environment has not exported a required output yet
    """
    for name in REQUIRED_OUTPUTS:
        if name not in outputs:
            raise UnknownOutput(environment, name, "environment has not been applied")

    return DeploymentHandoff(
        environment=environment,
        cluster_name=outputs["eks_cluster_name"],
        cluster_endpoint=outputs.get("eks_cluster_endpoint", ""),
        repository_url=outputs["ecr_repository_url"],
        branch=branch,
        build_number=build_number,
        app_name=app_name,
    )
