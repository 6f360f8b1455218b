"""Tests for the deployment handoff."""

import pytest

from envstack.errors import UnknownOutput
from envstack.handoff import MAX_TAG_LENGTH, DeploymentHandoff, build_handoff

URL = "000000000000.dkr.ecr.us-east-1.amazonaws.com/dev-java-app"
OUTPUTS = {
    "eks_cluster_name": "dev-eks-cluster",
    "eks_cluster_endpoint": "https://ABC.gr7.us-east-1.eks.amazonaws.com",
    "ecr_repository_url": URL,
}


class TestBuildHandoff:
    def test_image_reference(self):
        handoff = build_handoff("dev", OUTPUTS, "main", 12)

        assert handoff.image_tag == "main-12"
        assert handoff.image == f"{URL}:main-12"
        assert handoff.latest_image == f"{URL}:latest"
        assert handoff.helm_values_file == "helm/values-dev.yaml"

    def test_branch_is_sanitized(self):
        handoff = build_handoff("dev", OUTPUTS, "feature/JIRA#42 fix", 3)
        assert handoff.image_tag == "feature-JIRA-42-fix-3"

    def test_tag_length_is_capped(self):
        handoff = build_handoff("dev", OUTPUTS, "b" * 200, 1)
        assert len(handoff.image_tag) == MAX_TAG_LENGTH

    def test_missing_outputs(self):
        with pytest.raises(UnknownOutput) as exc_info:
            build_handoff("dev", {"eks_cluster_name": "dev-eks-cluster"}, "main", 1)
        assert exc_info.value.name == "ecr_repository_url"

    def test_to_dict(self):
        data = build_handoff("dev", OUTPUTS, "main", 12, app_name="billing").to_dict()
        assert data["deploy_application"] == "billing-dev"
        assert data["cluster_endpoint"].startswith("https://")


class TestDeploymentHandoffValidation:
    def test_empty_branch(self):
        with pytest.raises(ValueError, match="branch cannot be empty"):
            DeploymentHandoff(environment="dev", cluster_name="c", repository_url=URL,
                              branch="  ", build_number=1)

    def test_negative_build_number(self):
        with pytest.raises(ValueError):
            DeploymentHandoff(environment="dev", cluster_name="c", repository_url=URL,
                              branch="main", build_number=-1)
