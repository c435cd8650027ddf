"""
Tests for manifest builders and the GitOps repository.
"""

import base64
import json

import pytest
import yaml

from rigger import manifests
from rigger.config import GitOpsConfig, ProjectConfig
from rigger.errors import ConfigError
from rigger.gitops import GitOpsPublisher, render_repository, write_repository

from fakes import FakeRunner

REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"


def _config(**gitops):
    return ProjectConfig(gitops=GitOpsConfig(github_user="octocat", **gitops))


class TestManifests:
    """Test the manifest builders."""

    def test_registry_secret_round_trip(self):
        """Test that the pull secret names the registry it grants."""
        secret = manifests.docker_registry_secret("regcred", "retail-store", REGISTRY, "AWS", "token")
        payload = json.loads(base64.b64decode(secret["data"][".dockerconfigjson"]))

        assert payload["auths"][REGISTRY]["auth"] == base64.b64encode(b"AWS:token").decode()
        assert manifests.registry_servers(secret) == [REGISTRY]

    def test_registry_servers_of_garbage(self):
        """Test that unreadable secrets name no registry."""
        assert manifests.registry_servers({}) == []
        assert manifests.registry_servers({"data": {".dockerconfigjson": "not base64!"}}) == []

    def test_application_has_finalizer_and_automation(self):
        """Test the ArgoCD Application shape."""
        application = manifests.argo_application(
            "store-ui", "argocd", "https://github.com/octocat/retail-store-gitops.git", "apps/ui", "retail-store")

        assert application["metadata"]["finalizers"] == ["resources-finalizer.argocd.argoproj.io"]
        assert "annotations" not in application["metadata"]
        assert application["spec"]["source"]["helm"] == {"valueFiles": ["values.yaml"]}
        assert application["spec"]["syncPolicy"]["syncOptions"] == ["CreateNamespace=true"]

    def test_dump_is_multi_document(self):
        """Test serialization of several manifests."""
        text = manifests.dump(manifests.namespace("a"), manifests.namespace("b"))
        assert [doc["metadata"]["name"] for doc in yaml.safe_load_all(text)] == ["a", "b"]


class TestRenderRepository:
    """Test the rendered GitOps tree."""

    def test_layout(self):
        """Test that every service gets a chart and an Application."""
        files = render_repository(_config(), REGISTRY, "retail-store-carts")

        for service in ("ui", "catalog", "cart", "orders", "checkout"):
            assert f"apps/{service}/Chart.yaml" in files
            assert f"apps/{service}/templates/deployment.yaml" in files
            assert f"argocd/applications/application-{service}.yaml" in files
        assert "apps/dependencies/templates/postgresql.yaml" in files
        assert "apps/ui/templates/ingress.yaml" in files
        assert "apps/cart/templates/ingress.yaml" not in files

    def test_every_file_is_valid_yaml(self):
        """Test that template expressions never break YAML."""
        for path, content in render_repository(_config(), REGISTRY, "retail-store-carts").items():
            assert list(yaml.safe_load_all(content)), path

    def test_values_carry_registry_and_table(self):
        """Test the values wired from the ledger."""
        files = render_repository(_config(), REGISTRY, "retail-store-carts")
        values = yaml.safe_load(files["apps/cart/values.yaml"])

        assert values["image"]["repository"] == f"{REGISTRY}/retail-store-cart"
        assert values["imagePullSecrets"] == [{"name": "regcred"}]
        assert values["dynamodb"] == {"tableName": "retail-store-carts", "region": "us-east-1"}

    def test_deployment_reads_values(self):
        """Test that container settings are Helm references."""
        files = render_repository(_config(), REGISTRY, "retail-store-carts")
        deployment = yaml.safe_load(files["apps/cart/templates/deployment.yaml"])
        container = deployment["spec"]["template"]["spec"]["containers"][0]

        assert container["image"] == "{{ .Values.image.repository }}:{{ .Values.image.tag }}"
        assert {"name": "CARTS_DYNAMODB_TABLENAME", "value": "{{ .Values.dynamodb.tableName }}"} in container["env"]

    def test_applications_track_branch(self):
        """Test the Application source."""
        files = render_repository(_config(branch="release"), REGISTRY, "retail-store-carts")
        application = yaml.safe_load(files["argocd/applications/application-orders.yaml"])

        assert application["metadata"]["name"] == "store-orders"
        assert application["spec"]["source"]["repoURL"] == "https://github.com/octocat/retail-store-gitops.git"
        assert application["spec"]["source"]["targetRevision"] == "release"
        assert application["spec"]["source"]["path"] == "apps/orders"

    def test_requires_github_user(self):
        """Test the configuration check."""
        with pytest.raises(ConfigError):
            render_repository(ProjectConfig(), REGISTRY, "retail-store-carts")

    def test_write_repository(self, tmp_path):
        """Test writing the tree, replacing earlier files."""
        files = {"apps/ui/Chart.yaml": "name: ui\n", "README.md": "x\n"}
        (tmp_path / "apps" / "ui").mkdir(parents=True)
        (tmp_path / "apps" / "ui" / "Chart.yaml").write_text("stale")

        written = write_repository(files, tmp_path)

        assert len(written) == 2
        assert (tmp_path / "apps" / "ui" / "Chart.yaml").read_text() == "name: ui\n"


class TestPublisher:
    """Test git and gh orchestration."""

    def test_first_publish(self, tmp_path):
        """Test creating the repository, initializing and pushing."""
        runner = (FakeRunner()
                  .on("gh", "repo", "view", returncode=1, stderr="GraphQL: Could not resolve to a Repository")
                  .on("status", "--porcelain", stdout=" M apps/ui/values.yaml\n")
                  .on("rev-parse", stdout="0123456789abcdef\n"))
        publisher = GitOpsPublisher(_config(), runner=runner)

        commit = publisher.publish(tmp_path)

        assert commit == "0123456789abcdef"
        assert runner.ran("gh", "repo", "create", "octocat/retail-store-gitops", "--public")
        assert runner.ran("git", "init")
        assert runner.ran("git", "remote", "add", "origin", "https://github.com/octocat/retail-store-gitops.git")
        assert runner.commands[-2] == ["git", "push", "-u", "origin", "main"]

    def test_nothing_to_commit(self, tmp_path):
        """Test that an unchanged tree is not committed."""
        (tmp_path / ".git").mkdir()
        runner = FakeRunner()
        publisher = GitOpsPublisher(_config(), runner=runner)

        assert publisher.publish(tmp_path) is None
        assert not runner.ran("gh", "repo", "create")
        assert not runner.ran("git", "init")
        assert not runner.ran("git", "commit")

    def test_existing_remote_is_kept(self, tmp_path):
        """Test that an existing origin is not re-added."""
        (tmp_path / ".git").mkdir()
        runner = (FakeRunner()
                  .on("status", "--porcelain", stdout="?? new.yaml\n")
                  .on("git", "remote", stdout="origin\n"))
        GitOpsPublisher(_config(), runner=runner).publish(tmp_path)
        assert not runner.ran("remote", "add")
