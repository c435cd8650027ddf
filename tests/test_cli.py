"""
Tests for the command-line interface, run against the in-memory providers.
"""

import json
from pathlib import Path
from unittest.mock import Mock, patch

from click.testing import CliRunner

from rigger.cli import Runtime, build_runtime, main
from rigger.config import ProjectConfig
from rigger.errors import ProviderRejected
from rigger.graph import ResourceGraph
from rigger.models import ResourceKind
from rigger.providers import Backends
from rigger.providers.base import KindPolicy
from rigger.providers.terraform import EcrTerraformProvider

from fakes import FakeRunner, build_fake_stack, sample_catalog

MASTER = "k8s-kubeadm-master"

KUBECONFIG = """apiVersion: v1
clusters:
- name: kubernetes
  cluster:
    server: https://10.0.1.15:6443
"""


def _runtime(tmp_path, policies=None, runner=None, **config):
    cloud, registry, executor, ledger, clock = build_fake_stack(
        tmp_path, policies=policies, kubeconfig=str(tmp_path / "kubeconfig"), **config)
    catalog = sample_catalog(MASTER)
    backends = Backends(registry=registry, clients=Mock(), access=Mock(), kubectl=Mock(), helm=Mock())
    runtime = Runtime(
        config=registry.get(ResourceKind.INSTANCE).context.config,
        ledger=ledger,
        backends=backends,
        executor=executor,
        catalog=catalog,
        graph=ResourceGraph(catalog),
        runner=runner or FakeRunner(),
    )
    return cloud, runtime


def _invoke(runtime, *args, input=None):
    return CliRunner().invoke(main, list(args), obj={"runtime": runtime}, input=input)


class TestUp:
    """Test rigger up and plan."""

    def test_up_converges(self, tmp_path):
        """Test a full pass from nothing."""
        cloud, runtime = _runtime(tmp_path)

        result = _invoke(runtime, "up")

        assert result.exit_code == 0, result.output
        assert f"ℹ {MASTER} (Instance): create" in result.output
        assert "✓ 7 resources converged" in result.output
        assert runtime.ledger.environment()["AWS_REGION"] == "us-east-1"

    def test_up_json(self, tmp_path):
        """Test the machine-readable report."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "--json", "up")

        report = json.loads(result.stdout)
        assert report["ok"] is True
        assert {o["decision"] for o in report["outcomes"]} == {"noop"}

    def test_up_abort_exits_non_zero(self, tmp_path):
        """Test that a rejected call fails the command with its remediation context."""
        cloud, runtime = _runtime(tmp_path)
        cloud.errors[("create", "sg")] = ProviderRejected("UnauthorizedOperation")

        result = _invoke(runtime, "up")

        assert result.exit_code == 1
        assert "Pass aborted: UnauthorizedOperation" in result.output
        assert "⚠ repo (EcrRepository): skipped, the pass was aborted" in result.output

    def test_unknown_resource(self, tmp_path):
        """Test that naming an undeclared resource is an error."""
        cloud, runtime = _runtime(tmp_path)
        result = _invoke(runtime, "up", "--resource", "nope")
        assert result.exit_code == 1
        assert "✗" in result.output

    def test_stage_choice_is_validated(self, tmp_path):
        """Test that only pipeline stages are accepted."""
        cloud, runtime = _runtime(tmp_path)
        result = _invoke(runtime, "up", "--stage", "everything")
        assert result.exit_code == 2

    def test_plan_changes_nothing(self, tmp_path):
        """Test the dry run."""
        cloud, runtime = _runtime(tmp_path)

        result = _invoke(runtime, "plan")

        assert result.exit_code == 0, result.output
        assert "7 resources would change" in result.output
        assert cloud.operations("create") == []

    def test_refresh_rotates_pull_secret(self, tmp_path):
        """Test that refresh defaults to the registry credential."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "refresh")

        assert result.exit_code == 0, result.output
        assert "regcred (K8sSecret): refresh" in result.output
        assert cloud.operations("delete") == ["regcred"]


class TestStatusAndLedger:
    """Test status, ledger show and ledger rebuild."""

    def test_status_after_up(self, tmp_path):
        """Test the status report."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "status")

        assert "Status: converged" in result.output
        assert f"✓ {MASTER} (Instance): recorded" in result.output

    def test_status_json_lists_failures(self, tmp_path):
        """Test that failures of the last pass are reported."""
        cloud, runtime = _runtime(tmp_path)
        cloud.errors[("create", "worker1")] = ProviderRejected("InstanceLimitExceeded")
        _invoke(runtime, "up")

        status = json.loads(_invoke(runtime, "--json", "status").stdout)

        assert status["status"] == "failed"
        assert [f["name"] for f in status["failures"]] == ["worker1"]
        assert "sg" in status["ledger"]

    def test_ledger_env(self, tmp_path):
        """Test the flattened variables."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "ledger", "show", "--env")

        assert f"MASTER_INSTANCE_ID=id-{MASTER}" in result.output.splitlines()
        assert "KEY_NAME=id-key" in result.output.splitlines()

    def test_ledger_rebuild(self, tmp_path):
        """Test rewriting the ledger from live state."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")
        runtime.ledger.remove("sg")
        del cloud.resources["worker1"]

        result = _invoke(runtime, "ledger", "rebuild")

        assert result.exit_code == 0, result.output
        assert "✓ sg: recorded" in result.output
        assert "ℹ worker1: absent" in result.output
        assert runtime.ledger.get("sg") == {"kind": "SecurityGroup", "id": "id-sg"}
        assert runtime.ledger.get("worker1") is None


class TestUrlsAndStart:
    """Test urls and start."""

    def test_urls(self, tmp_path):
        """Test URLs derived from the recorded master IP."""
        cloud, runtime = _runtime(tmp_path)
        runtime.ledger.upsert(MASTER, {"kind": "Instance", "public_ip": "54.1.2.3"})

        with patch("requests.get", return_value=Mock(status_code=200)) as get:
            result = _invoke(runtime, "urls", "--check")

        assert "Retail Store: http://54.1.2.3:30080  [HTTP 200]" in result.output
        assert "ArgoCD" not in result.output
        get.assert_any_call("http://54.1.2.3:30080", timeout=10, verify=False)

    def test_urls_without_master(self, tmp_path):
        """Test the error before infrastructure exists."""
        cloud, runtime = _runtime(tmp_path)
        result = _invoke(runtime, "urls")
        assert result.exit_code == 1
        assert "rigger up --stage infrastructure" in result.output

    def test_start_refetches_kubeconfig_on_new_ip(self, tmp_path):
        """Test that starting a stopped master updates the kubeconfig."""
        runner = FakeRunner().on("scp", effect=lambda command: Path(command[-1]).write_text(KUBECONFIG))
        policies = {ResourceKind.INSTANCE: KindPolicy(update_phases=frozenset({"stopped"}))}
        cloud, runtime = _runtime(tmp_path, policies=policies, runner=runner)
        _invoke(runtime, "up")
        runtime.ledger.upsert(MASTER, {"kind": "Instance", "id": f"id-{MASTER}", "public_ip": "54.1.2.3"})
        cloud.resources[MASTER]["phase"] = "stopped"
        cloud.resources[MASTER]["attributes"]["public_ip"] = "54.1.2.4"

        result = _invoke(runtime, "start")

        assert result.exit_code == 0, result.output
        assert "Master IP changed: 54.1.2.3 -> 54.1.2.4" in result.output
        assert cloud.operations("update") == [MASTER]
        assert "https://54.1.2.4:6443" in (tmp_path / "kubeconfig").read_text()
        assert runtime.ledger.environment()["APP_URL"] == "http://54.1.2.4:30080"


class TestTeardown:
    """Test the teardown command and its confirmations."""

    def test_yes_skips_prompts(self, tmp_path):
        """Test an unattended teardown."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "teardown", "--yes")

        assert result.exit_code == 0, result.output
        assert "✓ Teardown complete" in result.output
        assert cloud.resources == {}

    def test_cancelled(self, tmp_path):
        """Test that anything but 'yes' cancels."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "teardown", input="no\n")

        assert "Teardown cancelled" in result.output
        assert cloud.operations("delete") == []

    def test_second_confirmation(self, tmp_path):
        """Test that DELETE must be typed exactly."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "teardown", input="yes\ndelete\n")

        assert "Teardown cancelled" in result.output
        assert cloud.operations("delete") == []

    def test_confirmed_then_cleanup_prompt(self, tmp_path, monkeypatch):
        """Test the interactive path, keeping the ledger file."""
        monkeypatch.chdir(tmp_path)
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")

        result = _invoke(runtime, "teardown", input="yes\nDELETE\nn\n")

        assert result.exit_code == 0, result.output
        assert "1. app (HelmRelease)" in result.output
        assert "Delete the ledger" in result.output
        assert runtime.ledger.path.exists()

    def test_purge_removes_local_files(self, tmp_path, monkeypatch):
        """Test --purge deleting the key file and ledger."""
        monkeypatch.chdir(tmp_path)
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")
        (tmp_path / "k8s-kubeadm-key.pem").write_text("key")

        result = _invoke(runtime, "teardown", "--yes", "--purge")

        assert result.exit_code == 0, result.output
        assert not (tmp_path / "k8s-kubeadm-key.pem").exists()
        assert not runtime.ledger.path.exists()

    def test_failed_teardown_exits_non_zero(self, tmp_path):
        """Test that an incomplete teardown is reported."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")
        cloud.errors[("delete", "app")] = ProviderRejected("forbidden")

        result = _invoke(runtime, "--json", "teardown", "--yes")

        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["states"]["app"] == "failed"
        assert report["states"]["sg"] == "pending"

    def test_terminated_master_still_tears_down_infrastructure(self, tmp_path):
        """Test that an unreachable cluster skips the in-cluster tiers instead of halting."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")
        del cloud.resources[MASTER]
        cloud.errors[("delete", "app")] = ProviderRejected("connection refused")
        runtime.backends.access.reachable.return_value = False

        result = _invoke(runtime, "--json", "teardown", "--yes")

        assert result.exit_code == 0, result.output
        states = json.loads(result.stdout)["states"]
        assert states["app"] == "skipped"
        assert states["regcred"] == "skipped"
        assert states[MASTER] == "skipped"
        assert states["sg"] == "confirmed-gone"
        assert "app" not in cloud.operations("delete")
        assert set(cloud.resources) == {"app", "regcred"}
        assert "app" not in runtime.ledger.snapshot()


class TestGitOpsHandover:
    """Test removing Helm-delivered releases."""

    def test_handover_uninstalls_recorded_releases(self, tmp_path):
        """Test that only the Helm-delivered application releases are removed."""
        cloud, runtime = _runtime(tmp_path)
        _invoke(runtime, "up")
        for release in ("postgresql", "retail-store"):
            runtime.ledger.upsert(release, {"kind": "HelmRelease", "id": f"id-{release}"})
            cloud.add(release)

        result = _invoke(runtime, "gitops", "handover", "--yes")

        assert result.exit_code == 0, result.output
        assert sorted(cloud.operations("delete")) == ["postgresql", "retail-store"]
        assert runtime.ledger.get("app") is not None

    def test_nothing_to_hand_over(self, tmp_path):
        """Test the empty case."""
        cloud, runtime = _runtime(tmp_path)
        result = _invoke(runtime, "gitops", "handover", "--yes")
        assert "No Helm-delivered releases recorded" in result.output


def test_invalid_tag(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(main, ["--tag", "novalue", "status"])
    assert result.exit_code == 2
    assert "Invalid tag format" in result.output


class TestBuildRuntime:
    """Test wiring a runtime from configuration."""

    def test_registers_every_kind(self, tmp_path):
        """Test that every resource kind has a provider and the catalog is checked."""
        config = ProjectConfig(ledger_path=str(tmp_path / "deployment-info.txt"))

        runtime = build_runtime(config, expected_nodes=0)

        assert runtime.backends.registry.kinds() == frozenset(ResourceKind)
        assert runtime.master == "k8s-kubeadm-master"
        assert runtime.master_ip() is None
        assert len(runtime.graph.layers()) > 1

    def test_terraform_backend(self, tmp_path):
        """Test that the ECR backend follows the configuration."""
        config = ProjectConfig(ecr_backend="terraform", ledger_path=str(tmp_path / "deployment-info.txt"))

        runtime = build_runtime(config, expected_nodes=0)

        assert isinstance(runtime.backends.registry.get(ResourceKind.ECR_REPOSITORY), EcrTerraformProvider)
