"""
Tests for the teardown planner.
"""

import random

from rigger.errors import ProbeFailed, PropagationTimeout, ProviderRejected
from rigger.events import get_status_from_events
from rigger.graph import ResourceGraph
from rigger.models import ResourceKind
from rigger.reconciler import Reconciler
from rigger.teardown import TeardownPlanner, TeardownState

from fakes import build_fake_stack, sample_catalog

INSTANCES = ["master", "worker1"]


def _deployed(tmp_path, parallelism=1, cluster_check=None):
    cloud, registry, executor, ledger, clock = build_fake_stack(tmp_path, parallelism=parallelism)
    catalog = sample_catalog()
    report = Reconciler(ResourceGraph(catalog), executor, ledger).run()
    assert report.ok
    cloud.calls.clear()
    planner = TeardownPlanner(registry, ledger, executor, parallelism=parallelism, cluster_check=cluster_check)
    return cloud, planner, ledger, catalog


class TestTeardownOrder:
    """Test tiered deletion."""

    def test_deletes_in_reverse_dependency_order(self, tmp_path):
        """Test that applications go first and the registry goes last."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)

        report = planner.run(planner.targets(catalog))

        assert report.ok
        deletes = cloud.operations("delete")
        assert deletes.index("app") < deletes.index("regcred") < deletes.index("master")
        assert max(deletes.index(n) for n in INSTANCES) < deletes.index("sg")
        assert deletes.index("sg") < deletes.index("key") < deletes.index("repo")
        assert ledger.snapshot() == {}
        assert get_status_from_events() == "destroyed"

    def test_stages_group_by_tier(self, tmp_path):
        """Test the planned stages."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        stages = [[d.name for d in stage] for stage in planner.stages(planner.targets(catalog))]
        assert stages[0] == ["app"]
        assert stages[1] == ["regcred"]
        assert sorted(stages[2]) == INSTANCES
        assert stages[-1] == ["repo"]

    def test_already_absent_is_skipped(self, tmp_path):
        """Test that resources deleted out of band are skipped and forgotten."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        del cloud.resources["worker1"]

        report = planner.run(planner.targets(catalog))

        assert report.ok
        assert report.states["worker1"] == TeardownState.SKIPPED
        assert "worker1" not in cloud.operations("delete")
        assert ledger.get("worker1") is None

    def test_second_teardown_is_a_noop(self, tmp_path):
        """Test that an empty ledger tears down nothing."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        planner.run(planner.targets(catalog))
        cloud.calls.clear()

        targets = planner.targets(catalog)

        assert targets == []
        assert planner.run(targets).ok
        assert cloud.calls == []


class TestBarrier:
    """Test that a tier only starts once the previous one is confirmed gone."""

    def test_stuck_instance_keeps_security_group(self, tmp_path):
        """Test that a stuck instance blocks deletion of its security group."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        cloud.stuck.add("master")

        report = planner.run(planner.targets(catalog))

        assert not report.ok
        assert report.states["master"] == TeardownState.FAILED
        assert isinstance(report.errors["master"], PropagationTimeout)
        assert report.states["worker1"] == TeardownState.CONFIRMED_GONE
        for name in ("sg", "key", "repo"):
            assert report.states[name] == TeardownState.PENDING
        assert "sg" not in cloud.operations("delete")
        assert ledger.get("sg") is not None
        assert ledger.get("master") is not None
        assert get_status_from_events() == "failed"

    def test_rejected_delete_halts_later_tiers(self, tmp_path):
        """Test that a provider rejection is reported and stops the teardown."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        cloud.errors[("delete", "regcred")] = ProviderRejected("forbidden")

        report = planner.run(planner.targets(catalog))

        assert report.states["app"] == TeardownState.CONFIRMED_GONE
        assert report.states["regcred"] == TeardownState.FAILED
        assert report.errors["regcred"].remediation == "rigger teardown"
        assert cloud.operations("delete") == ["app", "regcred"]

    def test_security_group_never_outlives_a_live_instance(self, tmp_path):
        """Test the barrier over random stuck instances and worker counts."""
        for seed in range(25):
            rng = random.Random(seed)
            case = tmp_path / f"case-{seed}"
            case.mkdir()
            cloud, planner, ledger, catalog = _deployed(case, parallelism=rng.choice([1, 2, 4]))
            stuck = {name for name in INSTANCES if rng.random() < 0.4}
            cloud.stuck.update(stuck)

            report = planner.run(planner.targets(catalog))

            deletes = cloud.operations("delete")
            if stuck:
                assert "sg" not in deletes, f"seed {seed}"
                assert report.states["sg"] == TeardownState.PENDING
                assert all(report.states[name] == TeardownState.FAILED for name in stuck)
            else:
                assert report.ok, f"seed {seed}"
                assert "sg" in deletes


class TestTargets:
    """Test which resources a teardown considers."""

    def test_ledger_only_entries_are_rebuilt_from_kind(self, tmp_path):
        """Test that resources no longer in the catalog are still deleted."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        ledger.upsert("retired-repo", {"kind": "EcrRepository", "id": "id-retired"})
        cloud.add("retired-repo")

        targets = planner.targets(catalog)
        retired = next(d for d in targets if d.name == "retired-repo")
        assert retired.kind == ResourceKind.ECR_REPOSITORY
        assert retired.spec == {"id": "id-retired"}

        report = planner.run(targets)
        assert report.states["retired-repo"] == TeardownState.CONFIRMED_GONE

    def test_unknown_kind_is_skipped(self, tmp_path):
        """Test that an entry without a usable kind is ignored."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        ledger.upsert("mystery", {"id": "x"})
        assert "mystery" not in [d.name for d in planner.targets(catalog)]

    def test_rediscover_includes_unrecorded_resources(self, tmp_path):
        """Test that rediscover adds catalog resources missing from the ledger."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)
        ledger.remove("sg")

        assert "sg" not in [d.name for d in planner.targets(catalog)]
        assert "sg" in [d.name for d in planner.targets(catalog, rediscover=True)]

    def test_names_filter(self, tmp_path):
        """Test restricting a teardown to named resources."""
        cloud, planner, ledger, catalog = _deployed(tmp_path)

        report = planner.run(planner.targets(catalog, names=["app"]))

        assert list(report.states) == ["app"]
        assert cloud.operations("delete") == ["app"]
        assert ledger.get("regcred") is not None


class TestUnreachableCluster:
    """Test teardown after the cluster API is gone."""

    def test_terminated_master_skips_cluster_tiers(self, tmp_path):
        """Test that in-cluster resources are skipped and the infrastructure still goes."""
        checks = []

        def cluster_check():
            checks.append(True)
            return False

        cloud, planner, ledger, catalog = _deployed(tmp_path, cluster_check=cluster_check)
        del cloud.resources["master"]
        for name in ("app", "regcred"):
            cloud.errors[("probe", name)] = ProbeFailed("connection refused")

        report = planner.run(planner.targets(catalog))

        assert report.ok
        assert len(checks) == 1
        assert report.states["app"] == TeardownState.SKIPPED
        assert report.states["regcred"] == TeardownState.SKIPPED
        assert report.states["master"] == TeardownState.SKIPPED
        for name in ("worker1", "sg", "key", "repo"):
            assert report.states[name] == TeardownState.CONFIRMED_GONE
        assert "app" not in cloud.operations("probe")
        assert ledger.snapshot() == {}
        assert get_status_from_events() == "destroyed"

    def test_reachable_cluster_is_torn_down_normally(self, tmp_path):
        """Test that a healthy cluster check changes nothing."""
        cloud, planner, ledger, catalog = _deployed(tmp_path, cluster_check=lambda: True)

        report = planner.run(planner.targets(catalog))

        assert report.states["app"] == TeardownState.CONFIRMED_GONE
        assert cloud.operations("delete")[:2] == ["app", "regcred"]

    def test_check_skipped_without_cluster_targets(self, tmp_path):
        """Test that infrastructure-only teardowns never touch the cluster."""
        def cluster_check():
            raise AssertionError("cluster checked")

        cloud, planner, ledger, catalog = _deployed(tmp_path, cluster_check=cluster_check)

        report = planner.run(planner.targets(catalog, names=["sg", "key"]))

        assert report.ok
