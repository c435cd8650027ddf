"""
Teardown planner: delete everything the ledger recorded, tier by tier.

Each resource moves Present -> Deleting -> Confirmed-Gone, or is skipped
when already absent. A tier only starts once every resource of the previous
tier is confirmed gone, so for example the security group is never deleted
while an instance that references it still exists.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .errors import RiggerError
from .events import emit_event, EventTypes
from .executor import Executor
from .ledger import Ledger
from .models import ResourceDescriptor, ResourceKind
from .providers.base import ProviderRegistry

logger = logging.getLogger(__name__)

# application layer -> data -> compute -> network -> identity -> registry
TEARDOWN_TIERS: Dict[ResourceKind, int] = {
    ResourceKind.ARGO_APPLICATION: 0,
    ResourceKind.HELM_RELEASE: 1,
    ResourceKind.K8S_SECRET: 2,
    ResourceKind.DYNAMO_TABLE: 3,
    ResourceKind.INSTANCE: 4,
    ResourceKind.SECURITY_GROUP: 5,
    ResourceKind.INSTANCE_PROFILE: 6,
    ResourceKind.IAM_ROLE: 7,
    ResourceKind.KEY_PAIR: 8,
    ResourceKind.ECR_REPOSITORY: 9,
}

# Deleted through the cluster API; they die with the nodes when the API is gone
CLUSTER_KINDS = frozenset({
    ResourceKind.ARGO_APPLICATION,
    ResourceKind.HELM_RELEASE,
    ResourceKind.K8S_SECRET,
})


class TeardownState(Enum):
    PRESENT = "present"
    DELETING = "deleting"
    CONFIRMED_GONE = "confirmed-gone"
    SKIPPED = "skipped"          # already absent, or the cluster holding it is unreachable
    FAILED = "failed"
    PENDING = "pending"          # never attempted because an earlier tier failed


@dataclass
class TeardownReport:
    states: Dict[str, TeardownState] = field(default_factory=dict)
    errors: Dict[str, RiggerError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors and all(
            s in (TeardownState.CONFIRMED_GONE, TeardownState.SKIPPED) for s in self.states.values()
        )

    def to_dict(self) -> Dict:
        return {
            "ok": self.ok,
            "states": {name: state.value for name, state in self.states.items()},
            "errors": {name: e.describe() for name, e in self.errors.items()},
        }


class TeardownPlanner:
    """Inverse reconciler driven by the ledger."""

    def __init__(self, registry: ProviderRegistry, ledger: Ledger, executor: Executor,
                 tiers: Optional[Dict[ResourceKind, int]] = None, parallelism: int = 1,
                 cluster_check: Optional[Callable[[], bool]] = None):
        self.registry = registry
        self.ledger = ledger
        self.executor = executor
        self.tiers = tiers or TEARDOWN_TIERS
        self.parallelism = max(1, parallelism)
        self.cluster_check = cluster_check

    def targets(self, catalog: Iterable[ResourceDescriptor], rediscover: bool = False,
                names: Optional[Iterable[str]] = None) -> List[ResourceDescriptor]:
        """
        Resources to delete.

        Ledger entries are matched against the catalog by name. Entries the
        catalog no longer declares are rebuilt from their recorded kind and
        attributes. With rediscover, catalog resources missing from the
        ledger are included as well (the ledger is only a cache).
        """
        by_name = {d.name: d for d in catalog}
        recorded = self.ledger.snapshot()
        selected: List[ResourceDescriptor] = []

        for name, attributes in recorded.items():
            if name in by_name:
                selected.append(by_name[name])
                continue
            try:
                kind = ResourceKind(attributes.get("kind", ""))
            except ValueError:
                logger.warning(f"Ledger entry {name} has no usable kind; skipping")
                continue
            spec = {k: v for k, v in attributes.items() if k != "kind"}
            selected.append(ResourceDescriptor(kind=kind, name=name, spec=spec, stage="teardown"))

        if rediscover:
            for name, descriptor in by_name.items():
                if name not in recorded:
                    selected.append(descriptor)

        if names is not None:
            wanted = set(names)
            selected = [d for d in selected if d.name in wanted]

        return selected

    def stages(self, targets: List[ResourceDescriptor]) -> List[List[ResourceDescriptor]]:
        """Group targets into tiers, earliest-deleted first."""
        grouped: Dict[int, List[ResourceDescriptor]] = {}
        for descriptor in targets:
            grouped.setdefault(self.tiers[descriptor.kind], []).append(descriptor)
        return [grouped[tier] for tier in sorted(grouped)]

    def run(self, targets: List[ResourceDescriptor]) -> TeardownReport:
        """
        Delete targets tier by tier with a strict barrier between tiers.

        When a cluster check is configured and the cluster does not answer,
        cluster-side targets are skipped and forgotten rather than failed, so
        the infrastructure tiers can still run after the master is gone.

        Returns:
            TeardownReport with the final state of every target
        """
        report = TeardownReport()
        for descriptor in targets:
            report.states[descriptor.name] = TeardownState.PRESENT

        emit_event(EventTypes.TEARDOWN_START, {"resources": [d.name for d in targets]})

        in_cluster = [d for d in targets if d.kind in CLUSTER_KINDS]
        if in_cluster and self.cluster_check is not None and not self.cluster_check():
            for descriptor in in_cluster:
                self._skip_unreachable(descriptor, report)
            targets = [d for d in targets if d.kind not in CLUSTER_KINDS]

        stages = self.stages(targets)
        for index, stage in enumerate(stages):
            self._run_stage(stage, report)

            if any(report.states[d.name] == TeardownState.FAILED for d in stage):
                for later in stages[index + 1:]:
                    for descriptor in later:
                        report.states[descriptor.name] = TeardownState.PENDING
                logger.error("✗ Teardown halted: a resource in this tier could not be confirmed gone")
                break

        emit_event(EventTypes.TEARDOWN_DONE, report.to_dict())
        return report

    def _run_stage(self, stage: List[ResourceDescriptor], report: TeardownReport) -> None:
        if len(stage) == 1 or self.parallelism == 1:
            for descriptor in stage:
                self._teardown_one(descriptor, report)
            return

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            futures = [pool.submit(self._teardown_one, d, report) for d in stage]
            for future in futures:
                future.result()

    def _skip_unreachable(self, descriptor: ResourceDescriptor, report: TeardownReport) -> None:
        report.states[descriptor.name] = TeardownState.SKIPPED
        logger.warning(f"⚠ Cannot access Kubernetes cluster - skipping {descriptor.kind.value} {descriptor.name}")
        self.ledger.remove(descriptor.name)
        emit_event(EventTypes.TEARDOWN_RESOURCE, {
            "name": descriptor.name,
            "kind": descriptor.kind.value,
            "state": TeardownState.SKIPPED.value,
            "reason": "cluster unreachable",
        })

    def _teardown_one(self, descriptor: ResourceDescriptor, report: TeardownReport) -> None:
        provider = self.registry.get(descriptor.kind)
        concrete = self.executor.concretize(descriptor, self.ledger.snapshot(), strict=False)

        try:
            observed = provider.probe(concrete)
            if provider.is_gone(observed):
                report.states[descriptor.name] = TeardownState.SKIPPED
                logger.info(f"⚠ {descriptor.kind.value} {descriptor.name} already absent")
            else:
                report.states[descriptor.name] = TeardownState.DELETING
                logger.info(f"ℹ Deleting {descriptor.kind.value} {descriptor.name}")
                provider.delete(concrete, observed)
                self.executor.await_gone(provider, concrete)
                report.states[descriptor.name] = TeardownState.CONFIRMED_GONE
                logger.info(f"✓ {descriptor.kind.value} {descriptor.name} deleted")
            self.ledger.remove(descriptor.name)
        except RiggerError as e:
            if e.resource is None:
                e.resource = descriptor.name
            if e.stage is None:
                e.stage = "teardown"
            if e.remediation is None:
                e.remediation = "rigger teardown"
            report.states[descriptor.name] = TeardownState.FAILED
            report.errors[descriptor.name] = e
            logger.error(f"✗ {e.describe()}")

        emit_event(EventTypes.TEARDOWN_RESOURCE, {
            "name": descriptor.name,
            "kind": descriptor.kind.value,
            "state": report.states[descriptor.name].value,
        })
