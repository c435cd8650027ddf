"""
Reconciler: decide what to do per resource, and drive a full pass.

``decide`` is a pure function of (descriptor, observed, policy, now). The
only wall-clock input is ``now``, used for TTL-based refresh; callers pass
it explicitly so identical inputs always give the same decision.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import FATAL_ERRORS, PreconditionMissing, RiggerError
from .events import emit_event, EventTypes
from .graph import ResourceGraph
from .ledger import Ledger
from .models import Decision, ObservedState, Outcome, ResourceDescriptor, has_refs
from .providers.base import KindPolicy

if TYPE_CHECKING:
    from .executor import Executor

logger = logging.getLogger(__name__)


def detect_drift(descriptor: ResourceDescriptor, observed: ObservedState) -> List[str]:
    """Spec keys whose observed value differs from the desired one."""
    drift = []
    for key, desired in descriptor.spec.items():
        if has_refs(desired):
            continue  # unresolved during a dry run
        if key in observed.settings and observed.settings[key] != desired:
            drift.append(key)
    return sorted(drift)


def decide(
    descriptor: ResourceDescriptor,
    observed: ObservedState,
    policy: KindPolicy,
    now: Optional[datetime] = None,
) -> Tuple[Decision, List[str]]:
    """
    Compare desired and observed state.

    Args:
        descriptor: Desired resource (Refs already resolved)
        observed: Freshly probed state
        policy: What the resource kind supports
        now: Current time, required only for TTL-bearing resources

    Returns:
        Tuple of (decision, drifted spec keys)
    """
    kind = descriptor.kind

    if not observed.is_present(kind):
        return Decision.CREATE, []

    if observed.is_transitional(kind):
        return Decision.WAIT, []

    if observed.is_failed(kind):
        if policy.recreate_failed:
            return Decision.RECREATE, [f"phase={observed.phase}"]
        return Decision.NOOP, [f"phase={observed.phase}"]

    drift = detect_drift(descriptor, observed)

    if any(key in policy.recreate_on for key in drift):
        return Decision.RECREATE, drift

    if any(key in policy.updatable for key in drift):
        return Decision.UPDATE, drift

    if observed.phase in policy.update_phases:
        return Decision.UPDATE, drift + [f"phase={observed.phase}"]

    if descriptor.ttl_hours is not None and now is not None and observed.created_at is not None:
        if now - observed.created_at >= timedelta(hours=descriptor.ttl_hours):
            return Decision.REFRESH, drift

    return Decision.NOOP, drift


def _is_fatal(outcome: Outcome) -> bool:
    return isinstance(outcome.error, FATAL_ERRORS)


def _aborted(descriptor: ResourceDescriptor) -> Outcome:
    logger.warning(f"Skipping {descriptor.name}: the pass was aborted")
    return Outcome(descriptor=descriptor, decision=Decision.NOOP, skipped=True)


@dataclass
class PassReport:
    """Summary of one reconciliation or teardown pass."""
    outcomes: List[Outcome] = field(default_factory=list)
    aborted_by: Optional[RiggerError] = None
    ledger: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.aborted_by is None and all(o.ok for o in self.outcomes)

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.error is not None]

    def decisions(self) -> Dict[str, Decision]:
        return {o.descriptor.name: o.decision for o in self.outcomes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "aborted_by": self.aborted_by.describe() if self.aborted_by else None,
            "outcomes": [
                {
                    "name": o.descriptor.name,
                    "kind": o.descriptor.kind.value,
                    "stage": o.descriptor.stage,
                    "decision": o.decision.value,
                    "drift": o.drift,
                    "skipped": o.skipped,
                    "error": o.error.describe() if isinstance(o.error, RiggerError) else (str(o.error) if o.error else None),
                }
                for o in self.outcomes
            ],
            "ledger": self.ledger,
        }


class Reconciler:
    """Runs reconciliation passes over a resource graph."""

    def __init__(self, graph: ResourceGraph, executor: "Executor", ledger: Ledger, parallelism: int = 1):
        self.graph = graph
        self.executor = executor
        self.ledger = ledger
        self.parallelism = max(1, parallelism)

    def _targets(self, names: Optional[Iterable[str]], stages: Optional[Iterable[str]]) -> List[ResourceDescriptor]:
        selected = list(self.graph.descriptors.values())
        if names:
            wanted = set(names)
            unknown = wanted - set(self.graph.descriptors)
            if unknown:
                raise KeyError(f"Unknown resources: {', '.join(sorted(unknown))}")
            selected = [d for d in selected if d.name in wanted]
        if stages:
            wanted_stages = set(stages)
            selected = [d for d in selected if d.stage in wanted_stages]
        return self.graph.select(d.name for d in selected)

    def _resolve_external(self, targets: List[ResourceDescriptor]) -> Dict[str, Dict[str, str]]:
        """Probe prerequisites that are outside this pass; they must already exist."""
        in_scope = {d.name for d in targets}
        resolved: Dict[str, Dict[str, str]] = {}
        external = []
        for descriptor in targets:
            for prerequisite in self.graph.prerequisites(descriptor.name):
                if prerequisite not in in_scope and prerequisite not in external:
                    external.append(prerequisite)

        for name in external:
            upstream = self.graph.descriptors[name]
            attributes = self.executor.observe(upstream, resolved)
            if attributes is None:
                raise PreconditionMissing(
                    f"Required resource {upstream.kind.value} {name} does not exist",
                    resource=name,
                    stage=upstream.stage,
                    remediation=f"rigger up --stage {upstream.stage}",
                )
            resolved[name] = attributes
        return resolved

    def plan(self, names: Optional[Iterable[str]] = None, stages: Optional[Iterable[str]] = None) -> PassReport:
        """
        Probe and decide without acting (dry run).

        Resources whose prerequisites do not exist yet are decided against
        unresolved references and reported as CREATE when absent.
        """
        report = PassReport()
        resolved: Dict[str, Dict[str, str]] = {}
        for descriptor in self._targets(names, stages):
            outcome = self.executor.assess(descriptor, resolved)
            if outcome.observed is not None and outcome.observed.exists:
                resolved[descriptor.name] = outcome.observed.attributes
            report.outcomes.append(outcome)
        report.ledger = self.ledger.snapshot()
        return report

    def run(
        self,
        names: Optional[Iterable[str]] = None,
        stages: Optional[Iterable[str]] = None,
        force_refresh: Iterable[str] = (),
    ) -> PassReport:
        """
        Reconcile the selected resources layer by layer.

        Independent resources inside a layer run concurrently. A fatal error
        (precondition missing, provider rejected) aborts the pass at once:
        resources of the layer that have not started are reported skipped and
        later layers never run. Other failures only block the failing
        resource's dependents.

        Returns:
            PassReport with every outcome and the resulting ledger snapshot
        """
        report = PassReport()
        targets = self._targets(names, stages)
        refresh = set(force_refresh)

        emit_event(EventTypes.PASS_START, {
            "resources": [d.name for d in targets],
            "force_refresh": sorted(refresh),
        })

        try:
            resolved = self._resolve_external(targets)
        except RiggerError as e:
            report.aborted_by = e
            return self._finish(report)

        in_scope = {d.name for d in targets}
        blocked: Set[str] = set()

        for layer in self.graph.layers():
            batch = [d for d in layer if d.name in in_scope]
            if not batch:
                continue

            runnable = []
            for descriptor in batch:
                if descriptor.name in blocked:
                    report.outcomes.append(Outcome(descriptor=descriptor, decision=Decision.NOOP, skipped=True))
                    logger.warning(f"Skipping {descriptor.name}: a prerequisite failed")
                else:
                    runnable.append(descriptor)

            snapshot = dict(resolved)
            outcomes = self._run_layer(runnable, snapshot, refresh)

            for outcome in outcomes:
                report.outcomes.append(outcome)
                name = outcome.descriptor.name
                if outcome.skipped:
                    continue
                if outcome.error is None:
                    resolved[name] = outcome.attributes
                    continue

                blocked.update(self.graph.transitive_dependents(name))
                if _is_fatal(outcome) and report.aborted_by is None:
                    report.aborted_by = outcome.error

            if report.aborted_by is not None:
                break

        return self._finish(report)

    def _run_layer(self, batch: List[ResourceDescriptor], resolved: Dict[str, Dict[str, str]],
                   refresh: Set[str]) -> List[Outcome]:
        """Reconcile one layer; after a fatal outcome, resources not yet started are skipped."""
        if len(batch) <= 1 or self.parallelism == 1:
            outcomes: List[Outcome] = []
            for descriptor in batch:
                if any(_is_fatal(o) for o in outcomes):
                    outcomes.append(_aborted(descriptor))
                else:
                    outcomes.append(self.executor.reconcile(descriptor, resolved, force_refresh=descriptor.name in refresh))
            return outcomes

        with ThreadPoolExecutor(max_workers=self.parallelism) as pool:
            futures = [pool.submit(self.executor.reconcile, d, resolved, d.name in refresh) for d in batch]
            for future in as_completed(futures):
                if not future.cancelled() and _is_fatal(future.result()):
                    # Running calls finish; queued ones never start
                    for pending in futures:
                        pending.cancel()

        return [_aborted(d) if future.cancelled() else future.result() for d, future in zip(batch, futures)]

    def _finish(self, report: PassReport) -> PassReport:
        report.ledger = self.ledger.snapshot()
        emit_event(EventTypes.PASS_DONE, {
            "ok": report.ok,
            "aborted_by": report.aborted_by.describe() if report.aborted_by else None,
            "decisions": {name: d.value for name, d in report.decisions().items()},
        })
        return report
