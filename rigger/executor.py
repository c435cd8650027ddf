"""
Action Executor: perform the side effect a decision calls for and await a
terminal phase before reporting success.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .config import TimingConfig
from .errors import PreconditionMissing, RiggerError
from .events import emit_event, EventTypes
from .ledger import Ledger
from .models import Decision, ObservedState, Outcome, Ref, ResourceDescriptor
from .poll import wait_until
from .providers.base import Provider, ProviderRegistry
from .reconciler import decide

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Executor:
    """Drives providers for one resource at a time. Safe to share between threads."""

    def __init__(
        self,
        registry: ProviderRegistry,
        ledger: Ledger,
        timing: TimingConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.ledger = ledger
        self.timing = timing
        self.sleep = sleep
        self.clock = clock
        self.now = now

    # Resolution

    def concretize(self, descriptor: ResourceDescriptor, resolved: Dict[str, Dict[str, str]],
                  strict: bool = True) -> ResourceDescriptor:
        def resolve(value: Any) -> Any:
            if isinstance(value, Ref):
                attrs = resolved.get(value.name)
                if attrs is not None and value.attribute in attrs:
                    return attrs[value.attribute]
                if not strict:
                    return value
                raise PreconditionMissing(
                    f"{descriptor.name} needs {value} but it is not available",
                    resource=descriptor.name,
                    stage=descriptor.stage,
                    remediation=f"rigger up --stage {descriptor.stage}",
                )
            if isinstance(value, dict):
                return {k: resolve(v) for k, v in value.items()}
            if isinstance(value, list):
                return [resolve(v) for v in value]
            return value

        return replace(descriptor, spec=resolve(descriptor.spec))

    # Waits

    def _wait(self, predicate: Callable[[], bool], timeout: float, describe: str,
              descriptor: ResourceDescriptor) -> None:
        wait_until(
            predicate,
            timeout=timeout,
            interval=self.timing.poll_interval_seconds,
            describe=describe,
            resource=descriptor.name,
            stage=descriptor.stage,
            remediation=f"rigger up --stage {descriptor.stage}",
            sleep=self.sleep,
            clock=self.clock,
        )

    def _await_ready(self, provider: Provider, descriptor: ResourceDescriptor) -> ObservedState:
        latest: Dict[str, ObservedState] = {}

        def ready() -> bool:
            latest["observed"] = provider.probe(descriptor)
            return provider.is_ready(descriptor, latest["observed"])

        self._wait(ready, provider.ready_timeout, f"{descriptor.kind.value} {descriptor.name} to become ready",
                   descriptor)
        return latest["observed"]

    def _await_settled(self, provider: Provider, descriptor: ResourceDescriptor) -> ObservedState:
        latest: Dict[str, ObservedState] = {}

        def settled() -> bool:
            latest["observed"] = provider.probe(descriptor)
            return not latest["observed"].is_transitional(descriptor.kind)

        self._wait(settled, provider.ready_timeout, f"{descriptor.kind.value} {descriptor.name} to leave a transitional phase",
                   descriptor)
        return latest["observed"]

    def await_gone(self, provider: Provider, descriptor: ResourceDescriptor) -> None:
        self._wait(lambda: provider.is_gone(provider.probe(descriptor)),
                   self.timing.teardown_timeout_seconds,
                   f"{descriptor.kind.value} {descriptor.name} to be deleted",
                   descriptor)

    # Operations

    def observe(self, descriptor: ResourceDescriptor, resolved: Dict[str, Dict[str, str]]) -> Optional[Dict[str, str]]:
        """
        Probe a resource and record it in the ledger if present.

        Returns:
            Attributes of the live resource, or None when it does not exist
        """
        provider = self.registry.get(descriptor.kind)
        concrete = self.concretize(descriptor, resolved, strict=False)
        observed = provider.probe(concrete)
        if not observed.is_present(descriptor.kind):
            return None
        self._record(descriptor, observed.attributes)
        return observed.attributes

    def assess(self, descriptor: ResourceDescriptor, resolved: Dict[str, Dict[str, str]]) -> Outcome:
        """Probe and decide, without acting."""
        provider = self.registry.get(descriptor.kind)
        concrete = self.concretize(descriptor, resolved, strict=False)
        try:
            observed = provider.probe(concrete)
        except RiggerError as e:
            return Outcome(descriptor=descriptor, decision=Decision.NOOP, error=self._annotate(e, descriptor))
        decision, drift = decide(concrete, observed, provider.policy, self.now())
        return Outcome(descriptor=descriptor, decision=decision, observed=observed,
                       attributes=observed.attributes, drift=drift)

    def reconcile(self, descriptor: ResourceDescriptor, resolved: Dict[str, Dict[str, str]],
                  force_refresh: bool = False) -> Outcome:
        """
        Probe, decide and act on one resource.

        Args:
            descriptor: Resource to reconcile
            resolved: Attributes of already-reconciled resources, for Refs
            force_refresh: Refresh a TTL-bearing resource even if not expired

        Returns:
            Outcome; errors are captured on the outcome rather than raised
        """
        outcome = Outcome(descriptor=descriptor, decision=Decision.NOOP)
        try:
            self._reconcile(descriptor, resolved, force_refresh, outcome)
        except RiggerError as e:
            outcome.error = self._annotate(e, descriptor)
            logger.error(f"✗ {descriptor.name}: {outcome.error.describe()}")
            emit_event(EventTypes.RESOURCE_FAILED, {
                "name": descriptor.name,
                "kind": descriptor.kind.value,
                "error": type(e).__name__,
                "detail": outcome.error.describe(),
            })
        return outcome

    def _reconcile(self, descriptor: ResourceDescriptor, resolved: Dict[str, Dict[str, str]],
                   force_refresh: bool, outcome: Outcome) -> None:
        provider = self.registry.get(descriptor.kind)
        concrete = self.concretize(descriptor, resolved)

        observed = provider.probe(concrete)
        emit_event(EventTypes.PROBE, {"name": descriptor.name, "exists": observed.exists, "phase": observed.phase})

        decision, drift = decide(concrete, observed, provider.policy, self.now())
        if decision == Decision.WAIT:
            observed = self._await_settled(provider, concrete)
            decision, drift = decide(concrete, observed, provider.policy, self.now())

        if force_refresh and decision == Decision.NOOP and descriptor.ttl_hours is not None:
            decision = Decision.REFRESH

        outcome.decision = decision
        outcome.drift = drift
        emit_event(EventTypes.DECISION, {"name": descriptor.name, "decision": decision.value, "drift": drift})

        if drift and decision == Decision.NOOP:
            hint = provider.drift_hint(concrete, drift)
            logger.warning(f"⚠ {descriptor.name} drifted on {', '.join(drift)} but {descriptor.kind.value} "
                           f"cannot change it in place; leaving as is"
                           + (f" (fix: {hint})" if hint else ""))

        if decision != Decision.NOOP:
            emit_event(EventTypes.ACTION_START, {"name": descriptor.name, "decision": decision.value})
            observed = self._act(provider, concrete, decision, observed)
            emit_event(EventTypes.ACTION_DONE, {"name": descriptor.name, "decision": decision.value})

        outcome.observed = observed
        outcome.attributes = dict(observed.attributes)
        self._record(descriptor, outcome.attributes)

    def _act(self, provider: Provider, descriptor: ResourceDescriptor, decision: Decision,
             observed: ObservedState) -> ObservedState:
        if decision == Decision.CREATE:
            # Re-probe right before acting to narrow the check-then-act window
            latest = provider.probe(descriptor)
            if latest.is_present(descriptor.kind):
                logger.info(f"{descriptor.name} appeared since the last probe; not creating")
                return self._await_ready(provider, descriptor)
            logger.info(f"ℹ Creating {descriptor.kind.value} {descriptor.name}")
            provider.create(descriptor)

        elif decision == Decision.UPDATE:
            logger.info(f"ℹ Updating {descriptor.kind.value} {descriptor.name}")
            provider.update(descriptor, observed)

        elif decision == Decision.REFRESH:
            logger.info(f"ℹ Refreshing {descriptor.kind.value} {descriptor.name}")
            provider.refresh(descriptor, observed)

        elif decision == Decision.RECREATE:
            logger.info(f"ℹ Recreating {descriptor.kind.value} {descriptor.name}")
            provider.delete(descriptor, observed)
            self.await_gone(provider, descriptor)
            provider.create(descriptor)

        elif decision == Decision.DELETE:
            raise ValueError("DELETE is only issued by the teardown planner")

        ready = self._await_ready(provider, descriptor)
        logger.info(f"✓ {descriptor.kind.value} {descriptor.name} is ready")
        return ready

    def _record(self, descriptor: ResourceDescriptor, attributes: Dict[str, str]) -> None:
        entry = {"kind": descriptor.kind.value}
        entry.update(attributes)
        self.ledger.upsert(descriptor.name, entry, aliases=descriptor.export_as)
        emit_event(EventTypes.LEDGER_UPSERT, {"name": descriptor.name, "attributes": sorted(entry)})

    @staticmethod
    def _annotate(error: RiggerError, descriptor: ResourceDescriptor) -> RiggerError:
        if error.resource is None:
            error.resource = descriptor.name
        if error.stage is None:
            error.stage = descriptor.stage
        if error.remediation is None:
            error.remediation = f"rigger up --stage {descriptor.stage}"
        return error
