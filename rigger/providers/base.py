"""
Provider interface shared by every resource kind.

A provider is both the State Prober (``probe``) and the backend the Action
Executor drives (``create``/``update``/``refresh``/``delete``).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, TypeVar
import logging
import time

from ..config import ProjectConfig, TimingConfig
from ..errors import TransientError
from ..models import ObservedState, ResourceDescriptor, ResourceKind
from ..poll import retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class KindPolicy:
    """What a kind can do about drift."""
    updatable: FrozenSet[str] = frozenset()     # spec keys changeable in place
    recreate_on: FrozenSet[str] = frozenset()   # spec keys that force replacement
    recreate_failed: bool = False               # replace resources stuck in a failed phase
    update_phases: FrozenSet[str] = frozenset() # healthy-but-idle phases fixed in place (e.g. stopped)


@dataclass
class ProviderContext:
    """Shared collaborators handed to every provider."""
    config: ProjectConfig
    sleep: Callable[[float], None] = time.sleep

    @property
    def timing(self) -> TimingConfig:
        return self.config.timing


class Provider(ABC):
    """Abstract base class for resource providers."""

    kind: ResourceKind
    policy: KindPolicy = KindPolicy()
    ready_timeout_field: str = "propagation_timeout_seconds"

    def __init__(self, context: ProviderContext):
        self.context = context

    @property
    def timing(self) -> TimingConfig:
        return self.context.timing

    @property
    def ready_timeout(self) -> float:
        return getattr(self.timing, self.ready_timeout_field)

    def call(self, fn: Callable[[], T], describe: str) -> T:
        """Run a provider call with the configured retry budget for transient errors."""
        return retry(
            fn,
            attempts=self.timing.probe_attempts,
            base_delay=self.timing.backoff_base_seconds,
            max_delay=self.timing.backoff_max_seconds,
            retry_on=(TransientError,),
            describe=describe,
            sleep=self.context.sleep,
        )

    @abstractmethod
    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        """
        Query live state without side effects.

        Returns:
            ObservedState; ObservedState.not_found() when the resource is absent

        Raises:
            ProbeFailed: When the provider could not be queried
        """

    @abstractmethod
    def create(self, descriptor: ResourceDescriptor) -> None:
        """Issue the create call. The executor awaits readiness afterwards."""

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        """Update in place. Only called for kinds whose policy lists updatable keys or phases."""
        raise NotImplementedError(f"{self.kind.value} does not support update in place")

    def refresh(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        """Rotate a time-limited credential. Default: delete then create."""
        self.delete(descriptor, observed)
        self.create(descriptor)

    @abstractmethod
    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        """Issue the delete call. Must tolerate the resource already being gone."""

    def is_ready(self, descriptor: ResourceDescriptor, observed: ObservedState) -> bool:
        """True once the resource reached a terminal healthy phase."""
        return (
            observed.is_present(self.kind)
            and not observed.is_transitional(self.kind)
            and not observed.is_failed(self.kind)
        )

    def drift_hint(self, descriptor: ResourceDescriptor, drift: List[str]) -> Optional[str]:
        """Command that fixes drift this kind cannot fix itself, if there is one."""
        return None

    def is_gone(self, observed: ObservedState) -> bool:
        return not observed.is_present(self.kind)


class ProviderRegistry:
    """Maps resource kinds to provider instances."""

    def __init__(self):
        self._providers: Dict[ResourceKind, Provider] = {}

    def register(self, provider: Provider) -> None:
        self._providers[provider.kind] = provider

    def get(self, kind: ResourceKind) -> Provider:
        provider = self._providers.get(kind)
        if provider is None:
            raise KeyError(f"No provider registered for {kind.value}")
        return provider

    def kinds(self) -> FrozenSet[ResourceKind]:
        return frozenset(self._providers)

    def __contains__(self, kind: ResourceKind) -> bool:
        return kind in self._providers


def log_action(action: str, descriptor: ResourceDescriptor, detail: Optional[str] = None) -> None:
    suffix = f" ({detail})" if detail else ""
    logger.info(f"{action} {descriptor.kind.value} {descriptor.name}{suffix}")
