"""
In-memory provider, clock and command runner shared by the tests.
"""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from rigger.config import ProjectConfig, TimingConfig
from rigger.executor import Executor
from rigger.ledger import Ledger
from rigger.models import ObservedState, Ref, ResourceDescriptor, ResourceKind
from rigger.providers.base import KindPolicy, Provider, ProviderContext, ProviderRegistry
from rigger.shell import CommandResult, classify_failure

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.current = 0.0
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.current += seconds


class FakeCloud:
    """Shared state behind every FakeProvider."""

    def __init__(self):
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.errors: Dict[Tuple[str, str], Exception] = {}   # (operation, name) -> error
        self.stuck: Set[str] = set()                          # deletes that never complete
        self.settle_after: Dict[str, int] = {}                # name -> probes left in a transitional phase
        self.lock = threading.Lock()

    def add(self, name: str, phase: str = "ready", settings: Optional[Dict[str, Any]] = None,
            attributes: Optional[Dict[str, str]] = None, created_at: Optional[datetime] = None) -> None:
        self.resources[name] = {
            "phase": phase,
            "settings": dict(settings or {}),
            "attributes": dict(attributes or {"id": f"id-{name}"}),
            "created_at": created_at or NOW,
        }

    def operations(self, operation: str) -> List[str]:
        return [name for op, name in self.calls if op == operation]

    def _raise_if_scripted(self, operation: str, name: str) -> None:
        error = self.errors.get((operation, name))
        if error is not None:
            raise error


class FakeProvider(Provider):
    """Provider over FakeCloud. Phase 'ready' is terminal-healthy."""

    def __init__(self, context: ProviderContext, kind: ResourceKind, cloud: FakeCloud,
                 policy: KindPolicy = KindPolicy()):
        super().__init__(context)
        self.kind = kind
        self.policy = policy
        self.cloud = cloud

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        cloud = self.cloud
        with cloud.lock:
            cloud.calls.append(("probe", descriptor.name))
            cloud._raise_if_scripted("probe", descriptor.name)
            resource = cloud.resources.get(descriptor.name)
            if resource is None:
                return ObservedState.not_found()

            left = cloud.settle_after.get(descriptor.name)
            if left is not None:
                if left <= 0:
                    resource["phase"] = "ready"
                    del cloud.settle_after[descriptor.name]
                else:
                    cloud.settle_after[descriptor.name] = left - 1

            return ObservedState(
                exists=True,
                phase=resource["phase"],
                attributes=dict(resource["attributes"]),
                settings=dict(resource["settings"]),
                created_at=resource["created_at"],
            )

    def create(self, descriptor: ResourceDescriptor) -> None:
        with self.cloud.lock:
            self.cloud.calls.append(("create", descriptor.name))
            self.cloud._raise_if_scripted("create", descriptor.name)
        self.cloud.add(descriptor.name, settings=dict(descriptor.spec))

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        with self.cloud.lock:
            self.cloud.calls.append(("update", descriptor.name))
            self.cloud._raise_if_scripted("update", descriptor.name)
            resource = self.cloud.resources[descriptor.name]
            resource["settings"].update(descriptor.spec)
            resource["phase"] = "ready"

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        with self.cloud.lock:
            self.cloud.calls.append(("delete", descriptor.name))
            self.cloud._raise_if_scripted("delete", descriptor.name)
            if descriptor.name not in self.cloud.stuck:
                self.cloud.resources.pop(descriptor.name, None)


def fast_config(**overrides) -> ProjectConfig:
    timing = TimingConfig(
        poll_interval_seconds=5,
        propagation_timeout_seconds=30,
        teardown_timeout_seconds=30,
        probe_attempts=2,
        backoff_base_seconds=0.1,
        backoff_max_seconds=0.2,
        parallelism=overrides.pop("parallelism", 1),
    )
    return ProjectConfig(timing=timing, **overrides)


def build_fake_stack(tmp_path, policies: Optional[Dict[ResourceKind, KindPolicy]] = None, **config_overrides):
    """
    Registry of FakeProviders for every kind, plus executor and ledger.

    Returns:
        Tuple of (cloud, registry, executor, ledger, clock)
    """
    config = fast_config(**config_overrides)
    clock = FakeClock()
    context = ProviderContext(config=config, sleep=clock.sleep)
    cloud = FakeCloud()
    registry = ProviderRegistry()
    for kind in ResourceKind:
        policy = (policies or {}).get(kind, KindPolicy())
        registry.register(FakeProvider(context, kind, cloud, policy))

    ledger = Ledger(tmp_path / "deployment-info.txt")
    executor = Executor(registry, ledger, config.timing, sleep=clock.sleep, clock=clock, now=lambda: NOW)
    return cloud, registry, executor, ledger, clock


def sample_catalog(master: str = "master") -> List[ResourceDescriptor]:
    """Small system shaped like the real one: keys, network, nodes, registry, secret, release."""
    return [
        ResourceDescriptor(kind=ResourceKind.KEY_PAIR, name="key", export_as={"id": "KEY_NAME"}),
        ResourceDescriptor(kind=ResourceKind.SECURITY_GROUP, name="sg", spec={"ports": [22]}),
        ResourceDescriptor(kind=ResourceKind.INSTANCE, name=master,
                           spec={"key": Ref("key", "id"), "sg": Ref("sg", "id")},
                           export_as={"id": "MASTER_INSTANCE_ID"}),
        ResourceDescriptor(kind=ResourceKind.INSTANCE, name="worker1",
                           spec={"key": Ref("key", "id"), "sg": Ref("sg", "id")}),
        ResourceDescriptor(kind=ResourceKind.ECR_REPOSITORY, name="repo", stage="registry"),
        ResourceDescriptor(kind=ResourceKind.K8S_SECRET, name="regcred", depends_on=[master],
                           spec={"server": Ref("repo", "id")}, stage="cluster", ttl_hours=12),
        ResourceDescriptor(kind=ResourceKind.HELM_RELEASE, name="app", depends_on=["regcred"],
                           spec={"values": {"replicas": 1}}, stage="applications"),
    ]


class FakeRunner:
    """
    Stand-in for shell.run. Rules match when every word appears in the command;
    the first matching rule answers, and ``once`` rules are used up.
    """

    def __init__(self):
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.rules: List[Dict[str, Any]] = []

    def on(self, *words: str, stdout: str = "", stderr: str = "", returncode: int = 0,
           once: bool = False, effect=None) -> "FakeRunner":
        self.rules.append({"words": words, "stdout": stdout, "stderr": stderr,
                           "returncode": returncode, "once": once, "effect": effect})
        return self

    def ran(self, *words: str) -> List[List[str]]:
        return [command for command in self.commands if all(w in command for w in words)]

    def __call__(self, command, input=None, env=None, cwd=None, check=True, timeout=None) -> CommandResult:
        self.commands.append(list(command))
        self.inputs.append(input)
        result = CommandResult(command=list(command), returncode=0, stdout="", stderr="")
        for rule in self.rules:
            if all(word in command for word in rule["words"]):
                if rule["once"]:
                    self.rules.remove(rule)
                if rule["effect"]:
                    rule["effect"](command)
                result = CommandResult(command=list(command), returncode=rule["returncode"],
                                       stdout=rule["stdout"], stderr=rule["stderr"])
                break
        if check and not result.ok:
            raise classify_failure(result)
        return result
