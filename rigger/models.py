"""
Data models for resource descriptors, observed state and decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class ResourceKind(Enum):
    """Kinds of resources the reconciler manages."""
    INSTANCE = "Instance"
    SECURITY_GROUP = "SecurityGroup"
    IAM_ROLE = "IamRole"
    INSTANCE_PROFILE = "InstanceProfile"
    KEY_PAIR = "KeyPair"
    ECR_REPOSITORY = "EcrRepository"
    DYNAMO_TABLE = "DynamoTable"
    K8S_SECRET = "K8sSecret"
    HELM_RELEASE = "HelmRelease"
    ARGO_APPLICATION = "ArgoApplication"


class Decision(Enum):
    """Outcome of comparing desired and observed state."""
    NOOP = "noop"
    CREATE = "create"
    UPDATE = "update"
    REFRESH = "refresh"
    RECREATE = "recreate"
    DELETE = "delete"
    WAIT = "wait"


# Lifecycle phases per kind. Anything not listed as transitional or failed
# is considered terminal-healthy once the resource exists.
TRANSITIONAL_PHASES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.INSTANCE: frozenset({"pending", "stopping", "shutting-down"}),
    ResourceKind.DYNAMO_TABLE: frozenset({"CREATING", "UPDATING", "DELETING"}),
    ResourceKind.HELM_RELEASE: frozenset({"pending-install", "pending-upgrade", "pending-rollback", "uninstalling"}),
    ResourceKind.ARGO_APPLICATION: frozenset({"Progressing", "Deleting"}),
}

FAILED_PHASES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.HELM_RELEASE: frozenset({"failed"}),
}

# Phases in which a resource no longer counts as present.
GONE_PHASES: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.INSTANCE: frozenset({"terminated"}),
    ResourceKind.HELM_RELEASE: frozenset({"uninstalled"}),
}


@dataclass(frozen=True)
class Ref:
    """Reference to an attribute of another resource, resolved during a pass."""
    name: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.name}.{self.attribute}"


@dataclass
class ResourceDescriptor:
    """Declarative specification of one managed resource."""
    kind: ResourceKind
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    stage: str = "infrastructure"
    ttl_hours: Optional[float] = None   # credential-bearing resources only
    export_as: Dict[str, str] = field(default_factory=dict)  # attribute -> shell variable

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.name}"

    def refs(self) -> List[Ref]:
        """Return every Ref found in the spec, including nested ones."""
        found: List[Ref] = []
        _collect_refs(self.spec, found)
        return found


def _collect_refs(value: Any, found: List[Ref]) -> None:
    if isinstance(value, Ref):
        found.append(value)
    elif isinstance(value, dict):
        for item in value.values():
            _collect_refs(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_refs(item, found)


def has_refs(value: Any) -> bool:
    """True if value is, or contains, an unresolved Ref."""
    found: List[Ref] = []
    _collect_refs(value, found)
    return bool(found)


@dataclass
class ObservedState:
    """Live-queried state of a resource. Never cached across passes."""
    exists: bool
    phase: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)  # observed counterparts of spec keys
    created_at: Optional[datetime] = None

    @classmethod
    def not_found(cls) -> "ObservedState":
        return cls(exists=False)

    def is_present(self, kind: ResourceKind) -> bool:
        return self.exists and self.phase not in GONE_PHASES.get(kind, frozenset())

    def is_transitional(self, kind: ResourceKind) -> bool:
        return self.exists and self.phase in TRANSITIONAL_PHASES.get(kind, frozenset())

    def is_failed(self, kind: ResourceKind) -> bool:
        return self.exists and self.phase in FAILED_PHASES.get(kind, frozenset())


@dataclass
class Outcome:
    """Result of reconciling (or tearing down) a single resource."""
    descriptor: ResourceDescriptor
    decision: Decision
    observed: Optional[ObservedState] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    drift: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped
