"""
ArgoCD Application provider.

Applications are applied with kubectl into the ArgoCD namespace. A pass
only reports success once the Application is Synced and Healthy.
"""

import logging
from typing import Any, Dict

from .. import manifests
from ..models import ObservedState, ResourceDescriptor, ResourceKind
from .base import KindPolicy, Provider, ProviderContext, log_action
from .kube import Kubectl

logger = logging.getLogger(__name__)

APPLICATION_RESOURCE = "applications.argoproj.io"


def application_phase(application: Dict[str, Any]) -> str:
    """
    Collapse sync and health status into one phase.

    Healthy means Synced and Healthy. Progressing covers both an
    unreconciled Application and one whose workloads are still rolling out.
    """
    if application.get("metadata", {}).get("deletionTimestamp"):
        return "Deleting"

    status = application.get("status", {})
    sync = status.get("sync", {}).get("status", "Unknown")
    health = status.get("health", {}).get("status", "Unknown")

    if health == "Progressing" or sync == "Unknown":
        return "Progressing"
    if sync == "Synced" and health == "Healthy":
        return "Healthy"
    if sync == "OutOfSync":
        return "OutOfSync"
    return health


class ArgoApplicationProvider(Provider):
    """ArgoCD Application with automated prune and self-heal."""

    kind = ResourceKind.ARGO_APPLICATION
    policy = KindPolicy(
        updatable=frozenset({"repo_url", "path", "target_revision", "destination_namespace"}),
        update_phases=frozenset({"OutOfSync"}),
    )
    ready_timeout_field = "sync_timeout_seconds"

    def __init__(self, context: ProviderContext, kubectl: Kubectl):
        super().__init__(context)
        self.kubectl = kubectl

    def _namespace(self, descriptor: ResourceDescriptor) -> str:
        return descriptor.spec.get("namespace") or self.context.config.argocd_namespace

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        namespace = self._namespace(descriptor)
        application = self.call(lambda: self.kubectl.get(APPLICATION_RESOURCE, descriptor.name, namespace),
                                f"get application {descriptor.name}")
        if application is None:
            return ObservedState.not_found()

        spec = application.get("spec", {})
        source = spec.get("source", {})
        status = application.get("status", {})
        return ObservedState(
            exists=True,
            phase=application_phase(application),
            attributes={
                "application": descriptor.name,
                "namespace": namespace,
                "sync_status": status.get("sync", {}).get("status", "Unknown"),
                "health_status": status.get("health", {}).get("status", "Unknown"),
                "revision": status.get("sync", {}).get("revision", ""),
                "repo_url": source.get("repoURL", ""),
            },
            settings={
                "repo_url": source.get("repoURL"),
                "path": source.get("path"),
                "target_revision": source.get("targetRevision"),
                "destination_namespace": spec.get("destination", {}).get("namespace"),
            },
        )

    def is_ready(self, descriptor: ResourceDescriptor, observed: ObservedState) -> bool:
        return observed.exists and observed.phase == "Healthy"

    def _manifest(self, descriptor: ResourceDescriptor, refresh: bool = False) -> Dict[str, Any]:
        spec = descriptor.spec
        return manifests.argo_application(
            name=descriptor.name,
            namespace=self._namespace(descriptor),
            repo_url=spec["repo_url"],
            path=spec["path"],
            destination_namespace=spec.get("destination_namespace", self.context.config.namespace),
            target_revision=spec.get("target_revision", "main"),
            project=spec.get("project", "default"),
            refresh=refresh,
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        log_action("Applying", descriptor, descriptor.spec["path"])
        self.call(lambda: self.kubectl.apply(self._manifest(descriptor)), f"apply application {descriptor.name}")

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        log_action("Re-applying", descriptor, f"phase {observed.phase}")
        self.call(lambda: self.kubectl.apply(self._manifest(descriptor, refresh=True)),
                  f"apply application {descriptor.name}")

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        namespace = self._namespace(descriptor)
        log_action("Deleting", descriptor, namespace)
        # The resources finalizer makes ArgoCD prune the workloads before the Application goes away
        self.call(lambda: self.kubectl.delete(APPLICATION_RESOURCE, descriptor.name, namespace, wait=False),
                  f"delete application {descriptor.name}")
