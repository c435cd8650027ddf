"""
Helm release provider.

Releases are installed with ``helm upgrade --install`` and a values
document on stdin, so create and update are the same idempotent call.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from .. import manifests
from ..models import ObservedState, ResourceDescriptor, ResourceKind
from ..shell import CommandResult, classify_failure, run
from .base import KindPolicy, Provider, ProviderContext, log_action
from .kube import ClusterAccess, Kubectl

logger = logging.getLogger(__name__)


class Helm:
    """helm bound to the cluster's kubeconfig."""

    def __init__(self, access: ClusterAccess, runner: Callable[..., CommandResult] = run):
        self.access = access
        self.runner = runner
        self._repos_added = set()
        self._repo_lock = threading.Lock()

    def __call__(self, *args: str, input: Optional[str] = None, check: bool = True,
                 timeout: Optional[float] = None) -> CommandResult:
        kubeconfig = self.access.ensure()
        return self.runner(["helm", "--kubeconfig", str(kubeconfig), *args],
                           input=input, check=check, timeout=timeout)

    def add_repo(self, name: str, url: str) -> None:
        """Register a chart repository once per process."""
        with self._repo_lock:
            if name in self._repos_added:
                return
            self.runner(["helm", "repo", "add", name, url, "--force-update"])
            self.runner(["helm", "repo", "update", name])
            self._repos_added.add(name)

    def status(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        result = self("status", release, "-n", namespace, "-o", "json", check=False)
        if result.ok:
            return json.loads(result.stdout)
        if result.not_found:
            return None
        raise classify_failure(result)

    def values(self, release: str, namespace: str) -> Dict[str, Any]:
        result = self("get", "values", release, "-n", namespace, "-o", "json")
        return json.loads(result.stdout or "null") or {}


class HelmReleaseProvider(Provider):
    """
    Helm release.

    Spec keys: chart, namespace, values, optional repo {name, url},
    chart_version, and export_secrets {attribute: {secret, key}} for
    credentials the chart generates (ArgoCD's initial admin password).
    """

    kind = ResourceKind.HELM_RELEASE
    policy = KindPolicy(updatable=frozenset({"values", "chart_version"}), recreate_failed=True)
    ready_timeout_field = "release_timeout_seconds"

    def __init__(self, context: ProviderContext, helm: Helm, kubectl: Kubectl):
        super().__init__(context)
        self.helm = helm
        self.kubectl = kubectl

    def _namespace(self, descriptor: ResourceDescriptor) -> str:
        return descriptor.spec.get("namespace") or self.context.config.namespace

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        namespace = self._namespace(descriptor)
        status = self.call(lambda: self.helm.status(descriptor.name, namespace),
                           f"helm status {descriptor.name}")
        if status is None:
            return ObservedState.not_found()

        info = status.get("info", {})
        chart = status.get("chart", {}).get("metadata", {})
        phase = info.get("status", "unknown")

        settings: Dict[str, Any] = {}
        if "values" in descriptor.spec:
            settings["values"] = self.call(lambda: self.helm.values(descriptor.name, namespace),
                                           f"helm get values {descriptor.name}")
        if "chart_version" in descriptor.spec:
            settings["chart_version"] = chart.get("version")

        attributes = {
            "release": descriptor.name,
            "namespace": namespace,
            "revision": str(status.get("version", "")),
            "status": phase,
            "chart": f"{chart.get('name', '')}-{chart.get('version', '')}".strip("-"),
        }
        if phase == "deployed":
            attributes.update(self._exported_secrets(descriptor, namespace))

        return ObservedState(exists=True, phase=phase, attributes=attributes, settings=settings)

    def _exported_secrets(self, descriptor: ResourceDescriptor, namespace: str) -> Dict[str, str]:
        exported = {}
        for attribute, source in descriptor.spec.get("export_secrets", {}).items():
            value = self.call(
                lambda: self.kubectl.secret_value(source["secret"], source.get("namespace", namespace), source["key"]),
                f"read secret {source['secret']}",
            )
            if value is None:
                logger.warning(f"⚠ Secret {source['secret']} not found; {attribute} not recorded")
                continue
            exported[attribute] = value
        return exported

    def create(self, descriptor: ResourceDescriptor) -> None:
        log_action("Installing", descriptor, descriptor.spec["chart"])
        self._upgrade_install(descriptor)

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        log_action("Upgrading", descriptor, descriptor.spec["chart"])
        self._upgrade_install(descriptor)

    def _upgrade_install(self, descriptor: ResourceDescriptor) -> None:
        spec = descriptor.spec
        namespace = self._namespace(descriptor)
        repo = spec.get("repo")
        if repo:
            self.call(lambda: self.helm.add_repo(repo["name"], repo["url"]), f"helm repo add {repo['name']}")

        timeout = int(self.timing.release_timeout_seconds)
        args = [
            "upgrade", "--install", descriptor.name, spec["chart"],
            "-n", namespace, "--create-namespace",
            "-f", "-",
            "--wait", "--timeout", f"{timeout}s",
        ]
        if spec.get("chart_version"):
            args += ["--version", str(spec["chart_version"])]

        self.call(
            lambda: self.helm(*args, input=manifests.dump_values(spec.get("values", {})), timeout=timeout + 60),
            f"helm upgrade --install {descriptor.name}",
        )

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        namespace = self._namespace(descriptor)
        log_action("Uninstalling", descriptor, namespace)
        timeout = int(self.timing.teardown_timeout_seconds)

        def uninstall() -> None:
            result = self.helm("uninstall", descriptor.name, "-n", namespace, "--wait", "--timeout", f"{timeout}s",
                               check=False, timeout=timeout + 60)
            if not result.ok and not result.not_found:
                raise classify_failure(result)

        self.call(uninstall, f"helm uninstall {descriptor.name}")
