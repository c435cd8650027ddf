"""
Cluster access and the Kubernetes secret provider.

The kubeconfig is fetched from the kubeadm master over scp the first time
any cluster-side resource is touched, then rewritten to point at the
master's public IP.
"""

import base64
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .. import manifests
from ..config import ProjectConfig
from ..errors import PreconditionMissing, RiggerError, TransientError
from ..models import ObservedState, ResourceDescriptor, ResourceKind
from ..poll import retry
from ..shell import CommandResult, classify_failure, run
from .base import KindPolicy, Provider, ProviderContext, log_action

logger = logging.getLogger(__name__)

API_SERVER_PORT = 6443


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Kubernetes RFC 3339 timestamp (always UTC, second precision)."""
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def rewrite_kubeconfig(text: str, master_ip: str) -> str:
    """
    Point a kubeadm admin kubeconfig at the master's public address.

    The API server certificate only covers private addresses, so TLS
    verification is switched off for the rewritten cluster entries.
    """
    kubeconfig = yaml.safe_load(text) or {}
    for entry in kubeconfig.get("clusters", []):
        cluster = entry.setdefault("cluster", {})
        cluster["server"] = f"https://{master_ip}:{API_SERVER_PORT}"
        cluster.pop("certificate-authority-data", None)
        cluster.pop("certificate-authority", None)
        cluster["insecure-skip-tls-verify"] = True
    return yaml.safe_dump(kubeconfig, sort_keys=False)


def fetch_kubeconfig(master_ip: str, key_file: Path, user: str, dest: Path,
                     runner: Callable[..., CommandResult] = run) -> Path:
    """
    Copy the admin kubeconfig from the master and rewrite it.

    Args:
        master_ip: Public IP of the master node
        key_file: Private key for SSH
        user: SSH user on the node
        dest: Where to write the kubeconfig

    Returns:
        Path to the written kubeconfig

    Raises:
        PreconditionMissing: If the master has no kubeconfig yet (kubeadm init not run)
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(dest.name + ".remote")

    result = runner(
        ["scp", "-i", str(key_file),
         "-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null",
         f"{user}@{master_ip}:~/.kube/config", str(staging)],
        check=False,
    )
    if not result.ok:
        if "no such file" in result.stderr.lower():
            raise PreconditionMissing(
                f"No kubeconfig on master {master_ip}",
                stage="cluster",
                remediation=f"ssh -i {key_file} {user}@{master_ip} and run kubeadm init",
            )
        raise classify_failure(result)

    try:
        dest.write_text(rewrite_kubeconfig(staging.read_text(), master_ip))
    finally:
        if staging.exists():
            staging.unlink()
    os.chmod(dest, 0o600)
    logger.info(f"✓ Kubeconfig written to {dest}")
    return dest


def count_ready_nodes(nodes: Dict[str, Any]) -> Tuple[int, int]:
    """Return (ready, total) from `kubectl get nodes -o json` output."""
    items = nodes.get("items", [])
    ready = 0
    for node in items:
        for condition in node.get("status", {}).get("conditions", []):
            if condition.get("type") == "Ready" and condition.get("status") == "True":
                ready += 1
    return ready, len(items)


class ClusterAccess:
    """
    Lazily prepared access to the kubeadm cluster.

    On first use: fetch the kubeconfig if it is missing, then check that the
    expected number of nodes are Ready. Both happen once per process.
    """

    def __init__(self, config: ProjectConfig, master_ip: Callable[[], Optional[str]],
                 expected_nodes: Optional[int] = None, runner: Callable[..., CommandResult] = run,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.master_ip = master_ip
        self.expected_nodes = config.worker_count + 1 if expected_nodes is None else expected_nodes
        self.runner = runner
        self.sleep = sleep
        self._lock = threading.Lock()
        self._ready = False

    @property
    def kubeconfig(self) -> Path:
        return self.config.kubeconfig_path

    def ensure(self) -> Path:
        with self._lock:
            if self._ready:
                return self.kubeconfig

            if not self.kubeconfig.exists():
                ip = self.master_ip()
                if not ip:
                    raise PreconditionMissing(
                        "Master public IP is unknown, cannot fetch kubeconfig",
                        stage="cluster",
                        remediation="rigger up --stage infrastructure",
                    )
                fetch_kubeconfig(ip, self.config.key_file, self.config.ssh_user, self.kubeconfig, self.runner)

            self._check_nodes()
            self._ready = True
            return self.kubeconfig

    def reachable(self) -> bool:
        """
        Whether the cluster API answers at all.

        Connection failures are retried with the configured budget first, so a
        briefly busy API server is not mistaken for a terminated master.
        """
        timing = self.config.timing
        try:
            retry(
                self.ensure,
                attempts=timing.probe_attempts,
                base_delay=timing.backoff_base_seconds,
                max_delay=timing.backoff_max_seconds,
                retry_on=(TransientError,),
                describe="kubectl get nodes",
                sleep=self.sleep,
            )
        except RiggerError as e:
            logger.warning(f"⚠ Cannot access Kubernetes cluster: {e.message}")
            return False
        return True

    def _check_nodes(self) -> None:
        result = self.runner(["kubectl", "--kubeconfig", str(self.kubeconfig), "get", "nodes", "-o", "json"])
        ready, total = count_ready_nodes(json.loads(result.stdout or "{}"))
        if ready < self.expected_nodes:
            raise PreconditionMissing(
                f"Cluster has {ready} Ready nodes ({total} registered), expected {self.expected_nodes}",
                stage="cluster",
                remediation="join the workers with 'kubeadm join' and re-run rigger up",
            )
        logger.info(f"✓ Cluster reachable: {ready}/{total} nodes Ready")


class Kubectl:
    """kubectl bound to the cluster's kubeconfig."""

    def __init__(self, access: ClusterAccess, runner: Callable[..., CommandResult] = run,
                 timeout: Optional[float] = 120):
        self.access = access
        self.runner = runner
        self.timeout = timeout

    def __call__(self, *args: str, input: Optional[str] = None, check: bool = True) -> CommandResult:
        kubeconfig = self.access.ensure()
        return self.runner(["kubectl", "--kubeconfig", str(kubeconfig), *args],
                           input=input, check=check, timeout=self.timeout)

    def get(self, resource: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fetch one object as JSON; None when it does not exist."""
        args = ["get", resource, name, "-o", "json"]
        if namespace:
            args += ["-n", namespace]
        result = self(*args, check=False)
        if result.ok:
            return json.loads(result.stdout)
        if result.not_found:
            return None
        raise classify_failure(result)

    def apply(self, *documents: Dict[str, Any]) -> CommandResult:
        return self("apply", "-f", "-", input=manifests.dump(*documents))

    def delete(self, resource: str, name: str, namespace: Optional[str] = None, wait: bool = True) -> CommandResult:
        args = ["delete", resource, name, "--ignore-not-found"]
        if namespace:
            args += ["-n", namespace]
        if not wait:
            args.append("--wait=false")
        return self(*args)

    def secret_value(self, name: str, namespace: str, key: str) -> Optional[str]:
        """Decoded value of one key of a secret, or None."""
        secret = self.get("secret", name, namespace)
        encoded = (secret or {}).get("data", {}).get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded).decode()


class K8sSecretProvider(Provider):
    """
    Image pull secret for the private registry.

    Registry tokens expire, so the secret carries a TTL: once older than
    the configured lifetime it is deleted and recreated with a fresh token.
    """

    kind = ResourceKind.K8S_SECRET
    policy = KindPolicy(updatable=frozenset({"server"}))

    def __init__(self, context: ProviderContext, kubectl: Kubectl, credentials: Callable[[], Tuple[str, str]]):
        super().__init__(context)
        self.kubectl = kubectl
        self.credentials = credentials

    def _namespace(self, descriptor: ResourceDescriptor) -> str:
        return descriptor.spec.get("namespace") or self.context.config.namespace

    def probe(self, descriptor: ResourceDescriptor) -> ObservedState:
        namespace = self._namespace(descriptor)
        secret = self.call(lambda: self.kubectl.get("secret", descriptor.name, namespace),
                           f"get secret {namespace}/{descriptor.name}")
        if secret is None:
            return ObservedState.not_found()

        servers = manifests.registry_servers(secret)
        server = servers[0] if servers else ""
        created = secret.get("metadata", {}).get("creationTimestamp", "")
        return ObservedState(
            exists=True,
            phase="available",
            attributes={"secret_name": descriptor.name, "namespace": namespace, "server": server,
                        "created_at": created},
            settings={"server": server},
            created_at=parse_timestamp(created),
        )

    def create(self, descriptor: ResourceDescriptor) -> None:
        namespace = self._namespace(descriptor)
        log_action("Creating", descriptor, namespace)
        username, password = self.call(self.credentials, "fetch registry credentials")
        self.call(lambda: self.kubectl.apply(
            manifests.namespace(namespace),
            manifests.docker_registry_secret(descriptor.name, namespace, descriptor.spec["server"],
                                             username, password,
                                             labels={"app.kubernetes.io/managed-by": "rigger"}),
        ), f"apply secret {namespace}/{descriptor.name}")

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        # apply replaces the payload in place
        self.create(descriptor)

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        namespace = self._namespace(descriptor)
        log_action("Deleting", descriptor, namespace)
        self.call(lambda: self.kubectl.delete("secret", descriptor.name, namespace),
                  f"delete secret {namespace}/{descriptor.name}")


def cluster_urls(master_ip: str, config: ProjectConfig) -> List[Tuple[str, str]]:
    """(label, url) pairs for the services exposed through NodePorts."""
    return [
        ("Retail Store", f"http://{master_ip}:{config.ingress_http_nodeport}"),
        ("Retail Store (HTTPS)", f"https://{master_ip}:{config.ingress_https_nodeport}"),
        ("ArgoCD", f"https://{master_ip}:{config.argocd_nodeport}"),
    ]
