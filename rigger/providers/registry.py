"""
Provider registry wiring for the configured backends.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..config import ProjectConfig
from ..shell import CommandResult, run
from .argocd import ArgoApplicationProvider
from .aws import (
    AwsClients,
    DynamoTableProvider,
    EcrCredentials,
    EcrRepositoryProvider,
    IamRoleProvider,
    InstanceProfileProvider,
    InstanceProvider,
    KeyPairProvider,
    SecurityGroupProvider,
)
from .base import ProviderContext, ProviderRegistry
from .helm import Helm, HelmReleaseProvider
from .kube import ClusterAccess, K8sSecretProvider, Kubectl
from .terraform import EcrTerraformProvider

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    """Everything the CLI needs to talk to AWS and the cluster."""
    registry: ProviderRegistry
    clients: AwsClients
    access: ClusterAccess
    kubectl: Kubectl
    helm: Helm


def build_backends(
    config: ProjectConfig,
    master_ip: Callable[[], Optional[str]],
    clients: Optional[Dict[str, Any]] = None,
    runner: Callable[..., CommandResult] = run,
    sleep: Callable[[float], None] = time.sleep,
    expected_nodes: Optional[int] = None,
) -> Backends:
    """
    Build the provider registry for a project.

    Args:
        config: Project configuration
        master_ip: Returns the master's public IP (read from the ledger) for kubeconfig retrieval
        clients: Pre-built boto3 clients by service name (tests pass stubbed clients)
        runner: Command runner for kubectl/helm/scp
        sleep: Sleep function used between retries
        expected_nodes: Ready nodes required before cluster work (default: workers + master)

    Returns:
        Backends with every resource kind registered
    """
    context = ProviderContext(config=config, sleep=sleep)
    aws = AwsClients(config.region, clients=clients)
    access = ClusterAccess(config, master_ip, expected_nodes=expected_nodes, runner=runner, sleep=sleep)
    kubectl = Kubectl(access, runner=runner)
    helm = Helm(access, runner=runner)

    registry = ProviderRegistry()
    registry.register(KeyPairProvider(context, aws))
    registry.register(SecurityGroupProvider(context, aws))
    registry.register(IamRoleProvider(context, aws))
    registry.register(InstanceProfileProvider(context, aws))
    registry.register(InstanceProvider(context, aws))
    registry.register(DynamoTableProvider(context, aws))

    if config.ecr_backend == "terraform":
        registry.register(EcrTerraformProvider(context, aws))
    else:
        registry.register(EcrRepositoryProvider(context, aws))

    registry.register(K8sSecretProvider(context, kubectl, EcrCredentials(aws)))
    registry.register(HelmReleaseProvider(context, helm, kubectl))
    registry.register(ArgoApplicationProvider(context, kubectl))

    logger.debug(f"Registered providers: {sorted(kind.value for kind in registry.kinds())}")
    return Backends(registry=registry, clients=aws, access=access, kubectl=kubectl, helm=helm)
