"""
Deterministic resource naming.

Names are derived from the project configuration only, so repeated runs
always resolve to the same descriptors.
"""

import re

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def resource_name(project: str, suffix: str) -> str:
    """
    Build a resource name in format: <project>-<suffix>

    Args:
        project: Project name
        suffix: Resource role (e.g. "sg", "master", "worker1")

    Returns:
        str: Resource name

    Raises:
        ValueError: If the resulting name is invalid
    """
    name = f"{project}-{suffix}"
    if not is_valid_resource_name(name):
        raise ValueError(f"Invalid resource name: {name}")
    return name


def is_valid_resource_name(name: str) -> bool:
    """
    Validate a resource name.

    Lowercase alphanumerics and hyphens, at most 63 characters, no leading
    or trailing hyphen. This is the intersection of what EC2 tags, IAM,
    ECR, Helm and Kubernetes accept.
    """
    return bool(_NAME_RE.match(name))


def env_prefix(name: str) -> str:
    """
    Shell variable prefix for a resource name.

    >>> env_prefix("k8s-kubeadm-master")
    'K8S_KUBEADM_MASTER'
    """
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


def worker_suffix(index: int) -> str:
    """Suffix for the n-th worker node (1-based)."""
    if index < 1:
        raise ValueError(f"Worker index must be >= 1, got {index}")
    return f"worker{index}"
