"""
Project configuration.

Configuration comes from a YAML file (``rigger.yaml`` by default, or the path
in ``RIGGER_CONFIG``) validated by pydantic. Provider-specific delays are
knobs here rather than sleeps in the code.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .ids import is_valid_resource_name

DEFAULT_CONFIG_FILE = "rigger.yaml"


class TimingConfig(BaseModel):
    """Bounded waits, retry budgets and credential lifetimes."""
    credential_ttl_hours: float = 12.0
    poll_interval_seconds: float = 5.0
    propagation_timeout_seconds: float = 60.0
    instance_timeout_seconds: float = 600.0
    table_timeout_seconds: float = 300.0
    release_timeout_seconds: float = 600.0
    sync_timeout_seconds: float = 600.0
    teardown_timeout_seconds: float = 600.0
    probe_attempts: int = Field(default=5, ge=1)
    parallelism: int = Field(default=4, ge=1)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 20.0


class GitOpsConfig(BaseModel):
    """GitOps repository watched by ArgoCD."""
    github_user: Optional[str] = None
    repo_name: str = "retail-store-gitops"
    branch: str = "main"
    workdir: str = "gitops"

    @property
    def repo_url(self) -> Optional[str]:
        if not self.github_user:
            return None
        return f"https://github.com/{self.github_user}/{self.repo_name}.git"


class ProjectConfig(BaseModel):
    """Top-level project configuration."""
    project_name: str = "k8s-kubeadm"
    region: str = "us-east-1"
    instance_type: str = "t3.medium"
    ami_id: Optional[str] = None
    worker_count: int = Field(default=2, ge=0)
    volume_size_gb: int = 20
    namespace: str = "retail-store"
    ecr_repositories: List[str] = Field(default_factory=lambda: [
        "retail-store-ui",
        "retail-store-catalog",
        "retail-store-cart",
        "retail-store-orders",
        "retail-store-checkout",
    ])
    ecr_backend: str = "aws"
    terraform_dir: Optional[str] = None
    dynamodb_table: str = "retail-store-carts"
    delivery: str = "helm"
    helm_chart_dir: str = "helm-chart"
    argocd_namespace: str = "argocd"
    argocd_nodeport: int = 30090
    ingress_http_nodeport: int = 30080
    ingress_https_nodeport: int = 30443
    kubeconfig: str = "~/.kube/config-retail-store"
    ssh_user: str = "ubuntu"
    ledger_path: str = "deployment-info.txt"
    tags: Dict[str, str] = Field(default_factory=dict)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    gitops: GitOpsConfig = Field(default_factory=GitOpsConfig)

    @field_validator("project_name")
    @classmethod
    def _check_project_name(cls, value: str) -> str:
        if not is_valid_resource_name(f"{value}-worker99"):
            raise ValueError(f"project_name '{value}' does not yield valid resource names")
        return value

    @field_validator("ecr_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("aws", "terraform"):
            raise ValueError("ecr_backend must be 'aws' or 'terraform'")
        return value

    @field_validator("delivery")
    @classmethod
    def _check_delivery(cls, value: str) -> str:
        if value not in ("helm", "argocd"):
            raise ValueError("delivery must be 'helm' or 'argocd'")
        return value

    @field_validator("ecr_repositories")
    @classmethod
    def _check_repositories(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one ECR repository is required")
        return value

    @model_validator(mode="after")
    def _check_unique_names(self) -> "ProjectConfig":
        # Resources are keyed by name in the ledger and the dependency graph
        if self.dynamodb_table in self.ecr_repositories:
            raise ValueError(f"dynamodb_table '{self.dynamodb_table}' clashes with an ECR repository name")
        return self

    @property
    def key_file(self) -> Path:
        return Path(f"{self.project_name}-key.pem")

    @property
    def kubeconfig_path(self) -> Path:
        return Path(self.kubeconfig).expanduser()


def get_rigger_home() -> Path:
    """
    Get the Rigger home directory (run state and event log).

    Returns:
        Path: Rigger home directory
    """
    return Path(os.environ.get("RIGGER_HOME", ".rigger")).resolve()


def load_config(path: Optional[str] = None) -> ProjectConfig:
    """
    Load project configuration.

    Args:
        path: Explicit config file; falls back to RIGGER_CONFIG, then rigger.yaml

    Returns:
        ProjectConfig: Validated configuration (defaults if no file exists)

    Raises:
        ConfigError: If the file is unreadable or fails validation
    """
    explicit = path or os.environ.get("RIGGER_CONFIG")
    config_file = Path(explicit or DEFAULT_CONFIG_FILE)

    if not config_file.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_file}", remediation="check --config / RIGGER_CONFIG")
        return ProjectConfig()

    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping at the top level")

    try:
        return ProjectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}")
