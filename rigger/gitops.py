"""
GitOps repository generation and publishing.

The repository holds one Helm chart per service under ``apps/`` and one
ArgoCD Application per chart under ``argocd/applications/``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import manifests
from .catalog import GITOPS_SERVICES, REGCRED, application_name
from .config import ProjectConfig
from .errors import ConfigError
from .shell import CommandResult, run

logger = logging.getLogger(__name__)

SERVICE_PORT = 80
CONTAINER_PORT = 8080
HEALTH_PATH = "/actuator/health"

DATABASE = {"endpoint": "postgresql:5432", "name": "catalog", "user": "postgres", "password": "postgres"}
RABBITMQ = {"endpoint": "rabbitmq:5672", "user": "guest", "password": "guest"}


@dataclass
class ServiceChart:
    """One application service and how its environment maps onto chart values."""
    name: str
    description: str
    env: Dict[str, str]                 # container variable -> dotted values path
    values: Dict[str, Any] = field(default_factory=dict)
    memory: str = "256Mi"
    ingress: bool = False


def service_charts(table_name: str, region: str) -> List[ServiceChart]:
    return [
        ServiceChart(
            name="ui",
            description="Retail Store UI Service",
            env={
                "ENDPOINTS_CATALOG": "env.ENDPOINTS_CATALOG",
                "ENDPOINTS_CARTS": "env.ENDPOINTS_CARTS",
                "ENDPOINTS_ORDERS": "env.ENDPOINTS_ORDERS",
                "ENDPOINTS_CHECKOUT": "env.ENDPOINTS_CHECKOUT",
            },
            values={"env": {
                "ENDPOINTS_CATALOG": "http://catalog:80",
                "ENDPOINTS_CARTS": "http://cart:80",
                "ENDPOINTS_ORDERS": "http://orders:80",
                "ENDPOINTS_CHECKOUT": "http://checkout:80",
            }},
            memory="512Mi",
            ingress=True,
        ),
        ServiceChart(
            name="catalog",
            description="Retail Store Catalog Service",
            env={
                "DB_ENDPOINT": "database.endpoint",
                "DB_NAME": "database.name",
                "DB_USER": "database.user",
                "DB_PASSWORD": "database.password",
            },
            values={"database": dict(DATABASE)},
        ),
        ServiceChart(
            name="cart",
            description="Retail Store Cart Service",
            env={
                "CARTS_DYNAMODB_TABLENAME": "dynamodb.tableName",
                "AWS_DEFAULT_REGION": "dynamodb.region",
                "SPRING_REDIS_HOST": "redis.host",
                "SPRING_REDIS_PORT": "redis.port",
            },
            values={
                "dynamodb": {"tableName": table_name, "region": region},
                "redis": {"host": "redis-master", "port": "6379"},
            },
            memory="512Mi",
        ),
        ServiceChart(
            name="orders",
            description="Retail Store Orders Service",
            env={
                "RETAIL_ORDERS_PERSISTENCE_ENDPOINT": "database.endpoint",
                "RETAIL_ORDERS_PERSISTENCE_NAME": "database.name",
                "RETAIL_ORDERS_PERSISTENCE_USERNAME": "database.user",
                "RETAIL_ORDERS_PERSISTENCE_PASSWORD": "database.password",
                "RETAIL_ORDERS_MESSAGING_RABBITMQ_ADDRESSES": "rabbitmq.endpoint",
                "RETAIL_ORDERS_MESSAGING_RABBITMQ_USERNAME": "rabbitmq.user",
                "RETAIL_ORDERS_MESSAGING_RABBITMQ_PASSWORD": "rabbitmq.password",
            },
            values={"database": dict(DATABASE), "rabbitmq": dict(RABBITMQ)},
            memory="512Mi",
        ),
        ServiceChart(
            name="checkout",
            description="Retail Store Checkout Service",
            env={
                "ENDPOINTS_ORDERS": "endpoints.orders",
                "ENDPOINTS_CARTS": "endpoints.carts",
                "RETAIL_CHECKOUT_MESSAGING_RABBITMQ_ADDRESSES": "rabbitmq.endpoint",
                "RETAIL_CHECKOUT_MESSAGING_RABBITMQ_USERNAME": "rabbitmq.user",
                "RETAIL_CHECKOUT_MESSAGING_RABBITMQ_PASSWORD": "rabbitmq.password",
            },
            values={
                "endpoints": {"orders": "http://orders:80", "carts": "http://cart:80"},
                "rabbitmq": dict(RABBITMQ),
            },
        ),
    ]


def _ref(path: str) -> str:
    return "{{ .Values.%s }}" % path


def _service_files(chart: ServiceChart, registry: str) -> Dict[str, str]:
    values: Dict[str, Any] = {
        "replicaCount": 1,
        "image": {"repository": f"{registry}/retail-store-{chart.name}", "tag": "latest", "pullPolicy": "Always"},
        "imagePullSecrets": [{"name": REGCRED}],
        "service": {"type": "ClusterIP", "port": SERVICE_PORT, "targetPort": CONTAINER_PORT},
    }
    values.update(chart.values)

    resources = {
        "requests": {"memory": chart.memory, "cpu": "250m"},
        "limits": {"memory": chart.memory, "cpu": "500m"},
    }
    deployment = manifests.deployment(
        name=chart.name,
        image=f"{_ref('image.repository')}:{_ref('image.tag')}",
        ports=[CONTAINER_PORT],
        env={var: _ref(path) for var, path in chart.env.items()},
        pull_secret=REGCRED,
        resources=resources,
        health_path=HEALTH_PATH,
        pull_policy=_ref("image.pullPolicy"),
    )
    service = manifests.service(chart.name, {"http": {"port": SERVICE_PORT, "targetPort": CONTAINER_PORT}})

    files = {
        "Chart.yaml": manifests.dump(manifests.chart_yaml(chart.name, chart.description)),
        "values.yaml": manifests.dump_values(values),
        "templates/deployment.yaml": manifests.dump(deployment),
        "templates/service.yaml": manifests.dump(service),
    }
    if chart.ingress:
        files["templates/ingress.yaml"] = manifests.dump(
            manifests.ingress(f"{chart.name}-ingress", chart.name, SERVICE_PORT))
    return files


def _dependency_files() -> Dict[str, str]:
    values = {
        "postgresql": {"auth": {"postgresPassword": "postgres", "database": "catalog"}},
        "redis": {"enabled": True},
        "rabbitmq": {"auth": {"username": "guest", "password": "guest"}},
    }
    limits = {
        "requests": {"memory": "256Mi", "cpu": "100m"},
        "limits": {"memory": "512Mi", "cpu": "500m"},
    }
    postgresql = manifests.deployment(
        "postgresql", "postgres:16.1", [5432],
        env={"POSTGRES_PASSWORD": _ref("postgresql.auth.postgresPassword"),
             "POSTGRES_DB": _ref("postgresql.auth.database")},
        resources=limits,
    )
    redis = manifests.deployment("redis-master", "redis:7.2-alpine", [6379], env={}, resources=limits)
    rabbitmq = manifests.deployment(
        "rabbitmq", "rabbitmq:3.13-management", [5672, 15672],
        env={"RABBITMQ_DEFAULT_USER": _ref("rabbitmq.auth.username"),
             "RABBITMQ_DEFAULT_PASS": _ref("rabbitmq.auth.password")},
        resources=limits,
    )
    return {
        "Chart.yaml": manifests.dump(manifests.chart_yaml(
            "dependencies", "Retail Store Dependencies (PostgreSQL, Redis, RabbitMQ)")),
        "values.yaml": manifests.dump_values(values),
        "templates/postgresql.yaml": manifests.dump(
            postgresql, manifests.service("postgresql", {"postgres": {"port": 5432}})),
        "templates/redis.yaml": manifests.dump(
            redis, manifests.service("redis-master", {"redis": {"port": 6379}})),
        "templates/rabbitmq.yaml": manifests.dump(
            rabbitmq, manifests.service("rabbitmq", {"amqp": {"port": 5672}, "management": {"port": 15672}})),
    }


def render_repository(config: ProjectConfig, registry: str, table_name: str) -> Dict[str, str]:
    """
    Render every file of the GitOps repository.

    Args:
        config: Project configuration (GitOps user, repo, branch, namespaces)
        registry: ECR registry host
        table_name: DynamoDB table for the cart service

    Returns:
        Mapping of repository-relative path to file content

    Raises:
        ConfigError: If gitops.github_user is not configured
    """
    repo_url = config.gitops.repo_url
    if repo_url is None:
        raise ConfigError("gitops.github_user is not set", remediation="set gitops.github_user in rigger.yaml")

    files: Dict[str, str] = {}
    for chart in service_charts(table_name, config.region):
        for path, content in _service_files(chart, registry).items():
            files[f"apps/{chart.name}/{path}"] = content
    for path, content in _dependency_files().items():
        files[f"apps/dependencies/{path}"] = content

    for service in GITOPS_SERVICES:
        application = manifests.argo_application(
            name=application_name(service),
            namespace=config.argocd_namespace,
            repo_url=repo_url,
            path=f"apps/{service}",
            destination_namespace=config.namespace,
            target_revision=config.gitops.branch,
        )
        files[f"argocd/applications/application-{service}.yaml"] = manifests.dump(application)

    return files


def write_repository(files: Dict[str, str], workdir: Path) -> List[Path]:
    """Write rendered files under workdir, replacing earlier versions."""
    written = []
    for relative, content in sorted(files.items()):
        path = workdir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        written.append(path)
    logger.info(f"✓ Wrote {len(written)} files to {workdir}")
    return written


class GitOpsPublisher:
    """Creates the GitHub repository if needed and pushes the working tree."""

    def __init__(self, config: ProjectConfig, runner: Callable[..., CommandResult] = run):
        self.config = config
        self.runner = runner

    @property
    def slug(self) -> str:
        return f"{self.config.gitops.github_user}/{self.config.gitops.repo_name}"

    def _git(self, workdir: Path, *args: str) -> CommandResult:
        return self.runner(["git", *args], cwd=str(workdir))

    def repository_exists(self) -> bool:
        return self.runner(["gh", "repo", "view", self.slug], check=False).ok

    def ensure_repository(self) -> None:
        if self.repository_exists():
            logger.info(f"ℹ Repository {self.slug} already exists")
            return
        self.runner([
            "gh", "repo", "create", self.slug, "--public",
            "--description", "GitOps configuration repository for Retail Store Kubernetes deployment",
        ])
        logger.info(f"✓ Repository created: https://github.com/{self.slug}")

    def publish(self, workdir: Path, message: str = "Update retail store GitOps configuration") -> Optional[str]:
        """
        Commit and push the working tree.

        Returns:
            The pushed commit, or None if there was nothing to commit
        """
        branch = self.config.gitops.branch
        self.ensure_repository()

        if not (workdir / ".git").exists():
            self._git(workdir, "init")
            self._git(workdir, "checkout", "-b", branch)

        self._git(workdir, "add", "-A")
        if not self._git(workdir, "status", "--porcelain").stdout.strip():
            logger.info("ℹ GitOps repository is up to date")
            return None
        self._git(workdir, "commit", "-m", message)

        remotes = self._git(workdir, "remote").stdout.split()
        if "origin" not in remotes:
            self._git(workdir, "remote", "add", "origin", self.config.gitops.repo_url)
        self._git(workdir, "push", "-u", "origin", branch)

        commit = self._git(workdir, "rev-parse", "HEAD").stdout.strip()
        logger.info(f"✓ Pushed {commit[:8]} to {self.slug}@{branch}")
        return commit

    def delete_repository(self) -> None:
        self.runner(["gh", "repo", "delete", self.slug, "--yes"])
        logger.info(f"✓ Repository {self.slug} deleted")
