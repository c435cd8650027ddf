"""
The resource catalog for the kubeadm retail-store system.

Every resource the pipeline manages is declared here with its stage,
dependencies, cross-resource references and ledger aliases.
"""

from typing import Any, Dict, List

from .config import ProjectConfig
from .errors import ConfigError
from .ids import resource_name, worker_suffix
from .models import Ref, ResourceDescriptor, ResourceKind
from .providers.aws import ec2_trust_policy, ecr_access_policy

STAGE_INFRASTRUCTURE = "infrastructure"
STAGE_REGISTRY = "registry"
STAGE_DATA = "data"
STAGE_CLUSTER = "cluster"
STAGE_PLATFORM = "platform"
STAGE_APPLICATIONS = "applications"

STAGES = [
    STAGE_INFRASTRUCTURE,
    STAGE_REGISTRY,
    STAGE_DATA,
    STAGE_CLUSTER,
    STAGE_PLATFORM,
    STAGE_APPLICATIONS,
]

ANYWHERE = "0.0.0.0/0"

SECURITY_GROUP_RULES: List[Dict[str, Any]] = [
    {"protocol": "tcp", "from_port": 22, "to_port": 22, "cidr": ANYWHERE, "description": "SSH"},
    {"protocol": "tcp", "from_port": 6443, "to_port": 6443, "cidr": ANYWHERE, "description": "Kubernetes API"},
    {"protocol": "tcp", "from_port": 2379, "to_port": 2380, "source": "self", "description": "etcd"},
    {"protocol": "tcp", "from_port": 10250, "to_port": 10250, "source": "self", "description": "kubelet"},
    {"protocol": "tcp", "from_port": 10259, "to_port": 10259, "source": "self", "description": "kube-scheduler"},
    {"protocol": "tcp", "from_port": 10257, "to_port": 10257, "source": "self",
     "description": "kube-controller-manager"},
    {"protocol": "tcp", "from_port": 30000, "to_port": 32767, "cidr": ANYWHERE, "description": "NodePorts"},
    {"protocol": "udp", "from_port": 8472, "to_port": 8472, "source": "self", "description": "Flannel VXLAN"},
    {"protocol": "tcp", "from_port": 6783, "to_port": 6783, "source": "self", "description": "Weave"},
    {"protocol": "udp", "from_port": 6783, "to_port": 6784, "source": "self", "description": "Weave"},
    {"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr": ANYWHERE, "description": "HTTP"},
    {"protocol": "tcp", "from_port": 443, "to_port": 443, "cidr": ANYWHERE, "description": "HTTPS"},
]

BITNAMI = {"name": "bitnami", "url": "https://charts.bitnami.com/bitnami"}
INGRESS_NGINX = {"name": "ingress-nginx", "url": "https://kubernetes.github.io/ingress-nginx"}
ARGO = {"name": "argo", "url": "https://argoproj.github.io/argo-helm"}

REGCRED = "regcred"
INGRESS_RELEASE = "ingress-nginx"
ARGOCD_RELEASE = "argocd"
APP_RELEASE = "retail-store"
DEPENDENCY_RELEASES = ["postgresql", "redis", "rabbitmq"]

# Charts in the GitOps repository, one ArgoCD Application each
GITOPS_SERVICES = ["dependencies", "ui", "catalog", "cart", "orders", "checkout"]


def application_name(service: str) -> str:
    return f"store-{service}"


def helm_delivered_releases() -> List[str]:
    """Releases replaced by ArgoCD Applications once GitOps takes over."""
    return DEPENDENCY_RELEASES + [APP_RELEASE]


def _infrastructure(config: ProjectConfig) -> List[ResourceDescriptor]:
    project = config.project_name
    key = resource_name(project, "key")
    sg = resource_name(project, "sg")
    role = resource_name(project, "ecr-role")
    profile = resource_name(project, "ecr-profile")

    descriptors = [
        ResourceDescriptor(
            kind=ResourceKind.KEY_PAIR,
            name=key,
            spec={"key_file": str(config.key_file), "local_key_file": True},
            export_as={"key_name": "KEY_NAME", "key_file": "KEY_FILE"},
        ),
        ResourceDescriptor(
            kind=ResourceKind.SECURITY_GROUP,
            name=sg,
            spec={"description": f"Security group for {project} kubeadm cluster", "ingress": SECURITY_GROUP_RULES},
            export_as={"group_id": "SECURITY_GROUP_ID"},
        ),
        ResourceDescriptor(
            kind=ResourceKind.IAM_ROLE,
            name=role,
            spec={
                "assume_role_policy": ec2_trust_policy(),
                "inline_policies": {"ECRAccessPolicy": ecr_access_policy()},
            },
            export_as={"role_name": "IAM_ROLE_NAME"},
        ),
        ResourceDescriptor(
            kind=ResourceKind.INSTANCE_PROFILE,
            name=profile,
            spec={"role_name": Ref(role, "role_name")},
            export_as={"profile_name": "IAM_INSTANCE_PROFILE_NAME"},
        ),
    ]

    nodes = [("master", "k8s-master", "master", "MASTER")]
    for i in range(1, config.worker_count + 1):
        suffix = worker_suffix(i)
        nodes.append((suffix, f"k8s-{suffix}", "worker", suffix.upper()))

    for suffix, hostname, role_tag, alias in nodes:
        spec: Dict[str, Any] = {
            "key_name": Ref(key, "key_name"),
            "security_group_id": Ref(sg, "group_id"),
            "instance_profile": Ref(profile, "profile_name"),
            "instance_type": config.instance_type,
            "volume_size_gb": config.volume_size_gb,
            "hostname": hostname,
            "role": role_tag,
        }
        if config.ami_id:
            spec["ami_id"] = config.ami_id
        descriptors.append(ResourceDescriptor(
            kind=ResourceKind.INSTANCE,
            name=resource_name(project, suffix),
            spec=spec,
            export_as={
                "instance_id": f"{alias}_INSTANCE_ID",
                "public_ip": f"{alias}_PUBLIC_IP",
                "private_ip": f"{alias}_PRIVATE_IP",
            },
        ))

    return descriptors


def _registry(config: ProjectConfig) -> List[ResourceDescriptor]:
    descriptors = []
    for index, repository in enumerate(config.ecr_repositories):
        descriptors.append(ResourceDescriptor(
            kind=ResourceKind.ECR_REPOSITORY,
            name=repository,
            spec={"scan_on_push": True},
            stage=STAGE_REGISTRY,
            export_as={"registry": "ECR_REGISTRY"} if index == 0 else {},
        ))
    return descriptors


def _data(config: ProjectConfig) -> List[ResourceDescriptor]:
    return [ResourceDescriptor(
        kind=ResourceKind.DYNAMO_TABLE,
        name=config.dynamodb_table,
        spec={
            "hash_key": "id",
            "billing_mode": "PAY_PER_REQUEST",
            "global_secondary_indexes": [{"name": "idx_global_customerId", "hash_key": "customerId"}],
        },
        stage=STAGE_DATA,
        export_as={"table_name": "DYNAMODB_TABLE_NAME", "region": "DYNAMODB_REGION"},
    )]


def _cluster(config: ProjectConfig) -> List[ResourceDescriptor]:
    master = resource_name(config.project_name, "master")
    return [ResourceDescriptor(
        kind=ResourceKind.K8S_SECRET,
        name=REGCRED,
        spec={"namespace": config.namespace, "server": Ref(config.ecr_repositories[0], "registry")},
        depends_on=[master],
        stage=STAGE_CLUSTER,
        ttl_hours=config.timing.credential_ttl_hours,
    )]


def _platform(config: ProjectConfig) -> List[ResourceDescriptor]:
    master = resource_name(config.project_name, "master")
    descriptors = [ResourceDescriptor(
        kind=ResourceKind.HELM_RELEASE,
        name=INGRESS_RELEASE,
        spec={
            "chart": "ingress-nginx/ingress-nginx",
            "repo": INGRESS_NGINX,
            "namespace": "ingress-nginx",
            "values": {
                "controller": {
                    "service": {
                        "type": "NodePort",
                        "nodePorts": {"http": config.ingress_http_nodeport, "https": config.ingress_https_nodeport},
                    }
                }
            },
        },
        depends_on=[master],
        stage=STAGE_PLATFORM,
    )]

    if config.delivery == "argocd":
        descriptors.append(ResourceDescriptor(
            kind=ResourceKind.HELM_RELEASE,
            name=ARGOCD_RELEASE,
            spec={
                "chart": "argo/argo-cd",
                "repo": ARGO,
                "namespace": config.argocd_namespace,
                "values": {"server": {"service": {"type": "NodePort", "nodePortHttps": config.argocd_nodeport}}},
                "export_secrets": {
                    "admin_password": {"secret": "argocd-initial-admin-secret", "key": "password"},
                },
            },
            depends_on=[master],
            stage=STAGE_PLATFORM,
            export_as={"admin_password": "ARGOCD_ADMIN_PASSWORD"},
        ))

    return descriptors


def _helm_applications(config: ProjectConfig) -> List[ResourceDescriptor]:
    master = resource_name(config.project_name, "master")
    dependency_values = {
        "postgresql": {
            "auth": {"postgresPassword": "postgres", "database": "catalog"},
            "primary": {"persistence": {"enabled": False}},
            "volumePermissions": {"enabled": True},
        },
        "redis": {
            "auth": {"enabled": False},
            "master": {"persistence": {"enabled": False}},
            "replica": {"replicaCount": 0, "persistence": {"enabled": False}},
        },
        "rabbitmq": {
            "auth": {"username": "guest", "password": "guest"},
            "persistence": {"enabled": False},
            "image": {"tag": "3.13-management"},
        },
    }

    descriptors = [
        ResourceDescriptor(
            kind=ResourceKind.HELM_RELEASE,
            name=release,
            spec={"chart": f"bitnami/{release}", "repo": BITNAMI, "namespace": config.namespace,
                  "values": dependency_values[release]},
            depends_on=[master],
            stage=STAGE_APPLICATIONS,
        )
        for release in DEPENDENCY_RELEASES
    ]

    descriptors.append(ResourceDescriptor(
        kind=ResourceKind.HELM_RELEASE,
        name=APP_RELEASE,
        spec={
            "chart": config.helm_chart_dir,
            "namespace": config.namespace,
            "values": {
                "global": {
                    "ecr": {"registry": Ref(config.ecr_repositories[0], "registry")},
                    "dynamodb": {"tableName": Ref(config.dynamodb_table, "table_name"), "region": config.region},
                }
            },
        },
        depends_on=[REGCRED, INGRESS_RELEASE] + DEPENDENCY_RELEASES,
        stage=STAGE_APPLICATIONS,
    ))
    return descriptors


def _argo_applications(config: ProjectConfig) -> List[ResourceDescriptor]:
    repo_url = config.gitops.repo_url
    if repo_url is None:
        raise ConfigError("gitops.github_user is required when delivery is argocd",
                          remediation="set gitops.github_user in rigger.yaml")

    dependencies = application_name("dependencies")
    descriptors = []
    for service in GITOPS_SERVICES:
        depends_on = [ARGOCD_RELEASE, REGCRED]
        if service != "dependencies":
            depends_on.append(dependencies)
        descriptors.append(ResourceDescriptor(
            kind=ResourceKind.ARGO_APPLICATION,
            name=application_name(service),
            spec={
                "namespace": config.argocd_namespace,
                "repo_url": repo_url,
                "path": f"apps/{service}",
                "target_revision": config.gitops.branch,
                "destination_namespace": config.namespace,
            },
            depends_on=depends_on,
            stage=STAGE_APPLICATIONS,
        ))
    return descriptors


def build_catalog(config: ProjectConfig) -> List[ResourceDescriptor]:
    """
    Build every descriptor for the configured project.

    Args:
        config: Project configuration

    Returns:
        Descriptors in stage order

    Raises:
        ConfigError: If the configuration cannot produce a consistent catalog
    """
    descriptors = _infrastructure(config) + _registry(config) + _data(config) + _cluster(config)
    descriptors += _platform(config)
    if config.delivery == "argocd":
        descriptors += _argo_applications(config)
    else:
        descriptors += _helm_applications(config)
    return descriptors


def find(descriptors: List[ResourceDescriptor], name: str) -> ResourceDescriptor:
    for descriptor in descriptors:
        if descriptor.name == name:
            return descriptor
    raise KeyError(name)
