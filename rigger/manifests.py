"""
Kubernetes manifest builders.

Manifests are built as plain dicts and serialized with PyYAML, never by
string templating, so quoting and indentation are always valid.
"""

import base64
import json
from typing import Any, Dict, Iterable, List, Optional

import yaml

ARGOCD_FINALIZER = "resources-finalizer.argocd.argoproj.io"
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


def namespace(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def docker_config(server: str, username: str, password: str) -> Dict[str, Any]:
    """The .dockerconfigjson payload kubelet uses to pull from a registry."""
    return {
        "auths": {
            server: {
                "username": username,
                "password": password,
                "auth": _b64(f"{username}:{password}"),
            }
        }
    }


def docker_registry_secret(name: str, namespace: str, server: str, username: str, password: str,
                           labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Build an image pull secret.

    Args:
        name: Secret name (regcred)
        namespace: Namespace the workloads run in
        server: Registry host, e.g. 123456789012.dkr.ecr.us-east-1.amazonaws.com
        username: Registry user (AWS for ECR)
        password: Registry token

    Returns:
        Secret manifest of type kubernetes.io/dockerconfigjson
    """
    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = dict(labels)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/dockerconfigjson",
        "metadata": metadata,
        "data": {".dockerconfigjson": _b64(json.dumps(docker_config(server, username, password)))},
    }


def registry_servers(secret: Dict[str, Any]) -> List[str]:
    """Registry hosts a dockerconfigjson secret grants access to."""
    encoded = secret.get("data", {}).get(".dockerconfigjson")
    if not encoded:
        return []
    try:
        payload = json.loads(base64.b64decode(encoded))
    except (ValueError, TypeError):
        return []
    return sorted(payload.get("auths", {}))


def argo_application(
    name: str,
    namespace: str,
    repo_url: str,
    path: str,
    destination_namespace: str,
    target_revision: str = "main",
    value_files: Iterable[str] = ("values.yaml",),
    project: str = "default",
    refresh: bool = False,
) -> Dict[str, Any]:
    """
    Build an ArgoCD Application with automated prune and self-heal.

    Args:
        name: Application name
        namespace: Namespace ArgoCD runs in
        repo_url: Git repository holding the chart
        path: Chart directory inside the repository
        destination_namespace: Namespace the workloads are deployed to
        target_revision: Branch, tag or commit to track
        value_files: Helm value files relative to the chart
        project: ArgoCD project
        refresh: Ask ArgoCD to re-read the repository on apply

    Returns:
        Application manifest
    """
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "finalizers": [ARGOCD_FINALIZER],
    }
    if refresh:
        metadata["annotations"] = {"argocd.argoproj.io/refresh": "normal"}

    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": metadata,
        "spec": {
            "project": project,
            "source": {
                "repoURL": repo_url,
                "targetRevision": target_revision,
                "path": path,
                "helm": {"valueFiles": list(value_files)},
            },
            "destination": {"server": IN_CLUSTER_SERVER, "namespace": destination_namespace},
            "syncPolicy": {
                "automated": {"prune": True, "selfHeal": True},
                "syncOptions": ["CreateNamespace=true"],
            },
        },
    }


# Helm chart pieces for the GitOps repository.
# Template expressions only appear in string fields, so the files stay valid YAML.

def chart_yaml(name: str, description: str, version: str = "1.0.0") -> Dict[str, Any]:
    return {
        "apiVersion": "v2",
        "name": name,
        "description": description,
        "type": "application",
        "version": version,
        "appVersion": version,
    }


def deployment(name: str, image: str, ports: List[int], env: Dict[str, str],
               pull_secret: Optional[str] = None, resources: Optional[Dict[str, Any]] = None,
               health_path: Optional[str] = None, pull_policy: str = "IfNotPresent",
               replicas: int = 1) -> Dict[str, Any]:
    """Deployment with one container; env values may be Helm template expressions."""
    container: Dict[str, Any] = {
        "name": name,
        "image": image,
        "imagePullPolicy": pull_policy,
        "ports": [{"containerPort": port} for port in ports],
    }
    if env:
        container["env"] = [{"name": key, "value": value} for key, value in env.items()]
    if resources:
        container["resources"] = resources
    if health_path:
        container["readinessProbe"] = {
            "httpGet": {"path": health_path, "port": ports[0]},
            "initialDelaySeconds": 30,
            "periodSeconds": 10,
        }
        container["livenessProbe"] = {
            "httpGet": {"path": health_path, "port": ports[0]},
            "initialDelaySeconds": 60,
            "periodSeconds": 30,
        }

    pod_spec: Dict[str, Any] = {"containers": [container]}
    if pull_secret:
        pod_spec["imagePullSecrets"] = [{"name": pull_secret}]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": {"app": name}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {"metadata": {"labels": {"app": name}}, "spec": pod_spec},
        },
    }


def service(name: str, ports: Dict[str, Dict[str, int]], selector: Optional[str] = None) -> Dict[str, Any]:
    """ClusterIP service; ports maps port name to {'port': ..., 'targetPort': ...}."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "labels": {"app": selector or name}},
        "spec": {
            "type": "ClusterIP",
            "ports": [
                {"name": port_name, "port": p["port"], "targetPort": p.get("targetPort", p["port"]), "protocol": "TCP"}
                for port_name, p in ports.items()
            ],
            "selector": {"app": selector or name},
        },
    }


def ingress(name: str, service_name: str, port: int) -> Dict[str, Any]:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": name, "annotations": {"nginx.ingress.kubernetes.io/rewrite-target": "/"}},
        "spec": {
            "ingressClassName": "nginx",
            "rules": [{
                "http": {
                    "paths": [{
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {"service": {"name": service_name, "port": {"number": port}}},
                    }]
                }
            }],
        },
    }


def dump(*documents: Dict[str, Any]) -> str:
    """Serialize one or more manifests as a multi-document YAML stream."""
    return yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False)


def dump_values(values: Dict[str, Any]) -> str:
    """Serialize a Helm values document."""
    return yaml.safe_dump(values, sort_keys=False, default_flow_style=False)
