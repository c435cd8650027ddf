"""Main CLI entrypoint for Rigger."""

import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import click
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .catalog import (
    ARGOCD_RELEASE,
    REGCRED,
    STAGES,
    build_catalog,
    helm_delivered_releases,
)
from .config import ProjectConfig, load_config
from .errors import RiggerError
from .events import EventTypes, get_status_from_events, last_pass_events
from .executor import Executor
from .gitops import GitOpsPublisher, render_repository, write_repository
from .graph import DependencyError, ResourceGraph
from .ids import resource_name
from .ledger import Ledger
from .models import Decision, ResourceDescriptor, ResourceKind
from .providers import Backends, build_backends
from .providers.kube import cluster_urls, fetch_kubeconfig
from .reconciler import PassReport, Reconciler
from .shell import CommandResult, run
from .tags import parse_user_tags
from .teardown import TEARDOWN_TIERS, TeardownPlanner, TeardownReport, TeardownState

logger = logging.getLogger(__name__)

DECISION_GLYPHS = {
    Decision.NOOP: "✓",
    Decision.CREATE: "ℹ",
    Decision.UPDATE: "ℹ",
    Decision.REFRESH: "ℹ",
    Decision.RECREATE: "⚠",
    Decision.DELETE: "⚠",
    Decision.WAIT: "ℹ",
}

TEARDOWN_GLYPHS = {
    TeardownState.CONFIRMED_GONE: "✓",
    TeardownState.SKIPPED: "⚠",
    TeardownState.FAILED: "✗",
    TeardownState.PENDING: "ℹ",
    TeardownState.PRESENT: "ℹ",
    TeardownState.DELETING: "ℹ",
}


@dataclass
class Runtime:
    """Everything one CLI invocation works with."""
    config: ProjectConfig
    ledger: Ledger
    backends: Backends
    executor: Executor
    catalog: List[ResourceDescriptor]
    graph: ResourceGraph
    runner: Callable[..., CommandResult] = run
    master: str = field(init=False)

    def __post_init__(self):
        self.master = resource_name(self.config.project_name, "master")

    def master_ip(self) -> Optional[str]:
        return (self.ledger.get(self.master) or {}).get("public_ip")

    def reconciler(self) -> Reconciler:
        return Reconciler(self.graph, self.executor, self.ledger, parallelism=self.config.timing.parallelism)

    def planner(self, cluster_check: Optional[Callable[[], bool]] = None) -> TeardownPlanner:
        return TeardownPlanner(self.backends.registry, self.ledger, self.executor,
                               parallelism=self.config.timing.parallelism, cluster_check=cluster_check)


def build_runtime(config: ProjectConfig, expected_nodes: Optional[int] = None,
                  runner: Callable[..., CommandResult] = run) -> Runtime:
    """
    Wire ledger, providers, executor and catalog for a project.

    Args:
        config: Project configuration
        expected_nodes: Ready nodes required before cluster work (0 skips the check)
        runner: Command runner for kubectl/helm/scp/git/gh

    Returns:
        Runtime
    """
    ledger = Ledger.load(Path(config.ledger_path))
    master = resource_name(config.project_name, "master")

    def master_ip() -> Optional[str]:
        return (ledger.get(master) or {}).get("public_ip")

    backends = build_backends(config, master_ip, runner=runner, expected_nodes=expected_nodes)
    executor = Executor(backends.registry, ledger, config.timing)
    catalog = build_catalog(config)
    graph = ResourceGraph(catalog)
    graph.check_teardown_tiers(TEARDOWN_TIERS)
    return Runtime(config=config, ledger=ledger, backends=backends, executor=executor,
                   catalog=catalog, graph=graph, runner=runner)


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='Config file (default: rigger.yaml)')
@click.option('--tag', 'tags', multiple=True, help='Extra resource tag key=value')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging')
@click.pass_context
def main(ctx, config_path, tags, output_json, verbose):
    """Rigger - declarative provisioning for a kubeadm cluster on AWS."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    ctx.obj['config_path'] = config_path
    ctx.obj['tags'] = tags
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    # boto3 and urllib3 are chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _json_output(data: Dict[str, Any]) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(ctx, error: Exception) -> None:
    message = error.describe() if isinstance(error, RiggerError) else str(error)
    if ctx.obj.get('json'):
        _json_output({'error': message})
    else:
        click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _runtime(ctx, expected_nodes: Optional[int] = None) -> Runtime:
    runtime = ctx.obj.get('runtime')
    if runtime is None:
        config = load_config(ctx.obj.get('config_path'))
        if ctx.obj.get('tags'):
            try:
                extra = parse_user_tags(list(ctx.obj['tags']))
            except ValueError as e:
                raise click.BadParameter(str(e), param_hint='--tag')
            config = config.model_copy(update={'tags': {**config.tags, **extra}})
        runtime = build_runtime(config, expected_nodes=expected_nodes)
        ctx.obj['runtime'] = runtime
    return runtime


def _print_pass(report: PassReport) -> None:
    reason = "the pass was aborted" if report.aborted_by is not None else "a prerequisite failed"
    for outcome in report.outcomes:
        name = outcome.descriptor.name
        kind = outcome.descriptor.kind.value
        if outcome.error is not None:
            detail = outcome.error.describe() if isinstance(outcome.error, RiggerError) else str(outcome.error)
            _human_output(f"✗ {name} ({kind}): {detail}")
        elif outcome.skipped:
            _human_output(f"⚠ {name} ({kind}): skipped, {reason}")
        else:
            drift = f" [drift: {', '.join(outcome.drift)}]" if outcome.drift else ""
            _human_output(f"{DECISION_GLYPHS[outcome.decision]} {name} ({kind}): {outcome.decision.value}{drift}")

    if report.aborted_by is not None:
        _human_output(f"\n✗ Pass aborted: {report.aborted_by.describe()}")
    elif report.ok:
        _human_output(f"\n✓ {len(report.outcomes)} resources converged")
    else:
        _human_output(f"\n✗ {len(report.failures)} resources failed")


def _print_teardown(report: TeardownReport) -> None:
    for name, state in report.states.items():
        line = f"{TEARDOWN_GLYPHS[state]} {name}: {state.value}"
        if name in report.errors:
            line += f" ({report.errors[name].describe()})"
        _human_output(line)
    _human_output("\n✓ Teardown complete" if report.ok else "\n✗ Teardown incomplete; re-run rigger teardown")


def _record_endpoints(runtime: Runtime) -> None:
    """Keep AWS_REGION, APP_URL and ARGOCD_URL in the ledger in sync with the master IP."""
    config = runtime.config
    ip = runtime.master_ip()
    runtime.ledger.set_unmanaged("AWS_REGION", config.region)
    if not ip:
        return
    runtime.ledger.set_unmanaged("APP_URL", f"http://{ip}:{config.ingress_http_nodeport}")
    if config.delivery == "argocd":
        runtime.ledger.set_unmanaged("ARGOCD_URL", f"https://{ip}:{config.argocd_nodeport}")


def _finish_pass(ctx, runtime: Runtime, report: PassReport) -> None:
    _record_endpoints(runtime)
    if ctx.obj.get('json'):
        _json_output(report.to_dict())
    else:
        _print_pass(report)
    if not report.ok:
        sys.exit(1)


@main.command()
@click.option('--stage', 'stages', multiple=True, type=click.Choice(STAGES), help='Only these stages')
@click.option('--resource', 'names', multiple=True, help='Only these resources (and nothing else)')
@click.option('--refresh', 'force_refresh', multiple=True, help='Force-refresh these credentials')
@click.pass_context
def up(ctx, stages, names, force_refresh):
    """Converge every declared resource."""
    try:
        runtime = _runtime(ctx)
        report = runtime.reconciler().run(names=names or None, stages=stages or None,
                                          force_refresh=force_refresh)
    except (RiggerError, KeyError, DependencyError) as e:
        _fail(ctx, e)
    _finish_pass(ctx, runtime, report)


@main.command()
@click.option('--stage', 'stages', multiple=True, type=click.Choice(STAGES), help='Only these stages')
@click.option('--resource', 'names', multiple=True, help='Only these resources')
@click.pass_context
def plan(ctx, stages, names):
    """Show what `up` would do, without changing anything."""
    try:
        runtime = _runtime(ctx)
        report = runtime.reconciler().plan(names=names or None, stages=stages or None)
    except (RiggerError, KeyError, DependencyError) as e:
        _fail(ctx, e)

    if ctx.obj.get('json'):
        _json_output(report.to_dict())
    else:
        pending = 0
        for outcome in report.outcomes:
            if outcome.error is not None:
                _human_output(f"✗ {outcome.descriptor.name}: {outcome.error}")
                continue
            if outcome.decision != Decision.NOOP:
                pending += 1
            drift = f" [drift: {', '.join(outcome.drift)}]" if outcome.drift else ""
            _human_output(f"{DECISION_GLYPHS[outcome.decision]} {outcome.descriptor.name}: "
                          f"{outcome.decision.value}{drift}")
        _human_output(f"\nℹ {pending} resources would change")
    if report.failures:
        sys.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show the ledger and the outcome of the last pass."""
    try:
        runtime = _runtime(ctx)
    except RiggerError as e:
        _fail(ctx, e)

    state = get_status_from_events()
    failures = [e['data'] for e in last_pass_events() if e.get('type') == EventTypes.RESOURCE_FAILED]
    snapshot = runtime.ledger.snapshot()

    if ctx.obj.get('json'):
        _json_output({'status': state, 'failures': failures, 'ledger': snapshot})
        return

    _human_output(f"Status: {state}")
    _human_output(f"Ledger: {runtime.ledger.path}")
    if not snapshot:
        _human_output("ℹ No resources recorded")
    for descriptor in runtime.catalog:
        entry = snapshot.get(descriptor.name)
        glyph = "✓" if entry is not None else "ℹ"
        detail = "recorded" if entry is not None else "not recorded"
        _human_output(f"{glyph} {descriptor.name} ({descriptor.kind.value}): {detail}")
    for failure in failures:
        _human_output(f"✗ {failure.get('detail', failure.get('name'))}")


@main.command()
@click.argument('names', nargs=-1)
@click.pass_context
def refresh(ctx, names):
    """Rotate time-limited credentials (the registry pull secret by default)."""
    names = list(names) or [REGCRED]
    try:
        runtime = _runtime(ctx)
        report = runtime.reconciler().run(names=names, force_refresh=names)
    except (RiggerError, KeyError) as e:
        _fail(ctx, e)
    _finish_pass(ctx, runtime, report)


@main.command()
@click.pass_context
def start(ctx):
    """Start stopped cluster nodes and repoint the kubeconfig at the master."""
    try:
        runtime = _runtime(ctx, expected_nodes=0)
        before = runtime.master_ip()
        instances = [d.name for d in runtime.catalog if d.kind == ResourceKind.INSTANCE]
        report = runtime.reconciler().run(names=instances)
    except (RiggerError, KeyError) as e:
        _fail(ctx, e)

    after = runtime.master_ip()
    if report.ok and after and after != before:
        _human_output(f"ℹ Master IP changed: {before} -> {after}")
        config = runtime.config
        try:
            fetch_kubeconfig(after, config.key_file, config.ssh_user, config.kubeconfig_path, runtime.runner)
        except RiggerError as e:
            _human_output(f"⚠ Kubeconfig not updated: {e.describe()}")
    _finish_pass(ctx, runtime, report)


def _argocd_password(runtime: Runtime, fetch: bool) -> Optional[str]:
    recorded = (runtime.ledger.get(ARGOCD_RELEASE) or {}).get("admin_password")
    if recorded and not fetch:
        return recorded
    return runtime.backends.kubectl.secret_value(
        "argocd-initial-admin-secret", runtime.config.argocd_namespace, "password")


def _check_url(url: str) -> str:
    try:
        # kubeadm and ArgoCD serve self-signed certificates
        response = requests.get(url, timeout=10, verify=False)
        return f"HTTP {response.status_code}"
    except requests.RequestException as e:
        return f"unreachable ({type(e).__name__})"


@main.command()
@click.option('--check', is_flag=True, help='Probe each URL over HTTP')
@click.option('--fetch-password', is_flag=True, help='Read the ArgoCD password from the cluster')
@click.pass_context
def urls(ctx, check, fetch_password):
    """Print the application and ArgoCD URLs."""
    try:
        runtime = _runtime(ctx)
    except RiggerError as e:
        _fail(ctx, e)

    ip = runtime.master_ip()
    if not ip:
        _fail(ctx, RiggerError("Master public IP is not recorded", remediation="rigger up --stage infrastructure"))

    config = runtime.config
    entries = [(label, url) for label, url in cluster_urls(ip, config)
               if config.delivery == "argocd" or label != "ArgoCD"]

    password = None
    if config.delivery == "argocd":
        try:
            password = _argocd_password(runtime, fetch_password)
        except RiggerError as e:
            _human_output(f"⚠ ArgoCD password unavailable: {e.describe()}")

    results = {url: _check_url(url) for _, url in entries} if check else {}

    if ctx.obj.get('json'):
        _json_output({
            'master_ip': ip,
            'urls': {label: url for label, url in entries},
            'checks': results,
            'argocd_username': 'admin' if config.delivery == 'argocd' else None,
            'argocd_password': password,
        })
        return

    for label, url in entries:
        suffix = f"  [{results[url]}]" if url in results else ""
        _human_output(f"{label}: {url}{suffix}")
    if config.delivery == "argocd":
        _human_output("ArgoCD username: admin")
        _human_output(f"ArgoCD password: {password or '(unknown)'}")


@main.group()
def ledger():
    """Inspect or rebuild the deployment ledger."""


@ledger.command('show')
@click.option('--env', 'as_env', is_flag=True, help='Flattened shell variables')
@click.pass_context
def ledger_show(ctx, as_env):
    """Print the ledger."""
    try:
        runtime = _runtime(ctx)
    except RiggerError as e:
        _fail(ctx, e)

    if ctx.obj.get('json'):
        _json_output(runtime.ledger.environment() if as_env else runtime.ledger.snapshot())
    elif as_env:
        for var, value in sorted(runtime.ledger.environment().items()):
            click.echo(f"{var}={value}")
    else:
        click.echo(runtime.ledger.render())


@ledger.command('rebuild')
@click.pass_context
def ledger_rebuild(ctx):
    """Re-probe every declared resource and rewrite the ledger from live state."""
    try:
        runtime = _runtime(ctx)
    except RiggerError as e:
        _fail(ctx, e)

    resolved: Dict[str, Dict[str, str]] = {}
    result: Dict[str, str] = {}
    for layer in runtime.graph.layers():
        for descriptor in layer:
            try:
                attributes = runtime.executor.observe(descriptor, resolved)
            except RiggerError as e:
                result[descriptor.name] = f"unknown: {e.message}"
                continue
            if attributes is None:
                runtime.ledger.remove(descriptor.name)
                result[descriptor.name] = "absent"
            else:
                resolved[descriptor.name] = attributes
                result[descriptor.name] = "recorded"
    _record_endpoints(runtime)

    if ctx.obj.get('json'):
        _json_output(result)
        return
    glyphs = {"recorded": "✓", "absent": "ℹ"}
    for name, state in result.items():
        _human_output(f"{glyphs.get(state, '⚠')} {name}: {state}")
    if any(state.startswith("unknown") for state in result.values()):
        sys.exit(1)


@main.group()
def gitops():
    """Generate and publish the GitOps repository."""


def _gitops_inputs(runtime: Runtime) -> Dict[str, str]:
    config = runtime.config
    registry = (runtime.ledger.get(config.ecr_repositories[0]) or {}).get("registry")
    if not registry:
        try:
            registry = runtime.backends.clients.registry_url()
        except (ClientError, BotoCoreError) as e:
            raise RiggerError(f"Cannot determine the ECR registry: {e}", remediation="rigger up --stage registry")
    table = (runtime.ledger.get(config.dynamodb_table) or {}).get("table_name", config.dynamodb_table)
    return {"registry": registry, "table_name": table}


def _generate(runtime: Runtime) -> Path:
    inputs = _gitops_inputs(runtime)
    files = render_repository(runtime.config, inputs["registry"], inputs["table_name"])
    workdir = Path(runtime.config.gitops.workdir)
    write_repository(files, workdir)
    return workdir


@gitops.command('generate')
@click.pass_context
def gitops_generate(ctx):
    """Write the charts and Applications into the GitOps working tree."""
    try:
        runtime = _runtime(ctx)
        workdir = _generate(runtime)
    except RiggerError as e:
        _fail(ctx, e)
    if ctx.obj.get('json'):
        _json_output({'workdir': str(workdir)})
    else:
        _human_output(f"✓ GitOps repository generated in {workdir}")


@gitops.command('publish')
@click.pass_context
def gitops_publish(ctx):
    """Generate, commit and push the GitOps repository."""
    try:
        runtime = _runtime(ctx)
        workdir = _generate(runtime)
        commit = GitOpsPublisher(runtime.config, runtime.runner).publish(workdir)
    except RiggerError as e:
        _fail(ctx, e)
    if ctx.obj.get('json'):
        _json_output({'workdir': str(workdir), 'commit': commit})
    elif commit:
        _human_output(f"✓ Published {commit[:8]}")
    else:
        _human_output("ℹ Nothing to publish")


@gitops.command('handover')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def gitops_handover(ctx, yes):
    """Remove the Helm-delivered application releases so ArgoCD can own them."""
    try:
        runtime = _runtime(ctx)
        planner = runtime.planner()
        targets = planner.targets(runtime.catalog, names=helm_delivered_releases())
    except RiggerError as e:
        _fail(ctx, e)

    if not targets:
        _human_output("ℹ No Helm-delivered releases recorded")
        return
    if not yes and not click.confirm(f"Uninstall {', '.join(d.name for d in targets)}?"):
        _human_output("ℹ Handover cancelled")
        return

    report = planner.run(targets)
    if ctx.obj.get('json'):
        _json_output(report.to_dict())
    else:
        _print_teardown(report)
    if not report.ok:
        sys.exit(1)


def _cleanup_extras(runtime: Runtime, purge: bool) -> None:
    config = runtime.config

    def wanted(question: str) -> bool:
        return purge or click.confirm(question, default=False)

    if config.gitops.github_user and wanted(f"Delete GitHub repository {config.gitops.github_user}/"
                                            f"{config.gitops.repo_name}?"):
        try:
            GitOpsPublisher(config, runtime.runner).delete_repository()
        except RiggerError as e:
            _human_output(f"⚠ Repository not deleted: {e.describe()}")

    for label, path in (("key file", config.key_file), ("kubeconfig", config.kubeconfig_path)):
        if path.exists() and wanted(f"Delete local {label} {path}?"):
            path.unlink()
            _human_output(f"✓ Deleted {path}")

    ledger_path = runtime.ledger.path
    if ledger_path.exists() and wanted(f"Delete the ledger {ledger_path}? It cannot be rebuilt once "
                                       f"the resources are gone"):
        ledger_path.unlink()
        _human_output(f"✓ Deleted {ledger_path}")


@main.command()
@click.option('--yes', is_flag=True, help='Skip confirmation prompts')
@click.option('--rediscover', is_flag=True, help='Also delete declared resources missing from the ledger')
@click.option('--purge', is_flag=True, help='Also delete the GitOps repository, local keys, kubeconfig and ledger')
@click.pass_context
def teardown(ctx, yes, rediscover, purge):
    """Delete every recorded resource in reverse dependency order."""
    try:
        runtime = _runtime(ctx, expected_nodes=0)
        planner = runtime.planner(cluster_check=runtime.backends.access.reachable)
        targets = planner.targets(runtime.catalog, rediscover=rediscover)
    except RiggerError as e:
        _fail(ctx, e)

    if not targets:
        _human_output("ℹ Nothing recorded in the ledger; use --rediscover to probe declared resources")
    else:
        _human_output("The following resources will be deleted:")
        for index, tier in enumerate(planner.stages(targets), start=1):
            _human_output(f"  {index}. " + ", ".join(f"{d.name} ({d.kind.value})" for d in tier))

        if not yes:
            if click.prompt("Type 'yes' to continue", default="", show_default=False) != "yes":
                _human_output("ℹ Teardown cancelled")
                return
            if click.prompt("Type 'DELETE' to confirm", default="", show_default=False) != "DELETE":
                _human_output("ℹ Teardown cancelled")
                return

    report = planner.run(targets)
    if ctx.obj.get('json'):
        _json_output(report.to_dict())
    else:
        _print_teardown(report)

    if not report.ok:
        sys.exit(1)
    if purge or not (yes or ctx.obj.get('json')):
        _cleanup_extras(runtime, purge)


if __name__ == '__main__':
    main()
