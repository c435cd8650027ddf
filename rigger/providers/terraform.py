"""
Terraform backend for ECR repositories.

Probing still goes through the AWS API; create, update and delete run the
bundled Terraform module (init, plan to a saved plan file, apply that plan)
so the repositories live in Terraform state.
"""

import json
import logging
import shutil
import subprocess
import threading
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import get_rigger_home
from ..errors import PreconditionMissing
from ..events import emit_event, EventTypes
from ..models import ObservedState, ResourceDescriptor
from ..shell import INSTALL_HINTS, CommandResult, classify_failure
from ..tags import base_tags
from .aws import AwsClients, EcrRepositoryProvider
from .base import ProviderContext, log_action

logger = logging.getLogger(__name__)

TERRAFORM_FILES = ("main.tf", "variables.tf", "outputs.tf")
RESOURCE_TYPE = "aws_ecr_repository"
RESOURCE_NAME = "repos"
PLAN_FILE = "tfplan"


def bundled_module_dir() -> Path:
    return Path(str(resources.files("rigger") / "terraform" / "ecr"))


class TerraformWorkspace:
    """A working directory holding the ECR module, its variables and its state."""

    def __init__(self, workdir: Path, source: Optional[Path] = None):
        self.workdir = workdir
        self.source = source or bundled_module_dir()

    @property
    def log_file(self) -> Path:
        return self.workdir / "terraform.log"

    @property
    def state_file(self) -> Path:
        return self.workdir / "terraform.tfstate"

    def prepare(self) -> None:
        """
        Copy the module files into the working directory.

        Raises:
            PreconditionMissing: If the module source has no .tf files
        """
        self.workdir.mkdir(parents=True, exist_ok=True)
        copied = 0
        for file_name in TERRAFORM_FILES:
            src_file = self.source / file_name
            if src_file.exists():
                shutil.copy2(src_file, self.workdir / file_name)
                copied += 1
        if copied == 0:
            raise PreconditionMissing(f"No Terraform files found in {self.source}",
                                      remediation="set terraform_dir in rigger.yaml")

    def write_tfvars(self, tfvars: Dict[str, Any]) -> None:
        with open(self.workdir / "terraform.tfvars.json", "w") as f:
            json.dump(tfvars, f, indent=2)

    def run(self, *args: str) -> str:
        """
        Run a terraform command, streaming its output into terraform.log.

        Returns:
            Combined stdout and stderr

        Raises:
            PreconditionMissing: terraform is not installed
            TransientError / ProviderRejected: non-zero exit, classified by its output
        """
        command = ["terraform", *args]
        try:
            process = subprocess.Popen(
                command,
                cwd=self.workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError:
            raise PreconditionMissing("terraform not found on PATH", remediation=INSTALL_HINTS["terraform"])

        output_lines: List[str] = []
        with open(self.log_file, "a") as log_file:
            log_file.write(f"=== {' '.join(command)} ===\n")
            for line in process.stdout:
                line = line.rstrip()
                output_lines.append(line)
                log_file.write(line + "\n")
                log_file.flush()

        process.wait()
        output = "\n".join(output_lines)
        emit_event(EventTypes.TF_COMMAND, {"command": args[0], "ok": process.returncode == 0})

        if process.returncode != 0:
            failure = classify_failure(CommandResult(command=command, returncode=process.returncode,
                                                     stdout="", stderr=output))
            failure.remediation = f"see {self.log_file}"
            raise failure
        return output

    def init(self) -> None:
        self.run("init", "-input=false", "-no-color")

    def plan(self) -> None:
        self.run("plan", "-input=false", "-no-color", f"-out={PLAN_FILE}")

    def apply(self) -> None:
        """Apply the plan saved by plan(); terraform refuses it if the state moved since."""
        self.run("apply", "-input=false", "-no-color", PLAN_FILE)

    def destroy(self, targets: Optional[List[str]] = None) -> None:
        args = ["destroy", "-input=false", "-auto-approve", "-no-color"]
        for target in targets or []:
            args.append(f"-target={target}")
        self.run(*args)

    def outputs(self) -> Dict[str, Any]:
        raw = json.loads(self.run("output", "-json") or "{}")
        return {name: item.get("value") for name, item in raw.items()}

    def managed_keys(self) -> List[str]:
        """Repository names present in Terraform state."""
        if not self.state_file.exists():
            return []
        with open(self.state_file) as f:
            state = json.load(f)
        keys = []
        for resource in state.get("resources", []):
            if resource.get("type") == RESOURCE_TYPE and resource.get("name") == RESOURCE_NAME:
                keys.extend(str(instance.get("index_key")) for instance in resource.get("instances", []))
        return keys


def resource_address(repository: str) -> str:
    return f'{RESOURCE_TYPE}.{RESOURCE_NAME}["{repository}"]'


class EcrTerraformProvider(EcrRepositoryProvider):
    """
    ECR repositories managed through Terraform.

    One apply creates every configured repository, so applies are
    serialized and skipped once a repository was applied in this process.
    """

    def __init__(self, context: ProviderContext, clients: AwsClients, workspace: Optional[TerraformWorkspace] = None):
        super().__init__(context, clients)
        config = context.config
        source = Path(config.terraform_dir) if config.terraform_dir else None
        self.workspace = workspace or TerraformWorkspace(get_rigger_home() / "terraform" / "ecr", source)
        self._lock = threading.Lock()
        self._applied: set = set()

    def _tfvars(self) -> Dict[str, Any]:
        config = self.context.config
        tags = base_tags(config.project_name, config.project_name, config.tags)
        tags.pop("Name")
        return {
            "region": self.clients.region,
            "repositories": list(config.ecr_repositories),
            "scan_on_push": True,
            "tags": tags,
        }

    def _apply(self, descriptor: ResourceDescriptor) -> None:
        with self._lock:
            if descriptor.name in self._applied:
                return
            self.workspace.prepare()
            self.workspace.write_tfvars(self._tfvars())
            self.call(self.workspace.init, "terraform init")
            self.call(self.workspace.plan, "terraform plan")
            self.call(self.workspace.apply, "terraform apply")
            self._applied.update(self.context.config.ecr_repositories)

    def create(self, descriptor: ResourceDescriptor) -> None:
        log_action("Applying Terraform for", descriptor)
        self._apply(descriptor)

    def update(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        log_action("Applying Terraform for", descriptor)
        self._apply(descriptor)

    def delete(self, descriptor: ResourceDescriptor, observed: ObservedState) -> None:
        with self._lock:
            if descriptor.name not in self.workspace.managed_keys():
                logger.info(f"ℹ {descriptor.name} is not in Terraform state; deleting through the API")
                super().delete(descriptor, observed)
                return
            log_action("Destroying", descriptor, "terraform")
            self.call(lambda: self.workspace.destroy([resource_address(descriptor.name)]),
                      f"terraform destroy {descriptor.name}")
            self._applied.discard(descriptor.name)
