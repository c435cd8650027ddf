"""
Subprocess wrapper for the command-line collaborators (kubectl, helm,
terraform, git, gh, ssh/scp).
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import PreconditionMissing, ProviderRejected, TransientError

logger = logging.getLogger(__name__)

_TRANSIENT_PATTERNS = re.compile(
    r"connection refused|was refused|i/o timeout|timed out|tls handshake timeout|"
    r"the server is currently unable|too many requests|etcdserver: request timed out|"
    r"unexpected eof|connection reset",
    re.IGNORECASE,
)
_NOT_FOUND_PATTERNS = re.compile(r"not ?found|does not exist|doesn't have a resource type", re.IGNORECASE)

INSTALL_HINTS = {
    "kubectl": "install kubectl (https://kubernetes.io/docs/tasks/tools/)",
    "helm": "install helm (https://helm.sh/docs/intro/install/)",
    "terraform": "install terraform (https://developer.hashicorp.com/terraform/install)",
    "gh": "install the GitHub CLI and run 'gh auth login'",
    "git": "install git",
    "scp": "install an OpenSSH client",
    "ssh": "install an OpenSSH client",
}


@dataclass
class CommandResult:
    """Completed command."""
    command: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def not_found(self) -> bool:
        return not self.ok and bool(_NOT_FOUND_PATTERNS.search(self.stderr))


def run(
    command: List[str],
    input: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    check: bool = True,
    timeout: Optional[float] = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        command: Argument vector (never passed through a shell)
        input: Text fed to stdin (manifests, values documents)
        env: Full environment for the child process
        cwd: Working directory
        check: Raise on non-zero exit
        timeout: Seconds before the command is killed

    Returns:
        CommandResult

    Raises:
        PreconditionMissing: The executable is not installed
        TransientError: Timeouts and connection-level failures
        ProviderRejected: Any other non-zero exit when check is True
    """
    logger.debug(f"$ {' '.join(command)}")

    try:
        proc = subprocess.run(
            command,
            input=input,
            env=env,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        tool = command[0]
        raise PreconditionMissing(
            f"{tool} not found on PATH",
            remediation=INSTALL_HINTS.get(tool, f"install {tool}"),
        )
    except subprocess.TimeoutExpired:
        raise TransientError(f"Command timed out after {timeout}s: {' '.join(command[:3])}")

    result = CommandResult(command=list(command), returncode=proc.returncode,
                           stdout=proc.stdout or "", stderr=proc.stderr or "")

    if check and not result.ok:
        raise classify_failure(result)

    return result


def classify_failure(result: CommandResult) -> Exception:
    """Map a failed command to the error taxonomy."""
    summary = (result.stderr.strip() or result.stdout.strip()).splitlines()
    last_lines = "\n".join(summary[-5:])
    message = f"{' '.join(result.command[:3])} failed (exit {result.returncode}): {last_lines}"

    if _TRANSIENT_PATTERNS.search(result.stderr):
        return TransientError(message)
    return ProviderRejected(message)
