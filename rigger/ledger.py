"""
Deployment ledger: the only cross-run state.

The ledger is a line-oriented file of shell assignments so it can still be
loaded with ``source deployment-info.txt``. Each resource owns a section::

    # [k8s-kubeadm-master]
    export K8S_KUBEADM_MASTER_KIND="Instance"
    export K8S_KUBEADM_MASTER_PUBLIC_IP="54.1.2.3"
    export MASTER_PUBLIC_IP="${K8S_KUBEADM_MASTER_PUBLIC_IP}"

The last line is an alias: a short variable name that downstream tools
(ssh, kubectl helpers, CI) expect. Assignments outside any section are kept
verbatim as unmanaged variables.

Writes go to a temporary file in the same directory followed by an atomic
rename, so readers never observe a half-written ledger.
"""

import os
import re
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from .ids import env_prefix

_SECTION_RE = re.compile(r"^#\s*\[([a-z0-9][a-z0-9-]*)\]\s*$")
_EXPORT_RE = re.compile(r'^export\s+([A-Za-z_][A-Za-z0-9_]*)="((?:[^"\\]|\\.)*)"\s*$')
_ALIAS_VALUE_RE = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")
_ATTR_RE = re.compile(r"^[a-z0-9_]+$")
_LINE_BREAK_RE = re.compile(r"[\r\n]")

HEADER = [
    "# Kubernetes kubeadm Cluster - Deployment Information",
    "# Generated: {generated}",
    "# IMPORTANT: Source this file to load variables: source {filename}",
]


def quote(value: str) -> str:
    """Escape a value for a double-quoted shell string."""
    return re.sub(r'([\\"$`])', r"\\\1", value)


def unquote(value: str) -> str:
    """Reverse quote()."""
    return re.sub(r"\\(.)", r"\1", value)


def _check_value(key: str, value: str) -> None:
    # One assignment per line; a line break would not survive a reload
    if _LINE_BREAK_RE.search(value):
        raise ValueError(f"Ledger value for {key} contains a line break")


class Ledger:
    """Durable key -> attributes store keyed by resource name."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._entries: Dict[str, Dict[str, str]] = {}
        self._aliases: Dict[str, Dict[str, str]] = {}   # name -> {attribute: VAR}
        self._unmanaged: Dict[str, str] = {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Path) -> "Ledger":
        """
        Load a ledger from disk. A missing file yields an empty ledger.

        Args:
            path: Ledger file path

        Returns:
            Ledger instance
        """
        ledger = cls(path)
        if ledger.path.exists():
            with open(ledger.path, "r") as f:
                ledger._parse(f.read())
        return ledger

    def _parse(self, text: str) -> None:
        section: Optional[str] = None

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue

            match = _SECTION_RE.match(line)
            if match:
                section = match.group(1)
                self._entries.setdefault(section, {})
                continue

            match = _EXPORT_RE.match(line)
            if not match:
                continue  # comments and anything we did not write

            var, raw_value = match.group(1), match.group(2)

            if section is None:
                self._unmanaged[var] = unquote(raw_value)
                continue

            prefix = env_prefix(section) + "_"
            alias = _ALIAS_VALUE_RE.match(raw_value)
            if alias and alias.group(1).startswith(prefix):
                attribute = alias.group(1)[len(prefix):].lower()
                self._aliases.setdefault(section, {})[attribute] = var
            elif var.startswith(prefix):
                self._entries[section][var[len(prefix):].lower()] = unquote(raw_value)
            else:
                self._unmanaged[var] = unquote(raw_value)

    def upsert(self, name: str, attributes: Dict[str, str], aliases: Optional[Dict[str, str]] = None) -> None:
        """
        Overwrite the entry for name (last write wins) and persist.

        Args:
            name: Resource name
            attributes: Attribute mapping; keys must be lowercase snake_case
            aliases: Optional attribute -> shell variable aliases
        """
        for attribute, value in attributes.items():
            if not _ATTR_RE.match(attribute):
                raise ValueError(f"Invalid ledger attribute name: {attribute}")
            _check_value(attribute, str(value))

        with self._lock:
            self._entries[name] = {k: str(v) for k, v in attributes.items()}
            if aliases:
                self._aliases[name] = {k: v for k, v in aliases.items() if k in attributes}
            else:
                self._aliases.pop(name, None)
            self._save()

    def remove(self, name: str) -> None:
        """Drop the entry for name and persist. Missing names are ignored."""
        with self._lock:
            existed = self._entries.pop(name, None) is not None
            self._aliases.pop(name, None)
            if existed:
                self._save()

    def get(self, name: str) -> Optional[Dict[str, str]]:
        """Return a copy of the attributes for name, or None when not recorded."""
        with self._lock:
            entry = self._entries.get(name)
            return dict(entry) if entry is not None else None

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        """Return a copy of every entry."""
        with self._lock:
            return {name: dict(attrs) for name, attrs in self._entries.items()}

    def set_unmanaged(self, var: str, value: str) -> None:
        """Record a free-standing variable (e.g. AWS_ACCOUNT_ID) and persist."""
        _check_value(var, value)
        with self._lock:
            self._unmanaged[var] = value
            self._save()

    def environment(self) -> Dict[str, str]:
        """
        Flatten the ledger to the variables a shell would see after sourcing it.

        Returns:
            Dict of variable name to value with aliases resolved
        """
        with self._lock:
            env = dict(self._unmanaged)
            for name, attrs in self._entries.items():
                prefix = env_prefix(name)
                for attribute, value in attrs.items():
                    env[f"{prefix}_{attribute.upper()}"] = value
                for attribute, var in self._aliases.get(name, {}).items():
                    if attribute in attrs:
                        env[var] = attrs[attribute]
            return env

    def render(self) -> str:
        """Render the ledger file contents."""
        lines = [line.format(generated=datetime.now().isoformat(timespec="seconds"), filename=self.path.name)
                 for line in HEADER]
        lines.append("")

        if self._unmanaged:
            for var, value in self._unmanaged.items():
                lines.append(f'export {var}="{quote(value)}"')
            lines.append("")

        for name in sorted(self._entries):
            prefix = env_prefix(name)
            attrs = self._entries[name]
            lines.append(f"# [{name}]")
            for attribute in sorted(attrs):
                lines.append(f'export {prefix}_{attribute.upper()}="{quote(attrs[attribute])}"')
            for attribute, var in sorted(self._aliases.get(name, {}).items()):
                lines.append(f'export {var}="${{{prefix}_{attribute.upper()}}}"')
            lines.append("")

        return "\n".join(lines)

    def save(self) -> None:
        with self._lock:
            self._save()

    def _save(self) -> None:
        directory = self.path.parent if str(self.path.parent) else Path(".")
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(directory))
        try:
            with os.fdopen(fd, "w") as f:
                f.write(self.render())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

