"""
Error taxonomy for reconciliation and teardown.

The core only raises these; the CLI decides how to render them.
"""

from typing import Optional


class RiggerError(Exception):
    """Base error. Carries the resource, the pipeline stage and the remediation command."""

    def __init__(
        self,
        message: str,
        resource: Optional[str] = None,
        stage: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.stage = stage
        self.remediation = remediation

    def describe(self) -> str:
        """Render a one-stop failure report for operators."""
        parts = [self.message]
        if self.resource:
            parts.append(f"resource: {self.resource}")
        if self.stage:
            parts.append(f"stage: {self.stage}")
        if self.remediation:
            parts.append(f"remediation: {self.remediation}")
        return " | ".join(parts)


class ConfigError(RiggerError):
    """Configuration file missing fields or malformed."""


class ProbeFailed(RiggerError):
    """Provider unreachable or rate-limited after all retries."""


class PreconditionMissing(RiggerError):
    """A prerequisite resource is absent. Fatal for the whole pass."""


class PropagationTimeout(RiggerError):
    """A bounded wait expired before the provider reported the expected state."""


class ProviderRejected(RiggerError):
    """Permission, quota or validation error from the provider. Never retried."""


class TransientError(RiggerError):
    """Retryable provider failure. Surfaces as ProbeFailed once retries are exhausted."""


# Errors that abort the entire pass rather than just the failing dependency branch
FATAL_ERRORS = (PreconditionMissing, ProviderRejected, ConfigError)
