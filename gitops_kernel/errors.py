"""
Error taxonomy for the reconciliation core.

Transient errors (cluster connectivity, resource-version conflicts, apply
timeouts) are retried locally with backoff and only surfaced after the retry
budget is exhausted. Structural errors (parse failures, rejected specs) are
never retried and always name the offending resource identity.
"""

from typing import Optional


class GitOpsError(Exception):
    """Base class for every error raised by the kernel."""

    transient = False

    def __init__(self, message: str, key: Optional[object] = None):
        super().__init__(message)
        self.message = message
        self.key = key

    def __str__(self) -> str:
        if self.key is not None:
            return f"{self.message} [{self.key}]"
        return self.message


class SourceUnreachable(GitOpsError):
    """The Git repository, revision or path could not be fetched."""


class ParseError(GitOpsError):
    """A desired-state manifest is malformed."""


class ClusterUnreachable(GitOpsError):
    """The cluster API could not be reached."""

    transient = True


class ApplyConflict(GitOpsError):
    """Resource-version mismatch: the object changed since it was read."""

    transient = True


class ApplyTimeout(GitOpsError):
    """A single apply operation did not complete in time."""

    transient = True


class ApplyRejected(GitOpsError):
    """The cluster rejected the manifest as invalid."""


class ResourceNotFound(GitOpsError):
    """The referenced resource does not exist in the cluster."""


class HealthTimeout(GitOpsError):
    """Applied resources did not become healthy before the deadline."""


class HealthDegraded(GitOpsError):
    """An applied resource reported a failure (e.g. crash loop)."""


class UnknownEnvironment(GitOpsError):
    """No environment is registered under the given name."""
