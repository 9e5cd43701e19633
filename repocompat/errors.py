"""Exception taxonomy for the analysis engine.

Only :class:`ConfigurationBootstrapError` is allowed to abort a run; every
other error is caught at the component boundary and turned into a degraded
partial result.
"""

from __future__ import annotations


class RepoCompatError(Exception):
    """Base class for all engine errors."""


class FileParseError(RepoCompatError):
    """A single source file could not be parsed."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to parse {path}: {reason}")
        self.path = path
        self.reason = reason


class RepositoryInaccessibleError(RepoCompatError):
    """Clone, checkout or credential failure for a repository."""


class ManifestMissingError(RepoCompatError):
    """No dependency manifest at the expected path."""


class AuditUnavailableError(RepoCompatError):
    """The audit command is missing or its output is unparseable."""


class ComparisonError(RepoCompatError):
    """A comparison pair cannot be evaluated."""


class ConfigurationBootstrapError(RepoCompatError):
    """Run-level configuration could not be loaded."""


class ExternalCommandTimeout(RepoCompatError):
    """An external process (git, npm) exceeded its timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"'{command}' timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class AnalysisCancelled(RepoCompatError):
    """The run was cancelled through its cancellation token."""


class ResultNotFoundError(RepoCompatError):
    """No stored analysis result for the requested id."""
