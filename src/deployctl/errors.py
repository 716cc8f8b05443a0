"""Error taxonomy shared by the lifecycle controller and the CLI.

Every failure raised by the core derives from :class:`DeployctlError`. Each
class carries the exit code the CLI should use and, where one exists, a hint
telling the operator what to run next.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class DeployctlError(RuntimeError):
    """Base class for lifecycle failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.FAILURE
    fatal: bool = True

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        """Store *message* and an optional actionable *hint*."""
        super().__init__(message)
        self.hint = hint


class AlreadyExistsError(DeployctlError):
    """Raised when creating a record that is already present."""

    exit_code = ExitCode.OK
    fatal = False


class AlreadyConfiguredError(AlreadyExistsError):
    """Raised by bootstrap when the environment configuration exists."""


class NotConfiguredError(DeployctlError):
    """Raised when an operation needs an environment configuration that is absent."""

    exit_code = ExitCode.PRECONDITION


class UnknownFieldError(DeployctlError):
    """Raised when the environment configuration lacks a requested field."""


class UnknownVersionError(DeployctlError):
    """Raised when a requested tag is not present in the local ledger."""


class NoVersionsAvailableError(DeployctlError):
    """Raised when the local ledger holds no tags at all."""


class NetworkError(DeployctlError):
    """Raised when the ledger remote cannot be reached."""


class PullFailedError(DeployctlError):
    """Raised when pulling images for a version fails."""


class RequiresOfflineUpgradeError(PullFailedError):
    """Raised when an archive-origin installation cannot pull images."""


class CorruptArchiveError(DeployctlError):
    """Raised when an offline archive is missing expected content."""


class FilesystemError(DeployctlError):
    """Raised when a local filesystem operation fails."""


class RuntimeCommandError(DeployctlError):
    """Raised when the container runtime reports a failure."""


class CertificateMissingError(DeployctlError):
    """Raised when ``up`` is attempted without both TLS artifacts."""

    exit_code = ExitCode.PRECONDITION


class PartialUpgradeError(DeployctlError):
    """Raised when images were materialized but the version commit failed."""

    def __init__(self, version: str, cause: Exception) -> None:
        """Record the candidate *version* and the underlying *cause*."""
        super().__init__(
            f"Images for '{version}' are in place but committing the version failed: {cause}",
            hint=f"The upgrade is safe to retry: deployctl upgrade {version}",
        )
        self.version = version
        self.cause = cause


__all__ = [
    "AlreadyConfiguredError",
    "AlreadyExistsError",
    "CertificateMissingError",
    "CorruptArchiveError",
    "DeployctlError",
    "FilesystemError",
    "NetworkError",
    "NoVersionsAvailableError",
    "NotConfiguredError",
    "PartialUpgradeError",
    "PullFailedError",
    "RequiresOfflineUpgradeError",
    "RuntimeCommandError",
    "UnknownFieldError",
    "UnknownVersionError",
]
