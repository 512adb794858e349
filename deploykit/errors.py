"""Exception hierarchy for deploykit.

Every error raised by the pipeline derives from :class:`DeployKitError`.
When the orchestrator re-raises a step failure it attaches the finished
:class:`~deploykit.models.DeploymentStatus` as ``exc.deployment`` so
callers can inspect the step list without calling ``get_status()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .models import DeploymentStatus, RollbackInfo


class DeployKitError(RuntimeError):
    """Base class for all deploykit errors."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.deployment: Optional[DeploymentStatus] = None


class ConfigurationError(DeployKitError):
    """Missing environment, secret, tool, or invalid cluster context."""


class ResourceError(ConfigurationError):
    """Disk or memory usage beyond the hard threshold."""


class DeploymentInProgressError(ConfigurationError):
    """Another deployment of the same environment is building or deploying."""

    def __init__(self, deployment_id: str) -> None:
        super().__init__(f"Deployment {deployment_id} is already in progress")
        self.deployment_id = deployment_id


class CommandError(DeployKitError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        command: str,
        returncode: Optional[int] = None,
        output: str = "",
        timed_out: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        if timed_out:
            message = f"Command timed out after {timeout:.0f}s: {command}"
        else:
            message = f"Command failed with exit code {returncode}: {command}"
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out


class ReadinessTimeoutError(DeployKitError):
    """A rollout did not become ready within the readiness timeout."""

    def __init__(self, resource: str, timeout: float) -> None:
        super().__init__(
            f"Deployment {resource} failed to become ready within {timeout:.0f}s"
        )
        self.resource = resource
        self.timeout = timeout


class HealthCheckError(DeployKitError):
    """One or more health checks never succeeded."""

    def __init__(self, failures: Sequence[str]) -> None:
        super().__init__(f"Health checks failed for: {', '.join(failures)}")
        self.failures = list(failures)


class VerificationError(DeployKitError):
    """Post-deploy verification found the release unhealthy."""


class CanaryViolationError(VerificationError):
    """A canary observation window saw an error-rate or health breach."""


class MetricsError(DeployKitError):
    """The metrics backend could not be queried."""


class DeploymentCancelled(DeployKitError):
    """The caller's cancellation token fired at a suspension point."""

    def __init__(self, message: str = "Deployment cancelled") -> None:
        super().__init__(message)


class DeploymentError(DeployKitError):
    """Wraps an unexpected exception raised inside a pipeline step."""


class RollbackError(DeployKitError):
    """A rollback could not be performed or its redeploy failed."""

    def __init__(self, message: str, info: Optional[RollbackInfo] = None) -> None:
        super().__init__(message)
        self.info = info
