"""Domain exceptions for the deployment pipeline.

Services raise these; HTTP routes translate them into HTTPException.
"""

from typing import Any, Dict, Optional


class DeploymentPipelineError(Exception):
    """Base exception for the deployment pipeline."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(DeploymentPipelineError):
    """Malformed deploy request. Never retried."""


class DeploymentNotFoundError(DeploymentPipelineError):
    def __init__(self, deployment_id: str):
        super().__init__(
            f"Deployment not found: {deployment_id}",
            {"deployment_id": deployment_id},
        )


class InvalidTransitionError(DeploymentPipelineError):
    def __init__(self, deployment_id: str, current: str, requested: str):
        super().__init__(
            f"Illegal status transition {current} -> {requested} for deployment {deployment_id}",
            {"deployment_id": deployment_id, "current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class ExecutorUnavailableError(DeploymentPipelineError):
    """The execution backend cannot be reached."""


class LaunchError(DeploymentPipelineError):
    """The backend was reachable but refused or failed to start the job."""

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        details = {}
        if diagnostic:
            details["diagnostic"] = diagnostic
        super().__init__(message, details)
        self.diagnostic = diagnostic


class BuildFailure(DeploymentPipelineError):
    """The build ran and exited non-zero."""

    def __init__(self, exit_code: int, log_tail: str = ""):
        super().__init__(
            f"Build failed with exit code {exit_code}",
            {"exit_code": exit_code},
        )
        self.exit_code = exit_code
        self.log_tail = log_tail


class BuildTimeoutError(DeploymentPipelineError):
    def __init__(self, timeout_sec: float):
        super().__init__(f"Build timed out after {timeout_sec:g} seconds", {"timeout_sec": timeout_sec})
        self.timeout_sec = timeout_sec


class PublicationError(DeploymentPipelineError):
    """Build output could not be published to the content store."""


class ResolutionError(DeploymentPipelineError):
    """Malformed host or path at serving time. Answered with 400/404."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
