class DeploymentError(Exception):
    """Raised when a deployment step fails."""
    pass


class PreflightError(DeploymentError):
    """Arguments or environment rejected before any mutation happened."""
    pass


class InstanceCreationError(DeploymentError):
    """The new instance could not be created or never reported an address."""
    pass


class HealthCheckError(DeploymentError):
    """Readiness or canary probes did not succeed within their budget."""
    pass


class CutoverError(DeploymentError):
    """The final probe failed after 100% of traffic moved to the new instance."""
    pass


class SnapshotError(DeploymentError):
    """The current route document could not be captured."""
    pass


class RouteDocumentError(DeploymentError):
    """The route document on disk is not valid YAML or has the wrong shape."""
    pass


class CommandError(DeploymentError):
    """A runtime CLI command exited non-zero or timed out."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DeploymentAborted(DeploymentError):
    """An external abort signal interrupted a timed wait."""
    pass


class PreparationError(DeploymentError):
    """Connectivity check or image pull failed during preparation."""
    pass


class DecommissionWarning(Warning):
    """Old instance or workspace could not be removed after a successful cutover."""
    pass
