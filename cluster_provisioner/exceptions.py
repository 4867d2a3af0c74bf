"""Custom exceptions for the cluster provisioner."""


class ProvisionerError(Exception):
    """Base exception for all cluster provisioner errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(ProvisionerError):
    """Exception raised for configuration errors."""

    pass


class ExternalCommandError(ProvisionerError):
    """Exception raised when an external CLI (terraform, git, kubectl) fails."""

    def __init__(self, message: str, details: str = None, command: list[str] | None = None):
        self.command = command or []
        super().__init__(message, details)


class ProviderAPIError(ProvisionerError):
    """Exception raised for cloud provider, Vault, or telemetry HTTP API errors."""

    pass


class KubernetesError(ProvisionerError):
    """Exception raised for Kubernetes API errors."""

    pass


class ReadinessTimeoutError(ProvisionerError):
    """Exception raised when a readiness wait does not succeed in time."""

    pass


class TunnelError(ProvisionerError):
    """Exception raised when a port forward cannot be established."""

    pass


class RecordStoreError(ProvisionerError):
    """Exception raised when the cluster record store cannot be read or written."""

    pass


class InvalidStatusTransition(RecordStoreError):
    """Exception raised when a cluster status would move backward."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition: {from_status} -> {to_status}",
            "Cluster status only moves forward: pending -> in_progress -> provisioned | failed",
        )


class ClusterLockedError(RecordStoreError):
    """Exception raised when another run already holds the lease for a cluster."""

    pass


class ProvisioningError(ProvisionerError):
    """Exception raised by the pipeline runner when a stage fails.

    The message is the failing stage's own cause, so callers see the same text
    that was recorded as the cluster's last error. ``results`` holds one
    StageResult per stage that ran, ending with the failed one.
    """

    def __init__(self, message: str, stage: str, results: list | None = None):
        self.stage = stage
        self.results = results or []
        super().__init__(message, f"stage '{stage}' failed")
