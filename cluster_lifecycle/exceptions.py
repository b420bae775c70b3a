"""Custom exceptions for cluster lifecycle orchestration."""


class ClusterLifecycleError(Exception):
    """Base exception for all cluster lifecycle errors."""

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


class PreconditionError(ClusterLifecycleError):
    """Exception raised when a required reference or input is missing."""

    pass


class ValidationError(ClusterLifecycleError):
    """Exception raised for validation errors."""

    pass


class ConfigurationError(ClusterLifecycleError):
    """Exception raised for configuration errors."""

    pass


class KubectlError(ClusterLifecycleError):
    """Exception raised when a kubectl or clusterctl invocation fails."""

    pass


class KubernetesApiError(ClusterLifecycleError):
    """Exception raised when a Kubernetes API request fails."""

    def __init__(self, message: str, details: str | None = None, status: int | None = None):
        super().__init__(message, details)
        self.status = status


class ProviderError(ClusterLifecycleError):
    """Exception raised for infrastructure provider errors."""

    pass


class RetryExhaustedError(ClusterLifecycleError):
    """Exception raised when a retried operation gives up.

    The last error raised by the operation is kept in ``last_error`` and is
    also chained as ``__cause__``.
    """

    def __init__(self, message: str, last_error: BaseException | None = None, attempts: int = 0):
        self.last_error = last_error
        self.attempts = attempts
        details = f"last error: {last_error}" if last_error is not None else None
        super().__init__(message, details)


class RetryCancelledError(ClusterLifecycleError):
    """Exception raised when a retry loop is interrupted by its cancel event."""

    pass


class TerminalStatusError(ClusterLifecycleError):
    """Exception raised when a polled resource finished in an unsuccessful state."""

    def __init__(self, message: str, status: str, details: str = None):
        self.status = status
        super().__init__(message, details)


class CommandFailedError(TerminalStatusError):
    """Exception raised when a remote command finished with a non-success status."""

    def __init__(self, status: str, stdout: str = "", stderr: str = ""):
        self.stdout = stdout
        self.stderr = stderr
        super().__init__("failed to execute ssm command", status, f"final status: {status}")


class MoveError(ClusterLifecycleError):
    """Exception raised when moving the management plane fails.

    A partially moved management plane can't be repaired by calling move
    again, so this error is never retried.
    """

    pass


class WorkflowError(ClusterLifecycleError):
    """Exception raised by a workflow step, tagged with the workflow phase."""

    def __init__(self, message: str, phase: str, details: str = None):
        self.phase = phase
        super().__init__(f"{phase}: {message}", details)


class ReadinessError(ClusterLifecycleError):
    """Exception raised when a bounded readiness wait fails.

    ``wait`` names what was being waited for, e.g. ``control-plane``.
    """

    def __init__(self, message: str, wait: str, details: str = None):
        self.wait = wait
        super().__init__(message, details)
