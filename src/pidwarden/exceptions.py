"""pidwarden exceptions."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class PidWardenError(Exception):
    """Base exception for pidwarden errors."""


class ConfigError(PidWardenError):
    """Base exception for configuration errors."""


class ConfigLoadError(ConfigError):
    """Raised when configuration cannot be loaded or parsed."""

    def __init__(
        self,
        message: str,
        *,
        path: "Path | None" = None,
        line: int | None = None,
        column: int | None = None,
    ) -> None:
        """Initialize with error message and optional location context."""
        super().__init__(message)
        self.path: "Path | None" = path
        self.line: int | None = line
        self.column: int | None = column


# =============================================================================
# Supervisor Exceptions
# =============================================================================


class SupervisorError(PidWardenError):
    """Base exception for supervisor operations."""


class ServiceNotFoundError(SupervisorError, KeyError):
    """Raised when a service cannot be found by name.

    Attributes:
        service_name: The name of the service that was not found.
    """

    def __init__(self, message: str, *, service_name: str | None = None) -> None:
        """Initialize with error message and service context.

        Args:
            message: Human-readable error message.
            service_name: The name of the service that was not found.
        """
        super().__init__(message)
        self.service_name: str | None = service_name

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class RegistrationError(SupervisorError, ValueError):
    """Raised when a service record is rejected at registration time.

    Attributes:
        service_name: The name of the offending service.
        field: The configuration field that failed validation, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        service_name: str | None = None,
        field: str | None = None,
    ) -> None:
        """Initialize with error message and registration context."""
        super().__init__(message)
        self.service_name: str | None = service_name
        self.field: str | None = field


class LaunchError(SupervisorError):
    """Raised when a command could not be started.

    Fatal for that attempt; consumes one slot of the restart budget.

    Attributes:
        service_name: The name of the service that failed to launch.
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        service_name: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and service context.

        Args:
            message: Human-readable error message.
            service_name: The name of the service that failed to launch.
            cause: The underlying exception that caused the failure.
        """
        super().__init__(message)
        self.service_name: str | None = service_name
        self.cause: Exception | None = cause


class ProbeTimeout(SupervisorError):  # noqa: N818
    """Raised when a probe or progress sample exceeds its deadline.

    Transient: the sample is treated as missing for the tick.
    """

    def __init__(self, message: str, *, service_name: str, timeout: float) -> None:
        """Initialize with error message and timeout context."""
        super().__init__(message)
        self.service_name: str = service_name
        self.timeout: float = timeout


class PIDStoreError(SupervisorError):
    """Raised when the PID store cannot write or remove a record.

    Attributes:
        path: The record path involved.
        operation: The failed operation (write, remove).
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        path: "Path",
        operation: str,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and file context."""
        super().__init__(message)
        self.path: "Path" = path
        self.operation: str = operation
        self.cause: Exception | None = cause


class StoreCorruption(PIDStoreError):  # noqa: N818
    """Raised when a PID record on disk is unreadable or partially written.

    Readers translate this into an absent record.
    """


class FingerprintMismatch(SupervisorError):  # noqa: N818
    """Raised when a live PID does not carry the recorded fingerprint.

    The process is treated as dead, never as the one originally launched.
    """

    def __init__(
        self,
        message: str,
        *,
        pid: int,
        expected: str,
        actual: str,
    ) -> None:
        """Initialize with error message and fingerprint context."""
        super().__init__(message)
        self.pid: int = pid
        self.expected: str = expected
        self.actual: str = actual


class BudgetExhausted(SupervisorError):  # noqa: N818
    """Raised when a service exceeds its consecutive failure budget.

    Attributes:
        service_name: The service that failed permanently.
        consecutive_failures: Failures counted when the budget ran out.
    """

    def __init__(
        self,
        message: str,
        *,
        service_name: str,
        consecutive_failures: int,
    ) -> None:
        """Initialize with error message and budget context."""
        super().__init__(message)
        self.service_name: str = service_name
        self.consecutive_failures: int = consecutive_failures
