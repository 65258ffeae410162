"""
Custom exceptions for VM provisioning operations.

This module defines all custom exceptions used throughout the orchestrator.
Every exception carries a numeric ``error_code`` and a stable string ``kind``
so callers can report a typed error without inspecting message text.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for orchestrator operations."""

    kind = "internal"

    def __init__(self, message: str, error_code: int = 2000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(OrchestratorError):
    """Configuration-related errors."""

    kind = "configuration"

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=2001)


class ValidationError(OrchestratorError):
    """Missing or malformed input, or an unsafe name."""

    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, error_code=2002)
        self.field = field


class NotFoundError(OrchestratorError):
    """A template, VM, task or plan does not exist."""

    kind = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} '{resource_id}' not found", error_code=2003)
        self.resource_type = resource_type
        self.resource_id = resource_id


class PermissionError(OrchestratorError):
    """Requester is not the owner and the resource is not public."""

    kind = "permission"

    def __init__(self, message: str, resource: str, operation: str = "access") -> None:
        super().__init__(
            f"Permission denied for {operation} on {resource}: {message}",
            error_code=2004,
        )
        self.resource = resource
        self.operation = operation


class QuotaExceededError(OrchestratorError):
    """Requested resources exceed the per-VM or aggregate plan limits."""

    kind = "quota_exceeded"

    def __init__(
        self, message: str, dimension: str, requested: float = 0, available: float = 0
    ) -> None:
        super().__init__(f"Quota exceeded for {dimension}: {message}", error_code=2005)
        self.dimension = dimension
        self.requested = requested
        self.available = available


class BackendOperationError(OrchestratorError):
    """A remote call was rejected or its task finished with an error."""

    kind = "backend_operation"

    def __init__(self, message: str, operation: str, node: Optional[str] = None) -> None:
        where = f" on {node}" if node else ""
        super().__init__(
            f"Backend error during {operation}{where}: {message}", error_code=2006
        )
        self.operation = operation
        self.node = node


class BackendTimeoutError(OrchestratorError):
    """Polling a remote task exhausted its attempts."""

    kind = "backend_timeout"

    def __init__(self, message: str, operation: str, timeout: float) -> None:
        super().__init__(
            f"Timeout during {operation} after {timeout:g}s: {message}", error_code=2007
        )
        self.operation = operation
        self.timeout = timeout


class CleanupError(OrchestratorError):
    """Best-effort cleanup of a remote resource failed."""

    kind = "cleanup"

    def __init__(self, message: str, resource_id: str, node: str) -> None:
        super().__init__(
            f"Cleanup of {resource_id} on {node} failed: {message}", error_code=2008
        )
        self.resource_id = resource_id
        self.node = node


class TaskStateError(OrchestratorError):
    """An update would break the task/step state machine."""

    kind = "task_state"

    def __init__(self, message: str, task_id: str) -> None:
        super().__init__(f"Invalid update for task {task_id}: {message}", error_code=2009)
        self.task_id = task_id
