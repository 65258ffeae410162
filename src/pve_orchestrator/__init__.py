"""PVE Orchestrator - Multi-tenant VM provisioning for Proxmox VE clusters."""

__version__ = "0.1.0"
__description__ = "Proxmox VM provisioning orchestrator"

# Import main classes for easy access
from .client import OrchestratorClient
from .config import AppConfig
from .models import (
    ProvisionRequest,
    CloneTemplateRequest,
    ReconfigureRequest,
    Requester,
    ProvisionResult,
    DeletionResult,
    TemplateDeletionResult,
    CloneTemplateResult,
    ReconfigureResult,
    TaskSnapshot,
    TaskStatus,
    QuotaPlan,
    Template,
    ResourceUsage,
)
from .exceptions import (
    OrchestratorError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    PermissionError,
    QuotaExceededError,
    BackendOperationError,
    BackendTimeoutError,
)
from .stores import Stores, StateFile

__all__ = [
    "__version__",
    "__description__",
    "OrchestratorClient",
    "AppConfig",
    "ProvisionRequest",
    "CloneTemplateRequest",
    "ReconfigureRequest",
    "Requester",
    "ProvisionResult",
    "DeletionResult",
    "TemplateDeletionResult",
    "CloneTemplateResult",
    "ReconfigureResult",
    "TaskSnapshot",
    "TaskStatus",
    "QuotaPlan",
    "Template",
    "ResourceUsage",
    "OrchestratorError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "PermissionError",
    "QuotaExceededError",
    "BackendOperationError",
    "BackendTimeoutError",
    "Stores",
    "StateFile",
]
