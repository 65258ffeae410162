"""
Data models for VM provisioning operations.

This module defines the data structures used throughout the orchestrator.
"""

import re
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum


PENDING_HANDLE = "PENDING"

# Disk descriptor size such as "size=32G" or "size=1T"
_DISK_SIZE_RE = re.compile(r"size=(\d+)([GT])")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(Enum):
    """Status values shared by tasks and their steps."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskKind(Enum):
    """Kinds of pipelines that own a task record."""

    PROVISION = "provision"
    TEMPLATE_CLONE = "template_clone"
    RECONFIGURE = "reconfigure"


class PollOutcome(Enum):
    """Terminal outcome of a wait loop."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class Step:
    """One named step of a task."""

    name: str
    handle: str = PENDING_HANDLE
    status: TaskStatus = TaskStatus.PENDING
    message: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "handle": self.handle,
            "status": self.status.value,
            "message": self.message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            name=data["name"],
            handle=data.get("handle") or PENDING_HANDLE,
            status=TaskStatus(data.get("status", "pending")),
            message=data.get("message"),
            started_at=_parse_time(data.get("started_at")),
            ended_at=_parse_time(data.get("ended_at")),
            error=data.get("error"),
        )


@dataclass
class ProvisioningTask:
    """Persisted record of a multi-step pipeline run."""

    task_id: str
    tenant_id: str
    vm_id: str
    template_vm_id: str
    target_node: str
    kind: TaskKind = TaskKind.PROVISION
    status: TaskStatus = TaskStatus.PENDING
    progress: int = 0
    steps: List[Step] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def current_step(self) -> Optional[Step]:
        """Return the step that is in progress, if any."""
        for step in self.steps:
            if step.status == TaskStatus.IN_PROGRESS:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "tenant_id": self.tenant_id,
            "vm_id": self.vm_id,
            "template_vm_id": self.template_vm_id,
            "target_node": self.target_node,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "steps": [step.to_dict() for step in self.steps],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningTask":
        return cls(
            task_id=data["task_id"],
            tenant_id=data["tenant_id"],
            vm_id=str(data["vm_id"]),
            template_vm_id=str(data["template_vm_id"]),
            target_node=data["target_node"],
            kind=TaskKind(data.get("kind", "provision")),
            status=TaskStatus(data.get("status", "pending")),
            progress=int(data.get("progress", 0)),
            steps=[Step.from_dict(s) for s in data.get("steps", [])],
            created_at=_parse_time(data.get("created_at")) or utcnow(),
            updated_at=_parse_time(data.get("updated_at")) or utcnow(),
            error=data.get("error"),
        )


@dataclass
class StepOutcome:
    """Typed payload of a single step update."""

    status: TaskStatus
    handle: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ResourceUsage:
    """CPU cores, memory (MB) and storage (GB) consumed or requested."""

    cpu_cores: int = 0
    memory_mb: int = 0
    storage_gb: int = 0

    def __add__(self, other: "ResourceUsage") -> "ResourceUsage":
        return ResourceUsage(
            cpu_cores=self.cpu_cores + other.cpu_cores,
            memory_mb=self.memory_mb + other.memory_mb,
            storage_gb=self.storage_gb + other.storage_gb,
        )

    def __sub__(self, other: "ResourceUsage") -> "ResourceUsage":
        """Subtract per field, flooring each at zero."""
        return ResourceUsage(
            cpu_cores=max(0, self.cpu_cores - other.cpu_cores),
            memory_mb=max(0, self.memory_mb - other.memory_mb),
            storage_gb=max(0, self.storage_gb - other.storage_gb),
        )

    def signed_delta(self, other: "ResourceUsage") -> "ResourceUsage":
        """Return ``other - self`` without flooring."""
        return ResourceUsage(
            cpu_cores=other.cpu_cores - self.cpu_cores,
            memory_mb=other.memory_mb - self.memory_mb,
            storage_gb=other.storage_gb - self.storage_gb,
        )

    def positive_part(self) -> "ResourceUsage":
        return ResourceUsage(
            cpu_cores=max(0, self.cpu_cores),
            memory_mb=max(0, self.memory_mb),
            storage_gb=max(0, self.storage_gb),
        )

    def negative_part(self) -> "ResourceUsage":
        """Magnitudes of the negative fields."""
        return ResourceUsage(
            cpu_cores=max(0, -self.cpu_cores),
            memory_mb=max(0, -self.memory_mb),
            storage_gb=max(0, -self.storage_gb),
        )

    def is_zero(self) -> bool:
        return self.cpu_cores == 0 and self.memory_mb == 0 and self.storage_gb == 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceUsage":
        return cls(
            cpu_cores=int(data.get("cpu_cores", 0)),
            memory_mb=int(data.get("memory_mb", 0)),
            storage_gb=int(data.get("storage_gb", 0)),
        )


@dataclass(frozen=True)
class QuotaPlan:
    """Per-VM and aggregate resource ceilings for a tenant."""

    plan_id: str
    name: str
    max_cpu_cores_per_vm: int
    max_memory_per_vm: int  # MB
    max_storage_per_vm: int  # GB
    max_cpu_cores_sum: int
    max_memory_sum: int  # MB
    max_storage_sum: int  # GB
    max_vms: Optional[int] = None

    @property
    def aggregate(self) -> ResourceUsage:
        return ResourceUsage(
            cpu_cores=self.max_cpu_cores_sum,
            memory_mb=self.max_memory_sum,
            storage_gb=self.max_storage_sum,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaPlan":
        return cls(**data)


@dataclass
class VMOwnership:
    """Maps a (node, remote id) pair to the tenant that owns it."""

    vm_id: str
    node: str
    remote_vm_id: int
    tenant_id: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_id": self.vm_id,
            "node": self.node,
            "remote_vm_id": self.remote_vm_id,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMOwnership":
        return cls(
            vm_id=data["vm_id"],
            node=data["node"],
            remote_vm_id=int(data["remote_vm_id"]),
            tenant_id=data["tenant_id"],
            created_at=_parse_time(data.get("created_at")) or utcnow(),
        )


@dataclass
class Template:
    """A clonable source VM with default cloud-init credentials."""

    template_id: str
    description: str
    node: str
    remote_vm_id: int
    owner_id: str
    ci_user: Optional[str] = None
    ci_password: Optional[str] = field(default=None, repr=False)
    is_public: bool = False

    def visible_to(self, tenant_id: str, is_admin: bool = False) -> bool:
        return self.is_public or is_admin or self.owner_id == tenant_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        data = dict(data)
        data["remote_vm_id"] = int(data["remote_vm_id"])
        return cls(**data)


@dataclass
class VMConfig:
    """Subset of a remote VM configuration the orchestrator reads."""

    cores: int = 0
    memory_mb: int = 0
    primary_disk: Optional[str] = None
    name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def disk_size_gb(self) -> Optional[int]:
        """Disk size parsed from the primary disk descriptor."""
        if not self.primary_disk:
            return None
        match = _DISK_SIZE_RE.search(self.primary_disk)
        if not match:
            return None
        size = int(match.group(1))
        return size * 1024 if match.group(2) == "T" else size

    def footprint(self) -> ResourceUsage:
        return ResourceUsage(
            cpu_cores=self.cores,
            memory_mb=self.memory_mb,
            storage_gb=self.disk_size_gb or 0,
        )

    @classmethod
    def from_api(cls, data: Dict[str, Any], disk_slot: str = "scsi0") -> "VMConfig":
        return cls(
            cores=int(data.get("cores", 1) or 1),
            memory_mb=int(data.get("memory", 0) or 0),
            primary_disk=data.get(disk_slot),
            name=data.get("name"),
            raw=dict(data),
        )


@dataclass
class TaskStatusReport:
    """Status of a remote task: running or stopped with an exit status."""

    status: str
    exit_status: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"


@dataclass
class BackendResult:
    """Discriminated outcome of a backend write."""

    kind: str  # "immediate" | "task" | "failure"
    handle: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def immediate(cls) -> "BackendResult":
        return cls(kind="immediate")

    @classmethod
    def task(cls, handle: str) -> "BackendResult":
        return cls(kind="task", handle=handle)

    @classmethod
    def failure(cls, message: str) -> "BackendResult":
        return cls(kind="failure", message=message)

    @property
    def ok(self) -> bool:
        return self.kind != "failure"

    @property
    def is_task(self) -> bool:
        return self.kind == "task"


@dataclass
class PollResult:
    """Result of a bounded wait loop."""

    outcome: PollOutcome
    message: Optional[str] = None
    attempts: int = 0
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == PollOutcome.SUCCESS


@dataclass
class StepResult:
    """Success or failure of one pipeline step."""

    success: bool
    handle: Optional[str] = None
    message: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def ok(cls, handle: Optional[str] = None, message: Optional[str] = None) -> "StepResult":
        return cls(success=True, handle=handle, message=message)

    @classmethod
    def failed(cls, error: Exception, handle: Optional[str] = None) -> "StepResult":
        return cls(success=False, handle=handle, error=error)


@dataclass
class Requester:
    """Identity of the caller as established by the request layer."""

    tenant_id: str
    is_admin: bool = False


@dataclass
class ProvisionRequest:
    """Request to provision a VM from a template."""

    template_id: Optional[str]
    name: Optional[str]
    target_node: Optional[str]
    cpu_cores: Optional[int]
    memory_mb: Optional[int]
    disk_gb: Optional[int]
    ci_user: Optional[str] = None
    ci_password: Optional[str] = field(default=None, repr=False)
    storage: Optional[str] = None

    @property
    def requested(self) -> ResourceUsage:
        return ResourceUsage(
            cpu_cores=self.cpu_cores or 0,
            memory_mb=self.memory_mb or 0,
            storage_gb=self.disk_gb or 0,
        )


@dataclass
class CloneTemplateRequest:
    """Request to duplicate a template and seal the copy."""

    template_id: Optional[str]
    name: Optional[str]
    target_node: Optional[str]
    description: Optional[str] = None
    storage: Optional[str] = None


@dataclass
class ReconfigureRequest:
    """Request to change an existing VM's name, size or credentials."""

    vm_id: Optional[str]
    name: Optional[str] = None
    cpu_cores: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[int] = None
    ci_user: Optional[str] = None
    ci_password: Optional[str] = field(default=None, repr=False)

    def has_changes(self) -> bool:
        return any(
            value is not None
            for value in (
                self.name,
                self.cpu_cores,
                self.memory_mb,
                self.disk_gb,
                self.ci_user,
                self.ci_password,
            )
        )


@dataclass
class ProvisionResult:
    success: bool
    task_id: Optional[str] = None
    vm_name: Optional[str] = None
    vm_id: Optional[str] = None
    remote_id: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class DeletionResult:
    success: bool
    vm_id: Optional[str] = None
    remote_id: Optional[int] = None
    remote_node: Optional[str] = None
    task_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class TemplateDeletionResult:
    success: bool
    template_id: Optional[str] = None
    remote_id: Optional[int] = None
    remote_node: Optional[str] = None
    task_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class CloneTemplateResult:
    success: bool
    new_template_id: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class ReconfigureResult:
    success: bool
    task_id: Optional[str] = None
    vm_id: Optional[str] = None
    updated_config: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class TaskSnapshot:
    """Task record as returned to callers, optionally with live remote status."""

    success: bool
    task: Optional[Dict[str, Any]] = None
    remote_status: Optional[str] = None
    remote_exit_status: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
