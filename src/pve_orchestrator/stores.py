"""
Persistence collaborators used by the orchestrator.

Each store is an async interface so a database-backed implementation can be
dropped in. The in-memory implementations back the tests and the CLI; the
CLI persists them between runs through StateFile.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import yaml

from .exceptions import ConfigurationError, NotFoundError, ValidationError
from .logging import logger
from .models import (
    ProvisioningTask,
    QuotaPlan,
    ResourceUsage,
    Template,
    VMOwnership,
)


class TaskStore(ABC):
    """Task records keyed by task id and tenant."""

    @abstractmethod
    async def create(self, task: ProvisioningTask) -> None:
        pass

    @abstractmethod
    async def get(self, task_id: str) -> Optional[ProvisioningTask]:
        pass

    @abstractmethod
    async def save(self, task: ProvisioningTask) -> None:
        pass

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[ProvisioningTask]:
        """Return the tenant's tasks, newest first."""
        pass

    @abstractmethod
    async def trim_tenant(self, tenant_id: str, keep: int) -> int:
        """Delete finished tasks of a tenant beyond the ``keep`` most recent."""
        pass

    @abstractmethod
    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete finished tasks created before ``cutoff``."""
        pass


class QuotaPlanStore(ABC):
    """Quota plans and the plan assigned to each tenant."""

    @abstractmethod
    async def get(self, plan_id: str) -> Optional[QuotaPlan]:
        pass

    @abstractmethod
    async def plan_for_tenant(self, tenant_id: str) -> Optional[QuotaPlan]:
        pass


class LedgerStore(ABC):
    """Used resources per tenant."""

    @abstractmethod
    async def get(self, tenant_id: str) -> ResourceUsage:
        pass

    @abstractmethod
    async def put(self, tenant_id: str, usage: ResourceUsage) -> None:
        pass


class OwnershipStore(ABC):
    """VM ownership records."""

    @abstractmethod
    async def add(self, record: VMOwnership) -> None:
        pass

    @abstractmethod
    async def get(self, vm_id: str) -> Optional[VMOwnership]:
        pass

    @abstractmethod
    async def find(self, node: str, remote_vm_id: int) -> Optional[VMOwnership]:
        pass

    @abstractmethod
    async def remove(self, vm_id: str) -> None:
        pass

    @abstractmethod
    async def count_for_tenant(self, tenant_id: str) -> int:
        pass


class TemplateStore(ABC):
    """Template records."""

    @abstractmethod
    async def get(self, template_id: str) -> Optional[Template]:
        pass

    @abstractmethod
    async def add(self, template: Template) -> None:
        pass

    @abstractmethod
    async def remove(self, template_id: str) -> None:
        pass


class MemoryTaskStore(TaskStore):
    def __init__(self) -> None:
        self.tasks: Dict[str, ProvisioningTask] = {}

    async def create(self, task: ProvisioningTask) -> None:
        if task.task_id in self.tasks:
            raise ValidationError(f"Task {task.task_id} already exists", field="task_id")
        self.tasks[task.task_id] = task

    async def get(self, task_id: str) -> Optional[ProvisioningTask]:
        return self.tasks.get(task_id)

    async def save(self, task: ProvisioningTask) -> None:
        if task.task_id not in self.tasks:
            raise NotFoundError("Task", task.task_id)
        self.tasks[task.task_id] = task

    async def list_for_tenant(self, tenant_id: str) -> List[ProvisioningTask]:
        tasks = [t for t in self.tasks.values() if t.tenant_id == tenant_id]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    async def trim_tenant(self, tenant_id: str, keep: int) -> int:
        tasks = await self.list_for_tenant(tenant_id)
        # running tasks are still owned by their pipeline
        stale = [t for t in tasks[keep:] if t.status.is_terminal]
        for task in stale:
            del self.tasks[task.task_id]
        return len(stale)

    async def purge_older_than(self, cutoff: datetime) -> int:
        stale = [
            t.task_id
            for t in self.tasks.values()
            if t.created_at < cutoff and t.status.is_terminal
        ]
        for task_id in stale:
            del self.tasks[task_id]
        return len(stale)


class MemoryQuotaPlanStore(QuotaPlanStore):
    def __init__(
        self,
        plans: Optional[Dict[str, QuotaPlan]] = None,
        assignments: Optional[Dict[str, str]] = None,
    ) -> None:
        self.plans: Dict[str, QuotaPlan] = dict(plans or {})
        self.assignments: Dict[str, str] = dict(assignments or {})

    def assign(self, tenant_id: str, plan: QuotaPlan) -> None:
        self.plans[plan.plan_id] = plan
        self.assignments[tenant_id] = plan.plan_id

    async def get(self, plan_id: str) -> Optional[QuotaPlan]:
        return self.plans.get(plan_id)

    async def plan_for_tenant(self, tenant_id: str) -> Optional[QuotaPlan]:
        plan_id = self.assignments.get(tenant_id)
        if plan_id is None:
            return None
        return self.plans.get(plan_id)


class MemoryLedgerStore(LedgerStore):
    def __init__(self, usage: Optional[Dict[str, ResourceUsage]] = None) -> None:
        self.usage: Dict[str, ResourceUsage] = dict(usage or {})

    async def get(self, tenant_id: str) -> ResourceUsage:
        current = self.usage.get(tenant_id, ResourceUsage())
        return ResourceUsage(current.cpu_cores, current.memory_mb, current.storage_gb)

    async def put(self, tenant_id: str, usage: ResourceUsage) -> None:
        self.usage[tenant_id] = usage


class MemoryOwnershipStore(OwnershipStore):
    def __init__(self) -> None:
        self.records: Dict[str, VMOwnership] = {}

    async def add(self, record: VMOwnership) -> None:
        existing = await self.find(record.node, record.remote_vm_id)
        if existing is not None:
            raise ValidationError(
                f"VM {record.remote_vm_id} on {record.node} is already owned by {existing.tenant_id}"
            )
        self.records[record.vm_id] = record

    async def get(self, vm_id: str) -> Optional[VMOwnership]:
        return self.records.get(vm_id)

    async def find(self, node: str, remote_vm_id: int) -> Optional[VMOwnership]:
        for record in self.records.values():
            if record.node == node and record.remote_vm_id == remote_vm_id:
                return record
        return None

    async def remove(self, vm_id: str) -> None:
        self.records.pop(vm_id, None)

    async def count_for_tenant(self, tenant_id: str) -> int:
        return sum(1 for r in self.records.values() if r.tenant_id == tenant_id)


class MemoryTemplateStore(TemplateStore):
    def __init__(self, templates: Optional[Dict[str, Template]] = None) -> None:
        self.templates: Dict[str, Template] = dict(templates or {})

    async def get(self, template_id: str) -> Optional[Template]:
        return self.templates.get(template_id)

    async def add(self, template: Template) -> None:
        self.templates[template.template_id] = template

    async def remove(self, template_id: str) -> None:
        self.templates.pop(template_id, None)


@dataclass
class Stores:
    """The set of stores one orchestrator works against."""

    tasks: TaskStore = field(default_factory=MemoryTaskStore)
    plans: QuotaPlanStore = field(default_factory=MemoryQuotaPlanStore)
    ledger: LedgerStore = field(default_factory=MemoryLedgerStore)
    ownership: OwnershipStore = field(default_factory=MemoryOwnershipStore)
    templates: TemplateStore = field(default_factory=MemoryTemplateStore)


class StateFile:
    """Loads and saves in-memory stores as one YAML document."""

    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)

    def load(self) -> Stores:
        """
        Read the state file into in-memory stores.

        A missing file yields empty stores.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        if not os.path.exists(self.path):
            logger.info("State file not found, starting empty", path=self.path)
            return Stores()

        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load state file {self.path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid state file format in {self.path}")

        try:
            return self._from_document(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid state file {self.path}: {e}")

    def save(self, stores: Stores) -> None:
        document = self._to_document(stores)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
        os.replace(tmp_path, self.path)
        logger.debug("Saved state file", path=self.path)

    @staticmethod
    def _from_document(data: dict) -> Stores:
        tasks = MemoryTaskStore()
        for item in data.get("tasks") or []:
            task = ProvisioningTask.from_dict(item)
            tasks.tasks[task.task_id] = task

        plans = MemoryQuotaPlanStore(
            plans={
                plan_id: QuotaPlan.from_dict({"plan_id": plan_id, **item})
                for plan_id, item in (data.get("plans") or {}).items()
            },
            assignments=dict(data.get("tenant_plans") or {}),
        )

        ledger = MemoryLedgerStore(
            {
                tenant: ResourceUsage.from_dict(item)
                for tenant, item in (data.get("ledger") or {}).items()
            }
        )

        ownership = MemoryOwnershipStore()
        for item in data.get("vms") or []:
            record = VMOwnership.from_dict(item)
            ownership.records[record.vm_id] = record

        templates = MemoryTemplateStore(
            {
                template_id: Template.from_dict({"template_id": template_id, **item})
                for template_id, item in (data.get("templates") or {}).items()
            }
        )

        return Stores(
            tasks=tasks, plans=plans, ledger=ledger, ownership=ownership, templates=templates
        )

    @staticmethod
    def _to_document(stores: Stores) -> dict:
        if not all(
            isinstance(store, cls)
            for store, cls in (
                (stores.tasks, MemoryTaskStore),
                (stores.plans, MemoryQuotaPlanStore),
                (stores.ledger, MemoryLedgerStore),
                (stores.ownership, MemoryOwnershipStore),
                (stores.templates, MemoryTemplateStore),
            )
        ):
            raise ConfigurationError("Only in-memory stores can be saved to a state file")

        def without(data: dict, key: str) -> dict:
            return {k: v for k, v in data.items() if k != key}

        return {
            "plans": {
                plan_id: without(plan.to_dict(), "plan_id")
                for plan_id, plan in stores.plans.plans.items()
            },
            "tenant_plans": dict(stores.plans.assignments),
            "ledger": {
                tenant: usage.to_dict() for tenant, usage in stores.ledger.usage.items()
            },
            "templates": {
                template_id: without(template.to_dict(), "template_id")
                for template_id, template in stores.templates.templates.items()
            },
            "vms": [record.to_dict() for record in stores.ownership.records.values()],
            "tasks": [task.to_dict() for task in stores.tasks.tasks.values()],
        }
