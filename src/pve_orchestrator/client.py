"""
Main client class for VM provisioning operations.

OrchestratorClient is the entry point the request layer calls into. It wires
the backend, stores, ledger and pipelines together and turns every error into
a typed result, so no exception crosses this boundary.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from .backend import BackendClient, ProxmoxClient
from .config import AppConfig
from .exceptions import NotFoundError, OrchestratorError, PermissionError
from .logging import logger
from .models import (
    CloneTemplateRequest,
    CloneTemplateResult,
    DeletionResult,
    PENDING_HANDLE,
    ProvisionRequest,
    ProvisionResult,
    ReconfigureRequest,
    ReconfigureResult,
    Requester,
    TaskSnapshot,
    TaskStatus,
    TemplateDeletionResult,
)
from .poller import DiskReadinessGate, TaskPoller
from .provisioner import VMProvisioner
from .quota import QuotaLedger
from .reclaim import VMReclaimer
from .reconfigure import VMReconfigurer
from .stores import Stores
from .tasks import TaskRecorder
from .templates import TemplateCloner


R = TypeVar("R")


class OrchestratorClient:
    """
    Main client for VM provisioning operations.

    Args:
        config (AppConfig): Validated configuration
        stores (Optional[Stores]): Persistence collaborators (in-memory by default)
        backend (Optional[BackendClient]): Control plane client (ProxmoxClient by default)
        sleep: Cooperative sleep used by every wait loop

    Attributes:
        ledger (QuotaLedger): Shared quota ledger
        recorder (TaskRecorder): Shared task recorder
    """

    def __init__(
        self,
        config: AppConfig,
        stores: Optional[Stores] = None,
        backend: Optional[BackendClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.stores = stores or Stores()
        self.backend = backend if backend is not None else ProxmoxClient(config, sleep=sleep)
        self.ledger = QuotaLedger(self.stores.ledger, self.stores.plans)
        self.recorder = TaskRecorder(
            self.stores.tasks,
            retention_count=config.task_retention_count,
            retention_days=config.task_retention_days,
        )
        self.poller = TaskPoller(self.backend, sleep=sleep)
        self.gate = DiskReadinessGate(self.backend, sleep=sleep)

        pipeline_args = dict(
            backend=self.backend,
            stores=self.stores,
            ledger=self.ledger,
            recorder=self.recorder,
            config=config,
            poller=self.poller,
            gate=self.gate,
            sleep=sleep,
        )
        self.provisioner = VMProvisioner(**pipeline_args)
        self.template_cloner = TemplateCloner(**pipeline_args)
        self.reconfigurer = VMReconfigurer(**pipeline_args)
        self.reclaimer = VMReclaimer(self.backend, self.stores, self.ledger, config, self.poller)

    async def __aenter__(self) -> "OrchestratorClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()

    async def _guard(
        self, operation: str, result_type: Type[R], call: Callable[[], Awaitable[R]]
    ) -> R:
        try:
            return await call()
        except OrchestratorError as e:
            logger.warning(
                f"{operation} failed: {e.message}",
                operation=operation,
                error_kind=e.kind,
                error_code=e.error_code,
            )
            return result_type(success=False, error=e.message, error_kind=e.kind)
        except Exception as e:
            logger.error(f"Unexpected error in {operation}: {e}", operation=operation, exc_info=True)
            return result_type(success=False, error=f"Internal error: {e}", error_kind="internal")

    async def provision(self, request: ProvisionRequest, requester: Requester) -> ProvisionResult:
        """
        Provision a VM from a template.

        Args:
            request: Template, name, node and size of the new VM
            requester: Calling tenant

        Returns:
            ProvisionResult: task_id, vm_name and vm_id on success
        """
        return await self._guard(
            "provision", ProvisionResult, lambda: self.provisioner.provision(request, requester)
        )

    async def get_task_status(
        self, task_id: str, requester: Requester, live: bool = False
    ) -> TaskSnapshot:
        """
        Return a task record, optionally merged with live remote status.

        Args:
            task_id: Task to look up
            requester: Owner of the task, or an admin
            live: Query the backend for the status of the running step's handle

        Returns:
            TaskSnapshot: The task as a dict plus remote status fields
        """

        async def lookup() -> TaskSnapshot:
            task = await self.stores.tasks.get(task_id)
            if task is None:
                raise NotFoundError("Task", task_id)
            if not (requester.is_admin or task.tenant_id == requester.tenant_id):
                raise PermissionError("task belongs to another tenant", f"task {task_id}")

            snapshot = TaskSnapshot(success=True, task=task.to_dict())
            if live and task.status == TaskStatus.IN_PROGRESS:
                step = task.current_step()
                if step is not None and step.handle != PENDING_HANDLE:
                    # Clone handles live on the template's node; others on the target
                    report = await self.backend.read_task_status(
                        self._handle_node(step.handle, task.target_node), step.handle
                    )
                    if report is not None:
                        snapshot.remote_status = report.status
                        snapshot.remote_exit_status = report.exit_status
            return snapshot

        return await self._guard("get_task_status", TaskSnapshot, lookup)

    @staticmethod
    def _handle_node(handle: str, default: str) -> str:
        """Read the node name out of a ``UPID:node:...`` handle."""
        parts = handle.split(":")
        if len(parts) > 2 and parts[0] == "UPID" and parts[1]:
            return parts[1]
        return default

    async def delete_vm(self, vm_id: str, requester: Requester) -> DeletionResult:
        """
        Delete an owned VM and reclaim its resources.

        Returns:
            DeletionResult: vm_id, remote_id, remote_node, task_id and message
        """
        return await self._guard(
            "delete_vm", DeletionResult, lambda: self.reclaimer.delete_vm(vm_id, requester)
        )

    async def delete_template(
        self, template_id: str, requester: Requester
    ) -> TemplateDeletionResult:
        """
        Delete a template owned by the requester and drop its record.

        Returns:
            TemplateDeletionResult: template_id, remote_id, remote_node, task_id and message
        """
        return await self._guard(
            "delete_template",
            TemplateDeletionResult,
            lambda: self.reclaimer.delete_template(template_id, requester),
        )

    async def clone_template(
        self, request: CloneTemplateRequest, requester: Requester
    ) -> CloneTemplateResult:
        return await self._guard(
            "clone_template",
            CloneTemplateResult,
            lambda: self.template_cloner.clone_template(request, requester),
        )

    async def reconfigure_vm(
        self, request: ReconfigureRequest, requester: Requester
    ) -> ReconfigureResult:
        return await self._guard(
            "reconfigure_vm",
            ReconfigureResult,
            lambda: self.reconfigurer.reconfigure_vm(request, requester),
        )

    async def purge_tasks(self, max_age_days: Optional[int] = None) -> int:
        """Delete task records older than the retention window."""
        return await self.recorder.purge(max_age_days)
