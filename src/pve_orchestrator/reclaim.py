"""
VM and template deletion with quota reclaim.

The VM's configuration is read before deletion so the ledger can be credited
with what the VM actually used. Ledger and ownership are changed only after
the backend confirms the deletion. Templates are removed the same way; their
record goes only once the remote template is gone.
"""

from typing import Optional

from .backend import BackendClient
from .config import AppConfig
from .exceptions import (
    BackendOperationError,
    BackendTimeoutError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from .logging import logger
from .models import DeletionResult, PollOutcome, Requester, TemplateDeletionResult
from .poller import TaskPoller
from .quota import QuotaLedger
from .stores import Stores


class VMReclaimer:
    """Deletes owned VMs and templates and returns VM resources to the tenant's quota."""

    def __init__(
        self,
        backend: BackendClient,
        stores: Stores,
        ledger: QuotaLedger,
        config: AppConfig,
        poller: TaskPoller,
    ) -> None:
        self.backend = backend
        self.stores = stores
        self.ledger = ledger
        self.config = config
        self.poller = poller

    async def _delete_remote(self, node: str, remote_id: int, label: str) -> Optional[str]:
        """
        Delete a remote VM or template and wait for the backend to confirm.

        Returns:
            The deletion task handle, or None when the backend deleted immediately

        Raises:
            BackendOperationError: Backend rejected the deletion or its task failed
            BackendTimeoutError: Deletion did not finish in time
        """
        result = await self.backend.delete(node, remote_id)
        if not result.ok:
            raise BackendOperationError(result.message or "delete rejected", "delete", node)

        handle = result.handle if result.is_task else None
        if handle is not None:
            poll = await self.poller.await_completion(
                node,
                handle,
                f"delete {label} {remote_id}",
                max_attempts=self.config.short_poll_attempts,
                interval=self.config.short_poll_interval,
            )
            if poll.outcome == PollOutcome.TIMEOUT:
                raise BackendTimeoutError(
                    poll.message or "no result",
                    "delete",
                    self.config.short_poll_attempts * self.config.short_poll_interval,
                )
            if not poll.ok:
                raise BackendOperationError(poll.message or "delete failed", "delete", node)
        return handle

    async def delete_vm(self, vm_id: str, requester: Requester) -> DeletionResult:
        """
        Delete a VM owned by the requester.

        Args:
            vm_id: Local ownership record id
            requester: Owner of the VM, or an admin

        Returns:
            DeletionResult: Remote id, node and deletion handle on success

        Raises:
            NotFoundError: No such VM record
            PermissionError: Requester neither owner nor admin
            BackendOperationError: Backend rejected the deletion or its task failed
            BackendTimeoutError: Deletion did not finish in time
        """
        record = await self.stores.ownership.get(vm_id)
        if record is None:
            raise NotFoundError("VM", vm_id)
        if not (requester.is_admin or record.tenant_id == requester.tenant_id):
            raise PermissionError("VM belongs to another tenant", f"VM {vm_id}", "delete")

        node, remote_id = record.node, record.remote_vm_id
        config = await self.backend.read_config(node, remote_id)
        if config is None:
            logger.warning(
                "Could not read VM configuration; resources will not be reclaimed",
                vm_id=vm_id,
                node=node,
                remote_id=remote_id,
            )

        handle = await self._delete_remote(node, remote_id, "VM")

        if config is not None:
            await self.ledger.reclaim(record.tenant_id, config.footprint())
        await self.stores.ownership.remove(vm_id)

        logger.info(
            "VM deleted",
            vm_id=vm_id,
            node=node,
            remote_id=remote_id,
            tenant_id=record.tenant_id,
            handle=handle,
        )
        return DeletionResult(
            success=True,
            vm_id=vm_id,
            remote_id=remote_id,
            remote_node=node,
            task_id=handle,
            message="VM deleted" if config is not None else "VM deleted; resources not reclaimed",
        )

    async def delete_template(
        self, template_id: str, requester: Requester
    ) -> TemplateDeletionResult:
        """
        Delete a template and its record.

        Templates are never charged to a quota, so the ledger is left alone.

        Raises:
            ValidationError: Empty template id
            NotFoundError: No such template
            PermissionError: Requester neither owner nor admin
            BackendOperationError: Backend rejected the deletion or its task failed
            BackendTimeoutError: Deletion did not finish in time
        """
        if not template_id:
            raise ValidationError("Missing required field: template_id", field="template_id")
        template = await self.stores.templates.get(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        if not (requester.is_admin or template.owner_id == requester.tenant_id):
            raise PermissionError(
                "template belongs to another tenant", f"template {template_id}", "delete"
            )

        node, remote_id = template.node, template.remote_vm_id
        handle = await self._delete_remote(node, remote_id, "template")
        await self.stores.templates.remove(template_id)

        logger.info(
            "Template deleted",
            template_id=template_id,
            node=node,
            remote_id=remote_id,
            tenant_id=template.owner_id,
            handle=handle,
        )
        return TemplateDeletionResult(
            success=True,
            template_id=template_id,
            remote_id=remote_id,
            remote_node=node,
            task_id=handle,
            message="Template deleted",
        )
