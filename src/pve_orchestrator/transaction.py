"""
Cleanup tracking for remote VMs created by a pipeline.

A pipeline registers every remote VM it creates. If the pipeline does not
commit, the registered VMs are deleted in reverse order. Cleanup is best
effort: a failure is logged as a CleanupError and never replaces the error
that caused the rollback.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .backend import BackendClient
from .exceptions import CleanupError
from .logging import logger
from .models import utcnow
from .poller import TaskPoller


@dataclass
class RemoteResource:
    """A remote VM created during a pipeline run."""

    node: str
    remote_vm_id: int
    label: str = "vm"
    created_at: str = field(default_factory=lambda: utcnow().isoformat())


class ProvisioningTransaction:
    """
    Tracks remote VMs of one pipeline run.

    Usage:
        async with ProvisioningTransaction(task_id, backend, poller) as txn:
            txn.register_vm(node, vm_id)
            # ...
            txn.commit()

    Exiting the block without commit, with or without an exception, deletes
    every registered VM.
    """

    def __init__(
        self,
        operation_id: str,
        backend: BackendClient,
        poller: TaskPoller,
        poll_attempts: int = 300,
        poll_interval: float = 1.0,
    ) -> None:
        """
        Initialize transaction.

        Args:
            operation_id: Task id the transaction belongs to
            backend: Backend used for cleanup deletes
            poller: Poller used to await cleanup handles
            poll_attempts: Status reads per cleanup delete
            poll_interval: Seconds between status reads
        """
        self.operation_id = operation_id
        self.backend = backend
        self.poller = poller
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.resources: List[RemoteResource] = []
        self.committed = False
        self.rolled_back = False
        self.cleanup_errors: List[CleanupError] = []

    async def __aenter__(self) -> ProvisioningTransaction:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            logger.error(
                f"Transaction {self.operation_id} failed, rolling back",
                transaction_id=self.operation_id,
                error=str(exc_val),
            )
            await self.rollback()
        elif not self.committed:
            await self.rollback()

    def register_vm(self, node: str, remote_vm_id: int, label: str = "vm") -> None:
        self.resources.append(RemoteResource(node=node, remote_vm_id=remote_vm_id, label=label))
        logger.debug(
            f"Registered {label} {remote_vm_id} on {node}",
            transaction_id=self.operation_id,
            node=node,
            vm_id=remote_vm_id,
        )

    def commit(self) -> None:
        """Keep every registered VM."""
        if self.committed:
            logger.warning(
                f"Transaction {self.operation_id} already committed",
                transaction_id=self.operation_id,
            )
            return
        self.committed = True
        logger.info(
            f"Transaction {self.operation_id} committed",
            transaction_id=self.operation_id,
        )

    async def rollback(self) -> None:
        """
        Delete all registered VMs in reverse order.

        Errors are collected in ``cleanup_errors`` and logged; rollback
        always continues with the next resource.
        """
        if self.rolled_back:
            logger.warning(
                f"Transaction {self.operation_id} already rolled back",
                transaction_id=self.operation_id,
            )
            return

        if self.resources:
            logger.info(
                f"Rolling back transaction {self.operation_id}",
                transaction_id=self.operation_id,
                resource_count=len(self.resources),
            )

        for resource in reversed(self.resources):
            error = await self._cleanup_resource(resource)
            if error is not None:
                self.cleanup_errors.append(error)
                logger.error(
                    error.message,
                    transaction_id=self.operation_id,
                    node=resource.node,
                    vm_id=resource.remote_vm_id,
                    error_code=error.error_code,
                )
            else:
                logger.info(
                    f"Cleaned up {resource.label} {resource.remote_vm_id}",
                    transaction_id=self.operation_id,
                    node=resource.node,
                )

        self.rolled_back = True

    async def _cleanup_resource(self, resource: RemoteResource) -> Optional[CleanupError]:
        result = await self.backend.delete(resource.node, resource.remote_vm_id)
        if not result.ok:
            return CleanupError(
                result.message or "delete rejected",
                str(resource.remote_vm_id),
                resource.node,
            )
        if result.is_task:
            poll = await self.poller.await_completion(
                resource.node,
                result.handle,
                f"delete {resource.label} {resource.remote_vm_id}",
                max_attempts=self.poll_attempts,
                interval=self.poll_interval,
            )
            if not poll.ok:
                return CleanupError(
                    poll.message or poll.outcome.value,
                    str(resource.remote_vm_id),
                    resource.node,
                )
        return None
