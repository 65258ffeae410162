"""
Shared machinery for multi-step pipelines.

A pipeline is a list of async step actions run in order. Each action returns
a StepResult; the runner reports every transition to the TaskRecorder and
stops at the first failure, leaving later steps pending.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .backend import BackendClient
from .config import AppConfig
from .exceptions import BackendOperationError, BackendTimeoutError, OrchestratorError
from .logging import logger
from .models import BackendResult, PollOutcome, StepOutcome, StepResult, TaskStatus
from .poller import DiskReadinessGate, TaskPoller
from .quota import QuotaLedger
from .stores import Stores
from .tasks import TaskRecorder
from .transaction import ProvisioningTransaction


StepAction = Callable[[], Awaitable[StepResult]]


class Pipeline:
    """Base class holding the collaborators every pipeline needs."""

    def __init__(
        self,
        backend: BackendClient,
        stores: Stores,
        ledger: QuotaLedger,
        recorder: TaskRecorder,
        config: AppConfig,
        poller: Optional[TaskPoller] = None,
        gate: Optional[DiskReadinessGate] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.stores = stores
        self.ledger = ledger
        self.recorder = recorder
        self.config = config
        self.poller = poller or TaskPoller(backend, sleep=sleep)
        self.gate = gate or DiskReadinessGate(backend, sleep=sleep)
        self._sleep = sleep

    def _transaction(self, task_id: str) -> ProvisioningTransaction:
        return ProvisioningTransaction(
            task_id,
            self.backend,
            self.poller,
            poll_attempts=self.config.short_poll_attempts,
            poll_interval=self.config.short_poll_interval,
        )

    def _poll_limits(self, long: bool) -> Tuple[int, float]:
        if long:
            return self.config.long_poll_attempts, self.config.long_poll_interval
        return self.config.short_poll_attempts, self.config.short_poll_interval

    async def _await_write(
        self,
        result: BackendResult,
        node: str,
        operation: str,
        long: bool = False,
    ) -> StepResult:
        """
        Turn a backend write into a step result, polling its handle if any.

        Args:
            result: Result of the write call
            node: Node to poll the handle on
            operation: Operation name for errors and logs
            long: Use the long-operation poll limits

        Returns:
            StepResult: Carries the handle when one was issued
        """
        if not result.ok:
            return StepResult.failed(
                BackendOperationError(result.message or "request rejected", operation, node)
            )
        if not result.is_task:
            return StepResult.ok()

        attempts, interval = self._poll_limits(long)
        poll = await self.poller.await_completion(
            node, result.handle, operation, max_attempts=attempts, interval=interval
        )
        if poll.ok:
            return StepResult.ok(handle=result.handle)
        if poll.outcome == PollOutcome.TIMEOUT:
            error: OrchestratorError = BackendTimeoutError(
                poll.message or "no result", operation, attempts * interval
            )
        else:
            error = BackendOperationError(poll.message or "task failed", operation, node)
        return StepResult.failed(error, handle=result.handle)

    async def _wait_for_disk(self, node: str, vm_id: int) -> Optional[StepResult]:
        """Run the disk readiness gate; return a failed result if it gives up."""
        gate = await self.gate.await_disk_ready(
            node,
            vm_id,
            max_attempts=self.config.disk_ready_attempts,
            interval=self.config.disk_ready_interval,
        )
        if gate.ok:
            return None
        return StepResult.failed(
            BackendTimeoutError(
                gate.message or "disk not ready",
                "disk readiness",
                self.config.disk_ready_attempts * self.config.disk_ready_interval,
            )
        )

    async def _patch(self, node: str, vm_id: int, fields: dict, operation: str) -> StepResult:
        result = await self.backend.patch_config(node, vm_id, fields)
        return await self._await_write(result, node, operation)

    async def _resize_disk(self, node: str, vm_id: int, size_gb: int) -> StepResult:
        """
        Grow the primary disk to ``size_gb``.

        Waits for the disk to be ready first. No remote call is made when the
        disk is already at least that large.
        """
        not_ready = await self._wait_for_disk(node, vm_id)
        if not_ready is not None:
            return not_ready

        config = await self.backend.read_config(node, vm_id)
        current = config.disk_size_gb if config else None
        if current is not None and size_gb <= current:
            logger.info(
                "Disk already large enough, skipping resize",
                node=node,
                vm_id=vm_id,
                current_gb=current,
                target_gb=size_gb,
            )
            return StepResult.ok(message=f"Disk is {current}G, no resize needed")
        if current is None:
            logger.warning("Current disk size unknown, resizing anyway", node=node, vm_id=vm_id)

        await self._sleep(self.config.disk_settle_delay)
        result = await self.backend.resize_disk(node, vm_id, self.config.primary_disk, size_gb)
        step = await self._await_write(result, node, "resize disk")
        if step.success:
            step.message = f"Disk resized to {size_gb}G"
        return step

    async def _configure_cloud_init(
        self, node: str, vm_id: int, credentials: Optional[Tuple[str, str]]
    ) -> StepResult:
        if credentials is None:
            logger.warning(
                "No cloud-init credentials available, skipping", node=node, vm_id=vm_id
            )
            return StepResult.ok(message="Cloud-init skipped: no credentials")
        user, password = credentials
        step = await self._patch(
            node, vm_id, {"ciuser": user, "cipassword": password}, "configure cloud-init"
        )
        if step.success:
            step.message = "Cloud-init configured"
        return step

    async def _run_steps(self, task_id: str, actions: List[StepAction]) -> Optional[StepResult]:
        """
        Run step actions in order.

        Returns:
            Optional[StepResult]: The failed step's result, or None when all succeeded
        """
        for index, action in enumerate(actions):
            await self.recorder.update_step(task_id, index, StepOutcome(TaskStatus.IN_PROGRESS))
            try:
                result = await action()
            except OrchestratorError as e:
                result = StepResult.failed(e)

            if result.success:
                await self.recorder.update_step(
                    task_id,
                    index,
                    StepOutcome(
                        TaskStatus.COMPLETED,
                        handle=result.handle,
                        message=result.message or "completed",
                    ),
                )
                continue

            error_text = str(result.error) if result.error else "step failed"
            await self.recorder.update_step(
                task_id,
                index,
                StepOutcome(TaskStatus.FAILED, handle=result.handle, error=error_text),
            )
            logger.error(
                f"Step {index} failed: {error_text}",
                task_id=task_id,
                step=index,
                handle=result.handle,
            )
            return result
        return None

    async def _fail_if_open(self, task_id: str, error: str) -> None:
        """Fail a task that an unexpected error left unfinished."""
        task = await self.stores.tasks.get(task_id)
        if task is not None and not task.status.is_terminal:
            await self.recorder.fail(task_id, error)
