"""
Provisioning task records.

TaskRecorder is the only writer of task records. Pipelines report each step
through update_step, and the recorder enforces the step state machine: a
step starts only after every earlier step completed, a failed step fails the
whole task, and a terminal task is never modified again.
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .exceptions import NotFoundError, TaskStateError
from .logging import logger
from .models import (
    ProvisioningTask,
    Step,
    StepOutcome,
    TaskKind,
    TaskStatus,
    utcnow,
)


PROVISION_STEPS = [
    "Clone VM from Template",
    "Configure CPU Cores",
    "Configure Memory",
    "Resize Disk",
    "Configure Cloud-Init",
]

TEMPLATE_CLONE_STEPS = [
    "Clone Template to VM",
    "Convert VM to Template",
]

RECONFIGURE_STEPS = [
    "Update VM Name",
    "Configure CPU Cores",
    "Configure Memory",
    "Resize Disk",
    "Configure Cloud-Init",
]

_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
}


def new_task_id(prefix: str, subject: str) -> str:
    return f"{prefix}-{subject}-{uuid.uuid4().hex[:8]}"


def create_task(
    task_id: str,
    tenant_id: str,
    vm_id: str,
    template_vm_id: str,
    target_node: str,
    step_names: Sequence[str],
    kind: TaskKind = TaskKind.PROVISION,
    now: Optional[datetime] = None,
) -> ProvisioningTask:
    """Build a pending task whose steps are all pending."""
    now = now or utcnow()
    return ProvisioningTask(
        task_id=task_id,
        tenant_id=tenant_id,
        vm_id=vm_id,
        template_vm_id=template_vm_id,
        target_node=target_node,
        kind=kind,
        status=TaskStatus.PENDING,
        progress=0,
        steps=[Step(name=name) for name in step_names],
        created_at=now,
        updated_at=now,
    )


def compute_progress(task: ProvisioningTask) -> int:
    if not task.steps:
        return 0
    completed = sum(1 for step in task.steps if step.status == TaskStatus.COMPLETED)
    return int(completed * 100 / len(task.steps))


class TaskRecorder:
    """Persists task progress and guards the step state machine."""

    def __init__(
        self,
        store,
        retention_count: int = 20,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.retention_count = retention_count
        self.retention_days = retention_days
        self._clock = clock

    async def start(
        self,
        prefix: str,
        subject: str,
        tenant_id: str,
        vm_id: str,
        template_vm_id: str,
        target_node: str,
        step_names: Sequence[str],
        kind: TaskKind = TaskKind.PROVISION,
    ) -> ProvisioningTask:
        """
        Trim the tenant's old tasks and create a new pending one.

        Args:
            prefix: Task id prefix naming the pipeline
            subject: Template or VM id the task is about
            tenant_id: Owning tenant
            vm_id: Remote id of the VM the task builds or changes
            template_vm_id: Remote id of the source template
            target_node: Node the VM lives on
            step_names: Ordered step names
            kind: Pipeline kind

        Returns:
            ProvisioningTask: The stored task
        """
        await self.trim(tenant_id)
        task = create_task(
            new_task_id(prefix, subject),
            tenant_id,
            vm_id,
            template_vm_id,
            target_node,
            step_names,
            kind=kind,
            now=self._clock(),
        )
        await self.store.create(task)
        logger.info(
            "Created task",
            task_id=task.task_id,
            tenant_id=tenant_id,
            vm_id=vm_id,
            kind=kind.value,
        )
        return task

    async def _load(self, task_id: str) -> ProvisioningTask:
        task = await self.store.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    async def update_step(self, task_id: str, index: int, outcome: StepOutcome) -> ProvisioningTask:
        """
        Apply one step transition.

        Args:
            task_id: Task to update
            index: Zero-based step index
            outcome: New step status with optional handle, message and error

        Returns:
            ProvisioningTask: The updated task

        Raises:
            NotFoundError: If the task does not exist
            TaskStateError: If the transition breaks the state machine
        """
        task = await self._load(task_id)

        if task.status.is_terminal:
            raise TaskStateError(f"task is already {task.status.value}", task_id)
        if not 0 <= index < len(task.steps):
            raise TaskStateError(f"step index {index} out of range", task_id)

        step = task.steps[index]
        if outcome.status not in _ALLOWED_TRANSITIONS.get(step.status, set()):
            raise TaskStateError(
                f"step '{step.name}' cannot go from {step.status.value} to {outcome.status.value}",
                task_id,
            )
        if outcome.status == TaskStatus.IN_PROGRESS:
            blocked = [s.name for s in task.steps[:index] if s.status != TaskStatus.COMPLETED]
            if blocked:
                raise TaskStateError(
                    f"step '{step.name}' cannot start before '{blocked[0]}' completes", task_id
                )

        now = self._clock()
        step.status = outcome.status
        if outcome.handle:
            step.handle = outcome.handle
        if outcome.message is not None:
            step.message = outcome.message

        if outcome.status == TaskStatus.IN_PROGRESS:
            step.started_at = now
            task.status = TaskStatus.IN_PROGRESS
        else:
            step.ended_at = now

        if outcome.status == TaskStatus.FAILED:
            step.error = outcome.error or outcome.message or "step failed"
            task.status = TaskStatus.FAILED
            task.error = step.error

        task.progress = compute_progress(task)
        task.updated_at = now
        await self.store.save(task)

        logger.debug(
            f"Step '{step.name}' is {step.status.value}",
            task_id=task_id,
            step=index,
            handle=step.handle,
        )
        return task

    async def complete(self, task_id: str) -> ProvisioningTask:
        """Mark a task completed once every step has completed."""
        task = await self._load(task_id)
        if task.status.is_terminal:
            raise TaskStateError(f"task is already {task.status.value}", task_id)
        unfinished = [s.name for s in task.steps if s.status != TaskStatus.COMPLETED]
        if unfinished:
            raise TaskStateError(f"step '{unfinished[0]}' has not completed", task_id)

        task.status = TaskStatus.COMPLETED
        task.progress = 100
        task.updated_at = self._clock()
        await self.store.save(task)
        logger.info("Task completed", task_id=task_id, tenant_id=task.tenant_id)
        return task

    async def fail(self, task_id: str, error: str) -> ProvisioningTask:
        """Fail a task for a reason outside any single step."""
        task = await self._load(task_id)
        if task.status.is_terminal:
            raise TaskStateError(f"task is already {task.status.value}", task_id)
        for step in task.steps:
            if step.status == TaskStatus.IN_PROGRESS:
                step.status = TaskStatus.FAILED
                step.error = error
                step.ended_at = self._clock()
        task.status = TaskStatus.FAILED
        task.error = error
        task.updated_at = self._clock()
        await self.store.save(task)
        return task

    async def trim(self, tenant_id: str) -> int:
        """Keep room for one new task within the per-tenant retention count."""
        removed = await self.store.trim_tenant(tenant_id, self.retention_count - 1)
        if removed:
            logger.info("Trimmed old tasks", tenant_id=tenant_id, removed=removed)
        return removed

    async def purge(self, max_age_days: Optional[int] = None) -> int:
        days = self.retention_days if max_age_days is None else max_age_days
        cutoff = self._clock() - timedelta(days=days)
        removed = await self.store.purge_older_than(cutoff)
        logger.info("Purged old tasks", removed=removed, max_age_days=days)
        return removed

    async def tasks_for(self, tenant_id: str) -> List[ProvisioningTask]:
        return await self.store.list_for_tenant(tenant_id)
