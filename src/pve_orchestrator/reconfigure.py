"""
Reconfiguration of existing VMs.

Changes the name, CPU, memory, disk size or cloud-init credentials of a
stopped VM. Growth is checked against the tenant's quota; on success the
signed difference, shrinking included, is written to the ledger. A failed
run leaves the ledger alone and is not rolled back remotely since the VM
existed before.
"""

from typing import Any, Dict

from .exceptions import BackendOperationError, NotFoundError, PermissionError, ValidationError
from .logging import logger
from .models import (
    ReconfigureRequest,
    ReconfigureResult,
    Requester,
    ResourceUsage,
    StepResult,
    TaskKind,
)
from .pipeline import Pipeline
from .security import SecurityValidator
from .tasks import RECONFIGURE_STEPS


UNCHANGED = "unchanged"


class VMReconfigurer(Pipeline):
    """Applies configuration changes to an owned, stopped VM."""

    async def reconfigure_vm(
        self, request: ReconfigureRequest, requester: Requester
    ) -> ReconfigureResult:
        """
        Reconfigure a VM.

        Args:
            request: VM id and the fields to change
            requester: Owner of the VM, or an admin

        Returns:
            ReconfigureResult: Task id and the resulting configuration

        Raises:
            ValidationError: Nothing to change, VM running, disk shrink or bad values
            NotFoundError: No such VM record or quota plan
            PermissionError: Requester neither owner nor admin
            QuotaExceededError: Growth exceeds the tenant's plan
            BackendOperationError: Current configuration cannot be read
        """
        SecurityValidator.validate_reconfigure_request(request)

        record = await self.stores.ownership.get(request.vm_id)
        if record is None:
            raise NotFoundError("VM", request.vm_id)
        if not (requester.is_admin or record.tenant_id == requester.tenant_id):
            raise PermissionError(
                "VM belongs to another tenant", f"VM {request.vm_id}", "reconfigure"
            )

        new_name = None
        if request.name is not None:
            new_name = SecurityValidator.require_vm_name(request.name.strip())

        credentials = None
        if request.ci_user is not None or request.ci_password is not None:
            if not (
                SecurityValidator.is_valid_credential(request.ci_user)
                and SecurityValidator.is_valid_credential(request.ci_password)
            ):
                raise ValidationError(
                    "Cloud-init user and password must both be non-empty", field="ci_user"
                )
            credentials = (request.ci_user, request.ci_password)

        node, remote_id = record.node, record.remote_vm_id
        current = await self.backend.read_config(node, remote_id)
        if current is None:
            raise BackendOperationError("cannot read current configuration", "read_config", node)
        if request.disk_gb is not None and current.disk_size_gb is None:
            raise BackendOperationError(
                f"cannot determine the size of {self.config.primary_disk}", "read_config", node
            )

        state = await self.backend.read_vm_status(node, remote_id)
        if state != "stopped":
            raise ValidationError(
                f"VM must be stopped before it is reconfigured (state: {state or 'unknown'})"
            )

        before = current.footprint()
        after = ResourceUsage(
            cpu_cores=request.cpu_cores or before.cpu_cores,
            memory_mb=request.memory_mb or before.memory_mb,
            storage_gb=request.disk_gb or before.storage_gb,
        )
        if after.storage_gb < before.storage_gb:
            raise ValidationError(
                f"Disk cannot shrink from {before.storage_gb}G to {after.storage_gb}G",
                field="disk_gb",
            )
        delta = before.signed_delta(after)
        growth = delta.positive_part()
        plan = await self.ledger.plan_for(record.tenant_id)

        async with self.ledger.reserve(
            record.tenant_id,
            plan,
            growth,
            per_vm=after if not growth.is_zero() else ResourceUsage(),
            apply_delta=delta,
        ) as reservation:
            task = await self.recorder.start(
                "update",
                request.vm_id,
                record.tenant_id,
                str(remote_id),
                "",
                node,
                RECONFIGURE_STEPS,
                kind=TaskKind.RECONFIGURE,
            )

            async def name_step() -> StepResult:
                if new_name is None or new_name == current.name:
                    return StepResult.ok(message=UNCHANGED)
                step = await self._patch(node, remote_id, {"name": new_name}, "rename VM")
                if step.success:
                    step.message = f"Renamed to {new_name}"
                return step

            async def cpu_step() -> StepResult:
                if delta.cpu_cores == 0:
                    return StepResult.ok(message=UNCHANGED)
                return await self._patch(
                    node, remote_id, {"cores": after.cpu_cores}, "configure CPU"
                )

            async def memory_step() -> StepResult:
                if delta.memory_mb == 0:
                    return StepResult.ok(message=UNCHANGED)
                return await self._patch(
                    node, remote_id, {"memory": after.memory_mb}, "configure memory"
                )

            async def disk_step() -> StepResult:
                if delta.storage_gb == 0:
                    return StepResult.ok(message=UNCHANGED)
                return await self._resize_disk(node, remote_id, after.storage_gb)

            async def cloud_init_step() -> StepResult:
                if credentials is None:
                    return StepResult.ok(message=UNCHANGED)
                return await self._configure_cloud_init(node, remote_id, credentials)

            try:
                failed = await self._run_steps(
                    task.task_id,
                    [name_step, cpu_step, memory_step, disk_step, cloud_init_step],
                )
                if failed is not None:
                    return ReconfigureResult(
                        success=False,
                        task_id=task.task_id,
                        vm_id=request.vm_id,
                        error=str(failed.error),
                        error_kind=getattr(failed.error, "kind", "internal"),
                    )

                await reservation.commit()
                await self.recorder.complete(task.task_id)
            except Exception as e:
                logger.error(f"Reconfiguration aborted: {e}", task_id=task.task_id, exc_info=True)
                await self._fail_if_open(task.task_id, str(e))
                raise

        updated: Dict[str, Any] = {
            "cpu_cores": after.cpu_cores,
            "memory_mb": after.memory_mb,
            "disk_gb": after.storage_gb,
        }
        if new_name is not None:
            updated["vm_name"] = new_name

        logger.info(
            "VM reconfigured",
            task_id=task.task_id,
            vm_id=request.vm_id,
            node=node,
            cpu_delta=delta.cpu_cores,
            memory_delta=delta.memory_mb,
            disk_delta=delta.storage_gb,
        )
        return ReconfigureResult(
            success=True, task_id=task.task_id, vm_id=request.vm_id, updated_config=updated
        )
