"""
VM provisioning pipeline.

Clones a template into a new VM and sizes it: clone, CPU, memory, disk and
cloud-init, in that order. Quota is reserved before the first remote call and
committed only after every step succeeded; a failed run deletes the half-built
VM and leaves the ledger untouched.
"""

import uuid

from .exceptions import BackendOperationError, NotFoundError, PermissionError
from .logging import logger
from .models import (
    ProvisionRequest,
    ProvisionResult,
    Requester,
    StepResult,
    TaskKind,
    Template,
    VMOwnership,
)
from .pipeline import Pipeline
from .quota import check_available
from .security import SecurityValidator
from .tasks import PROVISION_STEPS


class VMProvisioner(Pipeline):
    """Provisions VMs from templates."""

    async def _load_template(self, template_id: str, requester: Requester) -> Template:
        template = await self.stores.templates.get(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        if not template.visible_to(requester.tenant_id, requester.is_admin):
            raise PermissionError(
                "template is private to another tenant", f"template {template_id}", "use"
            )
        return template

    async def provision(self, request: ProvisionRequest, requester: Requester) -> ProvisionResult:
        """
        Provision a VM.

        Preconditions are checked before any remote call, in order: required
        fields, the cloud-init credential pair, template visibility, quota and
        the VM name.

        Args:
            request: What to build
            requester: Tenant asking for it

        Returns:
            ProvisionResult: Success with task and VM ids, or the failing step's error

        Raises:
            ValidationError: Missing or malformed fields or an unusable name
            NotFoundError: Unknown template or no quota plan
            PermissionError: Template not visible to the requester
            QuotaExceededError: Request exceeds the tenant's plan
            BackendOperationError: No VM id could be allocated
        """
        SecurityValidator.validate_provision_request(request)
        tenant_id = requester.tenant_id
        template = await self._load_template(request.template_id, requester)

        plan = await self.ledger.plan_for(tenant_id)
        requested = request.requested
        owned_vms = await self.stores.ownership.count_for_tenant(tenant_id)
        used = await self.ledger.usage(tenant_id)
        check_available(plan, used + self.ledger.reserved(tenant_id), requested, owned_vms)

        vm_name = SecurityValidator.require_vm_name(request.name)
        storage = request.storage or self.config.default_storage
        credentials = SecurityValidator.resolve_credentials(
            template, request.ci_user, request.ci_password
        )

        async with self.ledger.reserve(tenant_id, plan, requested, owned_vms) as reservation:
            new_id = await self.backend.next_vm_id()
            if new_id is None:
                raise BackendOperationError("could not allocate a VM id", "next_vm_id")

            task = await self.recorder.start(
                "clone",
                request.template_id,
                tenant_id,
                str(new_id),
                str(template.remote_vm_id),
                request.target_node,
                PROVISION_STEPS,
                kind=TaskKind.PROVISION,
            )
            logger.info(
                f"Provisioning VM {vm_name}",
                task_id=task.task_id,
                tenant_id=tenant_id,
                vm_id=new_id,
                node=request.target_node,
                template_id=request.template_id,
            )

            try:
                async with self._transaction(task.task_id) as txn:
                    target = request.target_node

                    async def clone_step() -> StepResult:
                        result = await self.backend.clone(
                            template.node,
                            template.remote_vm_id,
                            new_id,
                            vm_name,
                            target,
                            storage,
                            self.config.full_clone,
                        )
                        if result.ok:
                            txn.register_vm(target, new_id)
                        # Clone tasks run on the node holding the template
                        step = await self._await_write(result, template.node, "clone", long=True)
                        if not step.success:
                            return step
                        not_ready = await self._wait_for_disk(target, new_id)
                        if not_ready is not None:
                            not_ready.handle = step.handle
                            return not_ready
                        step.message = f"Cloned template {request.template_id}"
                        return step

                    async def cpu_step() -> StepResult:
                        return await self._patch(
                            target, new_id, {"cores": request.cpu_cores}, "configure CPU"
                        )

                    async def memory_step() -> StepResult:
                        return await self._patch(
                            target, new_id, {"memory": request.memory_mb}, "configure memory"
                        )

                    async def disk_step() -> StepResult:
                        return await self._resize_disk(target, new_id, request.disk_gb)

                    async def cloud_init_step() -> StepResult:
                        return await self._configure_cloud_init(target, new_id, credentials)

                    failed = await self._run_steps(
                        task.task_id,
                        [clone_step, cpu_step, memory_step, disk_step, cloud_init_step],
                    )
                    if failed is not None:
                        return ProvisionResult(
                            success=False,
                            task_id=task.task_id,
                            vm_name=vm_name,
                            error=str(failed.error),
                            error_kind=getattr(failed.error, "kind", "internal"),
                        )

                    txn.commit()
                    await reservation.commit()
                    local_id = await self._record_ownership(target, new_id, tenant_id)
                    await self.recorder.complete(task.task_id)
            except Exception as e:
                logger.error(
                    f"Provisioning aborted: {e}", task_id=task.task_id, exc_info=True
                )
                await self._fail_if_open(task.task_id, str(e))
                raise

        logger.info(
            f"VM {vm_name} provisioned",
            task_id=task.task_id,
            tenant_id=tenant_id,
            vm_id=new_id,
        )
        return ProvisionResult(
            success=True,
            task_id=task.task_id,
            vm_name=vm_name,
            vm_id=local_id,
            remote_id=new_id,
        )

    async def _record_ownership(self, node: str, remote_vm_id: int, tenant_id: str) -> str:
        local_id = f"vm-{uuid.uuid4().hex[:12]}"
        await self.stores.ownership.add(
            VMOwnership(vm_id=local_id, node=node, remote_vm_id=remote_vm_id, tenant_id=tenant_id)
        )
        return local_id

