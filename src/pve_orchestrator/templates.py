"""
Template clone-and-promote pipeline.

Duplicates an existing template into a new VM and seals that VM as a
template of its own. The copy inherits the source's cloud-init credentials
and starts out private to the requester.
"""

import uuid

from .exceptions import BackendOperationError, NotFoundError, PermissionError
from .logging import logger
from .models import (
    CloneTemplateRequest,
    CloneTemplateResult,
    Requester,
    StepResult,
    TaskKind,
    Template,
)
from .pipeline import Pipeline
from .security import SecurityValidator
from .tasks import TEMPLATE_CLONE_STEPS


class TemplateCloner(Pipeline):
    """Clones a template and converts the clone into a new template."""

    async def clone_template(
        self, request: CloneTemplateRequest, requester: Requester
    ) -> CloneTemplateResult:
        """
        Clone and seal a template.

        Only an admin or the owner of the source template may clone it. The
        quota ledger is not touched.

        Args:
            request: Source template, new name and target node
            requester: Tenant asking for the copy

        Returns:
            CloneTemplateResult: New template id and task id, or the failing step's error

        Raises:
            ValidationError: Missing fields or an unusable name
            NotFoundError: Unknown source template
            PermissionError: Requester neither admin nor owner
            BackendOperationError: No VM id could be allocated
        """
        SecurityValidator.validate_clone_template_request(request)

        source = await self.stores.templates.get(request.template_id)
        if source is None:
            raise NotFoundError("Template", request.template_id)
        if not (requester.is_admin or source.owner_id == requester.tenant_id):
            raise PermissionError(
                "only the owner or an admin may clone a template",
                f"template {request.template_id}",
                "clone",
            )

        vm_name = SecurityValidator.require_vm_name(request.name)
        storage = request.storage or self.config.default_storage
        target = SecurityValidator.validate_node_name(request.target_node or source.node)

        new_id = await self.backend.next_vm_id()
        if new_id is None:
            raise BackendOperationError("could not allocate a VM id", "next_vm_id")

        task = await self.recorder.start(
            "template",
            request.template_id,
            requester.tenant_id,
            str(new_id),
            str(source.remote_vm_id),
            target,
            TEMPLATE_CLONE_STEPS,
            kind=TaskKind.TEMPLATE_CLONE,
        )

        try:
            async with self._transaction(task.task_id) as txn:

                async def clone_step() -> StepResult:
                    result = await self.backend.clone(
                        source.node,
                        source.remote_vm_id,
                        new_id,
                        vm_name,
                        target,
                        storage,
                        self.config.full_clone,
                    )
                    if result.ok:
                        txn.register_vm(target, new_id)
                    step = await self._await_write(result, source.node, "clone template", long=True)
                    if step.success:
                        step.message = "Template clone completed"
                    return step

                async def convert_step() -> StepResult:
                    result = await self.backend.convert_to_template(target, new_id)
                    step = await self._await_write(result, target, "convert to template")
                    if step.success:
                        step.message = "Template conversion completed"
                    return step

                failed = await self._run_steps(task.task_id, [clone_step, convert_step])
                if failed is not None:
                    return CloneTemplateResult(
                        success=False,
                        task_id=task.task_id,
                        error=str(failed.error),
                        error_kind=getattr(failed.error, "kind", "internal"),
                    )

                txn.commit()
                template = Template(
                    template_id=f"tpl-{uuid.uuid4().hex[:12]}",
                    description=request.description or f"Copy of {source.description}",
                    node=target,
                    remote_vm_id=new_id,
                    owner_id=requester.tenant_id,
                    ci_user=source.ci_user,
                    ci_password=source.ci_password,
                    is_public=False,
                )
                await self.stores.templates.add(template)
                await self.recorder.complete(task.task_id)
        except Exception as e:
            logger.error(f"Template clone aborted: {e}", task_id=task.task_id, exc_info=True)
            await self._fail_if_open(task.task_id, str(e))
            raise

        logger.info(
            "Template cloned",
            task_id=task.task_id,
            template_id=template.template_id,
            source_template_id=source.template_id,
            node=target,
            vm_id=new_id,
        )
        return CloneTemplateResult(
            success=True, new_template_id=template.template_id, task_id=task.task_id
        )
