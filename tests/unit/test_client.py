"""Tests for the OrchestratorClient entry point."""

from datetime import timedelta

import pytest

from pve_orchestrator.client import OrchestratorClient
from pve_orchestrator.models import (
    ProvisionRequest,
    ProvisionResult,
    StepOutcome,
    TaskStatus,
    TaskStatusReport,
)
from pve_orchestrator.tasks import PROVISION_STEPS


async def running_task(orchestrator, handle):
    task = await orchestrator.recorder.start(
        "clone", "tpl-ubuntu", "tenant-a", "200", "9000", "pve1", PROVISION_STEPS
    )
    await orchestrator.recorder.update_step(
        task.task_id, 0, StepOutcome(TaskStatus.IN_PROGRESS, handle=handle)
    )
    return task


class TestTaskStatus:
    @pytest.mark.asyncio
    async def test_owner_sees_task(self, orchestrator, tenant_a):
        result = await orchestrator.provision(
            ProvisionRequest("tpl-ubuntu", "web", "pve1", 1, 1024, 10), tenant_a
        )

        snapshot = await orchestrator.get_task_status(result.task_id, tenant_a)

        assert snapshot.success
        assert snapshot.task["status"] == "completed"
        assert snapshot.task["progress"] == 100
        assert len(snapshot.task["steps"]) == 5
        assert snapshot.remote_status is None

    @pytest.mark.asyncio
    async def test_other_tenant_denied(self, orchestrator, tenant_b):
        task = await running_task(orchestrator, "UPID:pve1:1")
        snapshot = await orchestrator.get_task_status(task.task_id, tenant_b)
        assert snapshot.error_kind == "permission"
        assert snapshot.task is None

    @pytest.mark.asyncio
    async def test_admin_sees_any_task(self, orchestrator, admin):
        task = await running_task(orchestrator, "UPID:pve1:1")
        snapshot = await orchestrator.get_task_status(task.task_id, admin)
        assert snapshot.success
        assert snapshot.task["tenant_id"] == "tenant-a"

    @pytest.mark.asyncio
    async def test_unknown_task(self, orchestrator, tenant_a):
        snapshot = await orchestrator.get_task_status("clone-nothing-1", tenant_a)
        assert snapshot.error_kind == "not_found"

    @pytest.mark.asyncio
    async def test_live_status_reads_handle_node(self, orchestrator, backend, tenant_a):
        handle = "UPID:pve3:0001:qmclone"
        backend.task_reports[handle] = [TaskStatusReport("running")]
        task = await running_task(orchestrator, handle)

        snapshot = await orchestrator.get_task_status(task.task_id, tenant_a, live=True)

        assert snapshot.remote_status == "running"
        assert snapshot.remote_exit_status is None
        assert backend.calls_to("read_task_status") == [("read_task_status", "pve3", handle)]

    @pytest.mark.asyncio
    async def test_live_status_skips_pending_handle(self, orchestrator, backend, tenant_a):
        task = await running_task(orchestrator, None)

        snapshot = await orchestrator.get_task_status(task.task_id, tenant_a, live=True)

        assert snapshot.success
        assert snapshot.remote_status is None
        assert backend.calls_to("read_task_status") == []

    def test_handle_node(self):
        assert OrchestratorClient._handle_node("UPID:pve2:00A:qmdel", "pve1") == "pve2"
        assert OrchestratorClient._handle_node("opaque-handle", "pve1") == "pve1"


class TestGuard:
    @pytest.mark.asyncio
    async def test_unexpected_errors_become_internal(self, orchestrator):
        async def boom():
            raise KeyError("missing")

        result = await orchestrator._guard("provision", ProvisionResult, boom)

        assert result.success is False
        assert result.error_kind == "internal"
        assert "missing" in result.error


class TestPurge:
    @pytest.mark.asyncio
    async def test_purge_uses_retention_days(self, orchestrator):
        finished = await running_task(orchestrator, "UPID:pve1:1")
        await orchestrator.recorder.fail(finished.task_id, "clone failed")
        finished.created_at -= timedelta(days=31)
        running = await running_task(orchestrator, "UPID:pve1:2")
        running.created_at -= timedelta(days=31)

        assert await orchestrator.purge_tasks() == 1
        assert await orchestrator.stores.tasks.get(running.task_id) is not None
        assert await orchestrator.purge_tasks(max_age_days=0) == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_closes_backend(self, app_config, stores, backend):
        closed = []

        async def close():
            closed.append(True)

        backend.close = close
        async with OrchestratorClient(app_config, stores=stores, backend=backend):
            pass
        assert closed == [True]

    def test_default_backend_is_proxmox(self, app_config):
        from pve_orchestrator.backend import ProxmoxClient

        client = OrchestratorClient(app_config)
        assert isinstance(client.backend, ProxmoxClient)
