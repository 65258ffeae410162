"""Tests for reconfiguring existing VMs."""

import pytest

from pve_orchestrator.models import (
    BackendResult,
    ReconfigureRequest,
    ResourceUsage,
    TaskKind,
    TaskStatus,
    VMOwnership,
)


@pytest.fixture
def owned_vm(stores, backend):
    stores.ownership.records["vm-abc"] = VMOwnership(
        vm_id="vm-abc", node="pve2", remote_vm_id=305, tenant_id="tenant-a"
    )
    stores.ledger.usage["tenant-a"] = ResourceUsage(2, 2048, 40)
    backend.set_config(
        305, "NFS:305/vm-305-disk-0.qcow2,size=40G", cores=2, memory=2048, name="web-01"
    )
    return "vm-abc"


def make_request(**fields):
    return ReconfigureRequest(vm_id="vm-abc", **fields)


@pytest.mark.asyncio
async def test_grow_vm(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(
        make_request(cpu_cores=3, memory_mb=4096, disk_gb=60), tenant_a
    )

    assert result.success, result.error
    assert result.vm_id == "vm-abc"
    assert result.updated_config == {"cpu_cores": 3, "memory_mb": 4096, "disk_gb": 60}
    assert ("patch_config", "pve2", 305, {"cores": 3}) in backend.calls
    assert ("patch_config", "pve2", 305, {"memory": 4096}) in backend.calls
    assert backend.calls_to("resize_disk") == [("resize_disk", "pve2", 305, "scsi0", 60)]
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(3, 4096, 60)

    task = await orchestrator.stores.tasks.get(result.task_id)
    assert task.kind == TaskKind.RECONFIGURE
    assert task.status == TaskStatus.COMPLETED
    assert task.task_id.startswith("update-vm-abc-")
    assert task.steps[0].message == "unchanged"


@pytest.mark.asyncio
async def test_shrink_cpu_reclaims(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=1), tenant_a)

    assert result.success
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(1, 2048, 40)
    assert backend.calls_to("resize_disk") == []
    assert [c[3] for c in backend.calls_to("patch_config")] == [{"cores": 1}]

    task = await orchestrator.stores.tasks.get(result.task_id)
    assert [s.message for s in task.steps if s.message == "unchanged"] == ["unchanged"] * 4


@pytest.mark.asyncio
async def test_rename(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(make_request(name="  New Name "), tenant_a)

    assert result.success
    assert result.updated_config["vm_name"] == "new-name"
    assert backend.calls_to("patch_config") == [
        ("patch_config", "pve2", 305, {"name": "new-name"})
    ]
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(2, 2048, 40)


@pytest.mark.asyncio
async def test_credentials(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(
        make_request(ci_user="root", ci_password="changed"), tenant_a
    )

    assert result.success
    assert backend.calls_to("patch_config") == [
        ("patch_config", "pve2", 305, {"ciuser": "root", "cipassword": "changed"})
    ]


@pytest.mark.asyncio
async def test_placeholder_credentials_rejected(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(
        make_request(ci_user="undefined", ci_password="pw"), tenant_a
    )

    assert result.error_kind == "validation"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_running_vm_rejected(orchestrator, backend, owned_vm, tenant_a):
    backend.vm_states[305] = "running"

    result = await orchestrator.reconfigure_vm(make_request(memory_mb=4096), tenant_a)

    assert result.error_kind == "validation"
    assert "stopped" in result.error
    assert backend.calls_to("patch_config") == []
    assert orchestrator.stores.tasks.tasks == {}


@pytest.mark.asyncio
async def test_disk_cannot_shrink(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(make_request(disk_gb=20), tenant_a)

    assert result.error_kind == "validation"
    assert backend.calls_to("resize_disk") == []


@pytest.mark.asyncio
async def test_growth_checked_against_quota(orchestrator, backend, owned_vm, tenant_a):
    orchestrator.stores.ledger.usage["tenant-a"] = ResourceUsage(7, 2048, 40)

    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=4), tenant_a)

    assert result.error_kind == "quota_exceeded"
    assert backend.calls_to("patch_config") == []
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(7, 2048, 40)


@pytest.mark.asyncio
async def test_per_vm_limit(orchestrator, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=6), tenant_a)
    assert result.error_kind == "quota_exceeded"


@pytest.mark.asyncio
async def test_other_tenant_rejected(orchestrator, backend, owned_vm, tenant_b):
    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=3), tenant_b)

    assert result.error_kind == "permission"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_step_failure_leaves_ledger(orchestrator, backend, owned_vm, tenant_a):
    backend.patch_results["memory"] = BackendResult.failure("HTTP 500: hotplug failed")

    result = await orchestrator.reconfigure_vm(
        make_request(cpu_cores=3, memory_mb=4096), tenant_a
    )

    assert result.error_kind == "backend_operation"
    task = await orchestrator.stores.tasks.get(result.task_id)
    assert task.status == TaskStatus.FAILED
    assert task.steps[2].status == TaskStatus.FAILED
    assert backend.calls_to("delete") == []
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(2, 2048, 40)
    assert orchestrator.ledger.reserved("tenant-a") == ResourceUsage()


@pytest.mark.asyncio
async def test_unreadable_config(orchestrator, backend, owned_vm, tenant_a):
    del backend.configs[305]

    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=3), tenant_a)

    assert result.error_kind == "backend_operation"


@pytest.mark.asyncio
async def test_unknown_vm(orchestrator, tenant_a):
    result = await orchestrator.reconfigure_vm(
        ReconfigureRequest(vm_id="vm-missing", cpu_cores=2), tenant_a
    )
    assert result.error_kind == "not_found"


@pytest.mark.asyncio
async def test_disk_change_needs_known_size(orchestrator, backend, owned_vm, tenant_a):
    backend.set_config(305, "NFS:305/vm-305-disk-0.qcow2", cores=2, memory=2048)

    result = await orchestrator.reconfigure_vm(make_request(disk_gb=60), tenant_a)

    assert result.error_kind == "backend_operation"
    assert "scsi0" in result.error
    assert backend.calls_to("resize_disk") == []
    assert orchestrator.stores.tasks.tasks == {}
    assert await orchestrator.ledger.usage("tenant-a") == ResourceUsage(2, 2048, 40)


@pytest.mark.asyncio
async def test_unknown_disk_size_allows_other_changes(orchestrator, backend, owned_vm, tenant_a):
    backend.set_config(305, "NFS:305/vm-305-disk-0.qcow2", cores=2, memory=2048)

    result = await orchestrator.reconfigure_vm(make_request(cpu_cores=3), tenant_a)

    assert result.success, result.error
    assert backend.calls_to("resize_disk") == []


@pytest.mark.asyncio
async def test_password_without_user_rejected(orchestrator, backend, owned_vm, tenant_a):
    result = await orchestrator.reconfigure_vm(
        make_request(ci_user="", ci_password="pw"), tenant_a
    )

    assert result.error_kind == "validation"
    assert backend.calls == []
