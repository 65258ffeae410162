"""Unit tests for data models."""

from datetime import datetime, timezone

import pytest

from pve_orchestrator.models import (
    BackendResult,
    PENDING_HANDLE,
    ProvisioningTask,
    QuotaPlan,
    ReconfigureRequest,
    ResourceUsage,
    Step,
    TaskStatus,
    Template,
    VMConfig,
)


class TestResourceUsage:
    def test_add(self):
        total = ResourceUsage(2, 2048, 20) + ResourceUsage(1, 1024, 10)
        assert total == ResourceUsage(3, 3072, 30)

    def test_subtract_floors_at_zero(self):
        result = ResourceUsage(1, 1024, 10) - ResourceUsage(2, 512, 30)
        assert result == ResourceUsage(0, 512, 0)

    def test_signed_delta(self):
        delta = ResourceUsage(4, 4096, 40).signed_delta(ResourceUsage(2, 8192, 40))
        assert delta == ResourceUsage(-2, 4096, 0)
        assert delta.positive_part() == ResourceUsage(0, 4096, 0)
        assert delta.negative_part() == ResourceUsage(2, 0, 0)

    def test_is_zero(self):
        assert ResourceUsage().is_zero()
        assert not ResourceUsage(storage_gb=1).is_zero()

    def test_dict_round_trip(self):
        usage = ResourceUsage(2, 2048, 32)
        assert ResourceUsage.from_dict(usage.to_dict()) == usage


class TestQuotaPlan:
    def test_aggregate(self, basic_plan):
        assert basic_plan.aggregate == ResourceUsage(8, 16384, 200)

    def test_frozen(self, basic_plan):
        with pytest.raises(Exception):
            basic_plan.max_vms = 3

    def test_from_dict(self, basic_plan):
        assert QuotaPlan.from_dict(basic_plan.to_dict()) == basic_plan


class TestVMConfig:
    @pytest.mark.parametrize(
        "descriptor, size",
        [
            ("NFS:105/vm-105-disk-0.qcow2,size=32G", 32),
            ("local-lvm:vm-105-disk-0,size=1T", 1024),
            ("local-lvm:vm-105-disk-0", None),
            (None, None),
        ],
    )
    def test_disk_size(self, descriptor, size):
        assert VMConfig(primary_disk=descriptor).disk_size_gb == size

    def test_from_api(self):
        config = VMConfig.from_api(
            {"memory": "4096", "scsi0": "NFS:1/vm-1-disk-0.raw,size=10G", "name": "web"},
            disk_slot="scsi0",
        )
        assert config.cores == 1
        assert config.memory_mb == 4096
        assert config.name == "web"
        assert config.footprint() == ResourceUsage(1, 4096, 10)

    def test_footprint_without_disk(self):
        assert VMConfig(cores=2, memory_mb=1024).footprint() == ResourceUsage(2, 1024, 0)


class TestTemplate:
    def test_visibility(self, public_template, private_template):
        assert public_template.visible_to("anyone")
        assert private_template.visible_to("tenant-b")
        assert not private_template.visible_to("tenant-a")
        assert private_template.visible_to("ops", is_admin=True)

    def test_password_not_in_repr(self, public_template):
        assert "template-secret" not in repr(public_template)

    def test_from_dict_casts_id(self):
        template = Template.from_dict(
            {
                "template_id": "t",
                "description": "",
                "node": "pve1",
                "remote_vm_id": "9000",
                "owner_id": "admin",
            }
        )
        assert template.remote_vm_id == 9000


class TestTaskRecords:
    def test_step_defaults(self):
        step = Step(name="Clone VM from Template")
        assert step.handle == PENDING_HANDLE
        assert step.status == TaskStatus.PENDING

    def test_task_round_trip(self):
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        task = ProvisioningTask(
            task_id="clone-tpl-1",
            tenant_id="tenant-a",
            vm_id="200",
            template_vm_id="9000",
            target_node="pve1",
            status=TaskStatus.IN_PROGRESS,
            progress=20,
            steps=[
                Step(name="a", status=TaskStatus.COMPLETED, handle="UPID:x", started_at=now),
                Step(name="b", status=TaskStatus.IN_PROGRESS),
            ],
            created_at=now,
            updated_at=now,
        )
        restored = ProvisioningTask.from_dict(task.to_dict())
        assert restored == task
        assert restored.current_step().name == "b"

    def test_terminal_statuses(self):
        assert TaskStatus.COMPLETED.is_terminal
        assert TaskStatus.FAILED.is_terminal
        assert not TaskStatus.IN_PROGRESS.is_terminal


class TestBackendResult:
    def test_kinds(self):
        assert BackendResult.immediate().ok
        assert not BackendResult.immediate().is_task
        assert BackendResult.task("UPID:1").is_task
        assert not BackendResult.failure("no").ok


class TestReconfigureRequest:
    def test_has_changes(self):
        assert not ReconfigureRequest(vm_id="vm-1").has_changes()
        assert ReconfigureRequest(vm_id="vm-1", memory_mb=2048).has_changes()
