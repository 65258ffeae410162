"""Test configuration and fixtures for pve-orchestrator."""

import pytest
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pve_orchestrator.client import OrchestratorClient  # noqa: E402
from pve_orchestrator.config import AppConfig  # noqa: E402
from pve_orchestrator.models import (  # noqa: E402
    BackendResult,
    QuotaPlan,
    Requester,
    TaskStatusReport,
    Template,
    VMConfig,
)
from pve_orchestrator.stores import Stores  # noqa: E402


CLONE_HANDLE = "UPID:pve1:0000A1B2:clone"
DELETE_HANDLE = "UPID:pve2:0000C3D4:delete"


def _next(sequence: List[Any]) -> Any:
    """Pop scripted values until one is left, then keep returning it."""
    if len(sequence) > 1:
        return sequence.pop(0)
    return sequence[0]


class FakeBackend:
    """Scripted BackendClient that records every call."""

    def __init__(self, next_id: Optional[int] = 200) -> None:
        self.calls: List[tuple] = []
        self.next_id = next_id
        self.results: Dict[str, BackendResult] = {
            "clone": BackendResult.task(CLONE_HANDLE),
            "patch_config": BackendResult.immediate(),
            "resize_disk": BackendResult.immediate(),
            "delete": BackendResult.task(DELETE_HANDLE),
            "convert_to_template": BackendResult.immediate(),
        }
        # Keyed by the first field name of a patch, e.g. "cores" or "memory"
        self.patch_results: Dict[str, BackendResult] = {}
        self.task_reports: Dict[str, List[Optional[TaskStatusReport]]] = {}
        self.default_report = TaskStatusReport(status="stopped", exit_status="OK")
        self.configs: Dict[int, List[Optional[VMConfig]]] = {}
        self.vm_states: Dict[int, Optional[str]] = {}

    def set_config(
        self,
        vm_id: int,
        *descriptors: Optional[str],
        cores: int = 1,
        memory: int = 2048,
        name: Optional[str] = None,
    ) -> None:
        """Script the configs read_config returns for a VM, one per descriptor."""
        self.configs[vm_id] = [
            VMConfig(cores=cores, memory_mb=memory, primary_disk=d, name=name)
            for d in descriptors
        ]

    def calls_to(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    async def next_vm_id(self) -> Optional[int]:
        self.calls.append(("next_vm_id",))
        if self.next_id is None:
            return None
        vm_id = self.next_id
        self.next_id += 1
        return vm_id

    async def clone(self, source_node, source_id, new_id, name, target_node, storage, full=True):
        self.calls.append(("clone", source_node, source_id, new_id, name, target_node, storage, full))
        return self.results["clone"]

    async def patch_config(self, node, vm_id, fields):
        self.calls.append(("patch_config", node, vm_id, dict(fields)))
        return self.patch_results.get(next(iter(fields)), self.results["patch_config"])

    async def resize_disk(self, node, vm_id, disk, size_gb):
        self.calls.append(("resize_disk", node, vm_id, disk, size_gb))
        return self.results["resize_disk"]

    async def read_config(self, node, vm_id):
        self.calls.append(("read_config", node, vm_id))
        sequence = self.configs.get(vm_id)
        return _next(sequence) if sequence else None

    async def delete(self, node, vm_id):
        self.calls.append(("delete", node, vm_id))
        return self.results["delete"]

    async def convert_to_template(self, node, vm_id):
        self.calls.append(("convert_to_template", node, vm_id))
        return self.results["convert_to_template"]

    async def read_task_status(self, node, handle):
        self.calls.append(("read_task_status", node, handle))
        sequence = self.task_reports.get(handle)
        return _next(sequence) if sequence else self.default_report

    async def read_vm_status(self, node, vm_id):
        self.calls.append(("read_vm_status", node, vm_id))
        return self.vm_states.get(vm_id, "stopped")


class FakeClock:
    """Simulated monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def app_config():
    """Configuration with short wait loops."""
    return AppConfig(
        long_poll_attempts=10,
        long_poll_interval=5.0,
        short_poll_attempts=10,
        short_poll_interval=1.0,
        disk_ready_attempts=5,
        disk_ready_interval=10.0,
        disk_settle_delay=5.0,
    )


@pytest.fixture
def basic_plan():
    return QuotaPlan(
        plan_id="basic",
        name="Basic",
        max_cpu_cores_per_vm=4,
        max_memory_per_vm=8192,
        max_storage_per_vm=100,
        max_cpu_cores_sum=8,
        max_memory_sum=16384,
        max_storage_sum=200,
    )


@pytest.fixture
def public_template():
    return Template(
        template_id="tpl-ubuntu",
        description="Ubuntu 22.04",
        node="pve1",
        remote_vm_id=9000,
        owner_id="admin",
        ci_user="ubuntu",
        ci_password="template-secret",
        is_public=True,
    )


@pytest.fixture
def private_template():
    return Template(
        template_id="tpl-private",
        description="Private build",
        node="pve1",
        remote_vm_id=9001,
        owner_id="tenant-b",
    )


@pytest.fixture
def stores(basic_plan, public_template, private_template):
    stores = Stores()
    stores.plans.assign("tenant-a", basic_plan)
    stores.plans.assign("tenant-b", basic_plan)
    stores.templates.templates[public_template.template_id] = public_template
    stores.templates.templates[private_template.template_id] = private_template
    return stores


@pytest.fixture
def backend():
    backend = FakeBackend(next_id=200)
    backend.set_config(200, "NFS:200/vm-200-disk-0.qcow2,size=32G")
    return backend


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(app_config, stores, backend, clock):
    return OrchestratorClient(app_config, stores=stores, backend=backend, sleep=clock.sleep)


@pytest.fixture
def tenant_a():
    return Requester(tenant_id="tenant-a")


@pytest.fixture
def tenant_b():
    return Requester(tenant_id="tenant-b")


@pytest.fixture
def admin():
    return Requester(tenant_id="ops", is_admin=True)
