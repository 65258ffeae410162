"""Unit tests for task polling and disk readiness."""

import pytest

from conftest import FakeBackend, FakeClock
from pve_orchestrator.models import PollOutcome, TaskStatusReport
from pve_orchestrator.poller import DiskReadinessGate, TaskPoller


HANDLE = "UPID:pve1:00001234:qmclone"

RUNNING = TaskStatusReport(status="running")


@pytest.fixture
def fake_clock():
    return FakeClock()


def make_poller(backend, clock):
    return TaskPoller(backend, sleep=clock.sleep, clock=clock)


class TestTaskPoller:
    @pytest.mark.asyncio
    async def test_success_after_running(self, fake_clock):
        backend = FakeBackend()
        backend.task_reports[HANDLE] = [RUNNING, RUNNING, TaskStatusReport("stopped", "OK")]

        result = await make_poller(backend, fake_clock).await_completion(
            "pve1", HANDLE, "clone", max_attempts=10, interval=5.0
        )

        assert result.outcome == PollOutcome.SUCCESS
        assert result.attempts == 3
        assert result.elapsed == 10.0

    @pytest.mark.asyncio
    async def test_failure_carries_exit_status(self, fake_clock):
        backend = FakeBackend()
        backend.task_reports[HANDLE] = [TaskStatusReport("stopped", "storage 'NFS' is full")]

        result = await make_poller(backend, fake_clock).await_completion(
            "pve1", HANDLE, "clone", max_attempts=10, interval=5.0
        )

        assert result.outcome == PollOutcome.FAILURE
        assert result.message == "storage 'NFS' is full"
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_timeout_after_exact_duration(self, fake_clock):
        backend = FakeBackend()
        backend.task_reports[HANDLE] = [RUNNING]

        result = await make_poller(backend, fake_clock).await_completion(
            "pve1", HANDLE, "clone", max_attempts=12, interval=5.0
        )

        assert result.outcome == PollOutcome.TIMEOUT
        assert result.attempts == 12
        assert result.elapsed == 60.0
        assert len(backend.calls_to("read_task_status")) == 12

    @pytest.mark.asyncio
    async def test_stopped_without_exit_status_is_retried(self, fake_clock):
        backend = FakeBackend()
        backend.task_reports[HANDLE] = [
            TaskStatusReport("stopped", None),
            TaskStatusReport("stopped", "OK"),
        ]

        result = await make_poller(backend, fake_clock).await_completion(
            "pve1", HANDLE, "clone", max_attempts=5, interval=1.0
        )

        assert result.ok
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_unreadable_status_is_retried(self, fake_clock):
        backend = FakeBackend()
        backend.task_reports[HANDLE] = [None, TaskStatusReport("stopped", "OK")]

        result = await make_poller(backend, fake_clock).await_completion(
            "pve1", HANDLE, "delete", max_attempts=5, interval=1.0
        )

        assert result.ok
        assert fake_clock.sleeps == [1.0]


class TestDiskReadinessGate:
    @pytest.mark.parametrize(
        "descriptor, ready",
        [
            ("NFS:105/vm-105-disk-0.qcow2,size=32G", True),
            ("storageA:105/vm-105-disk-0.raw,size=32G", True),
            ("NFS:105/vm-105-disk-0.VMDK,size=32G", True),
            ("NFS:105/vm-105-disk-0.qcow2,importing,size=32G", False),
            ("cloning in progress", False),
            ("local-lvm:vm-105-disk-0,size=32G", None),
            ("", None),
            (None, None),
        ],
    )
    def test_descriptor_ready(self, descriptor, ready):
        assert DiskReadinessGate.descriptor_ready(descriptor) is ready

    @pytest.mark.asyncio
    async def test_ready_after_transient_state(self, fake_clock):
        backend = FakeBackend()
        backend.set_config(
            105,
            "NFS:105/vm-105-disk-0.qcow2,importing",
            None,
            "NFS:105/vm-105-disk-0.qcow2,size=32G",
        )
        backend.configs[105][1] = None

        gate = DiskReadinessGate(backend, sleep=fake_clock.sleep, clock=fake_clock)
        result = await gate.await_disk_ready("pve1", 105, max_attempts=5, interval=10.0)

        assert result.ok
        assert result.attempts == 3
        assert fake_clock.sleeps == [10.0, 10.0]

    @pytest.mark.asyncio
    async def test_gives_up_without_final_sleep(self, fake_clock):
        backend = FakeBackend()
        backend.set_config(105, "local-lvm:vm-105-disk-0,size=32G")

        gate = DiskReadinessGate(backend, sleep=fake_clock.sleep, clock=fake_clock)
        result = await gate.await_disk_ready("pve1", 105, max_attempts=3, interval=10.0)

        assert result.outcome == PollOutcome.FAILURE
        assert result.attempts == 3
        assert fake_clock.sleeps == [10.0, 10.0]
        assert "not ready" in result.message
