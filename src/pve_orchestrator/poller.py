"""
Bounded wait loops for remote operations.

TaskPoller resolves an asynchronous task handle to success, failure or
timeout. DiskReadinessGate waits for a freshly cloned disk to leave its
transient state. Both suspend with a cooperative sleep so other pipelines
keep running.
"""

import asyncio
import re
import time
from typing import Any, Awaitable, Callable, Optional

from .backend import BackendClient
from .logging import logger
from .models import PollOutcome, PollResult


SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], float]

TRANSIENT_DISK_MARKERS = ("importing", "cloning")
READY_DISK_PATTERN = re.compile(r"\.(raw|qcow2|vmdk)")


class TaskPoller:
    """Polls a remote task handle until it settles or attempts run out."""

    def __init__(
        self,
        backend: BackendClient,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ) -> None:
        self.backend = backend
        self._sleep = sleep
        self._clock = clock

    async def await_completion(
        self,
        node: str,
        handle: str,
        label: str,
        max_attempts: int = 120,
        interval: float = 5.0,
    ) -> PollResult:
        """
        Wait for a remote task to finish.

        A task that reports ``stopped`` without an exit status has not posted
        its result yet and is polled again. Unreadable status is retried too.

        Args:
            node: Node the task runs on
            handle: Remote task handle
            label: Human-readable operation name for logs and messages
            max_attempts: Number of status reads before giving up
            interval: Seconds to sleep between reads

        Returns:
            PollResult: success, failure with the remote error text, or timeout
        """
        started = self._clock()
        for attempt in range(1, max_attempts + 1):
            report = await self.backend.read_task_status(node, handle)

            if report is None:
                logger.warning(
                    f"Could not read status of {label} task, retrying",
                    node=node,
                    handle=handle,
                    attempt=attempt,
                )
            elif report.is_running:
                logger.debug(f"{label} still running", node=node, handle=handle, attempt=attempt)
            elif report.exit_status == "OK":
                return PollResult(
                    outcome=PollOutcome.SUCCESS,
                    attempts=attempt,
                    elapsed=self._clock() - started,
                )
            elif report.exit_status:
                logger.error(
                    f"{label} task failed: {report.exit_status}", node=node, handle=handle
                )
                return PollResult(
                    outcome=PollOutcome.FAILURE,
                    message=report.exit_status,
                    attempts=attempt,
                    elapsed=self._clock() - started,
                )
            else:
                logger.debug(
                    f"{label} stopped without exit status, retrying",
                    node=node,
                    handle=handle,
                    attempt=attempt,
                )

            await self._sleep(interval)

        elapsed = self._clock() - started
        logger.warning(
            f"Gave up waiting for {label}; the remote task may still be running",
            node=node,
            handle=handle,
            attempts=max_attempts,
            elapsed=elapsed,
        )
        return PollResult(
            outcome=PollOutcome.TIMEOUT,
            message=f"{label} did not finish after {max_attempts} attempts",
            attempts=max_attempts,
            elapsed=elapsed,
        )


class DiskReadinessGate:
    """Waits until a VM's primary disk has a settled storage format."""

    def __init__(
        self,
        backend: BackendClient,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
    ) -> None:
        self.backend = backend
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def descriptor_ready(descriptor: Optional[str]) -> Optional[bool]:
        """
        Classify a disk descriptor.

        Returns:
            True when ready, False when transient, None when it cannot be told
        """
        if not descriptor:
            return None
        lowered = descriptor.lower()
        if any(marker in lowered for marker in TRANSIENT_DISK_MARKERS):
            return False
        if READY_DISK_PATTERN.search(lowered):
            return True
        return None

    async def await_disk_ready(
        self, node: str, vm_id: int, max_attempts: int = 20, interval: float = 10.0
    ) -> PollResult:
        started = self._clock()
        for attempt in range(1, max_attempts + 1):
            config = await self.backend.read_config(node, vm_id)
            descriptor = config.primary_disk if config else None
            ready = self.descriptor_ready(descriptor)

            if ready:
                logger.info("Disk is ready", node=node, vm_id=vm_id, attempt=attempt)
                return PollResult(
                    outcome=PollOutcome.SUCCESS,
                    attempts=attempt,
                    elapsed=self._clock() - started,
                )
            if config is None:
                logger.warning("Could not read VM config, retrying", node=node, vm_id=vm_id)
            elif ready is False:
                logger.debug("Disk is still being prepared", node=node, vm_id=vm_id, disk=descriptor)
            else:
                logger.warning(
                    "Disk state is unrecognised, retrying",
                    node=node,
                    vm_id=vm_id,
                    disk=descriptor,
                )

            if attempt < max_attempts:
                await self._sleep(interval)

        return PollResult(
            outcome=PollOutcome.FAILURE,
            message=f"Disk of VM {vm_id} not ready after {max_attempts} attempts",
            attempts=max_attempts,
            elapsed=self._clock() - started,
        )
