"""
Per-tenant resource quota accounting.

check_available is a pure check of a request against a plan. QuotaLedger
keeps the used-resource ledger and hands out reservations: a reservation
re-checks the request under a per-tenant lock, counting every other
outstanding reservation of the tenant, and holds its share until it is
committed or released. Pipelines of one tenant still run concurrently; only
the check itself is serialized.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from typing import Dict, MutableMapping, Optional

from .exceptions import NotFoundError, QuotaExceededError
from .logging import logger
from .models import QuotaPlan, ResourceUsage
from .stores import LedgerStore, QuotaPlanStore


_DIMENSIONS = (
    ("cpu_cores", "CPU cores"),
    ("memory_mb", "memory (MB)"),
    ("storage_gb", "storage (GB)"),
)


def check_per_vm(plan: QuotaPlan, values: ResourceUsage) -> None:
    """
    Check a single VM's size against the plan's per-VM maxima.

    Raises:
        QuotaExceededError: Naming the first dimension that is too large
    """
    limits = {
        "cpu_cores": plan.max_cpu_cores_per_vm,
        "memory_mb": plan.max_memory_per_vm,
        "storage_gb": plan.max_storage_per_vm,
    }
    for attr, label in _DIMENSIONS:
        requested = getattr(values, attr)
        if requested > limits[attr]:
            raise QuotaExceededError(
                f"{requested} {label} requested, at most {limits[attr]} per VM",
                dimension=f"{attr}_per_vm",
                requested=requested,
                available=limits[attr],
            )


def check_aggregate(plan: QuotaPlan, used: ResourceUsage, delta: ResourceUsage) -> None:
    """
    Check that ``used + delta`` stays within the plan's aggregate maxima.

    Raises:
        QuotaExceededError: Naming the first dimension without headroom
    """
    limits = plan.aggregate
    for attr, label in _DIMENSIONS:
        requested = getattr(delta, attr)
        if requested <= 0:
            continue
        available = max(0, getattr(limits, attr) - getattr(used, attr))
        if requested > available:
            raise QuotaExceededError(
                f"{requested} {label} requested, {available} available",
                dimension=attr,
                requested=requested,
                available=available,
            )


def check_vm_count(plan: QuotaPlan, vm_count: Optional[int]) -> None:
    if plan.max_vms is None or vm_count is None:
        return
    if vm_count + 1 > plan.max_vms:
        raise QuotaExceededError(
            f"{vm_count} VMs owned, at most {plan.max_vms} allowed",
            dimension="vm_count",
            requested=vm_count + 1,
            available=max(0, plan.max_vms - vm_count),
        )


def check_available(
    plan: QuotaPlan,
    used: ResourceUsage,
    requested: ResourceUsage,
    vm_count: Optional[int] = None,
) -> None:
    """
    Check a new VM against a plan.

    Per-VM maxima are checked first, then aggregate headroom, then the VM
    count when one is given.

    Args:
        plan: The tenant's quota plan
        used: Resources the tenant already uses
        requested: Size of the new VM
        vm_count: VMs the tenant already owns

    Raises:
        QuotaExceededError: If any limit would be exceeded
    """
    check_per_vm(plan, requested)
    check_aggregate(plan, used, requested)
    check_vm_count(plan, vm_count)


class Reservation:
    """
    A held share of a tenant's quota.

    Usage:
        async with ledger.reserve(tenant_id, plan, requested, owned_vms) as reservation:
            # run the pipeline
            await reservation.commit()

    Leaving the block without commit releases the share and leaves the
    ledger untouched.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        tenant_id: str,
        plan: QuotaPlan,
        requested: ResourceUsage,
        owned_vms: Optional[int] = None,
        per_vm: Optional[ResourceUsage] = None,
        apply_delta: Optional[ResourceUsage] = None,
    ) -> None:
        self.reservation_id = uuid.uuid4().hex[:8]
        self.ledger = ledger
        self.tenant_id = tenant_id
        self.plan = plan
        self.requested = requested
        self.owned_vms = owned_vms
        self.per_vm = per_vm if per_vm is not None else requested
        self.apply_delta = apply_delta if apply_delta is not None else requested
        self.committed = False
        self.released = False

    @property
    def vm_slots(self) -> int:
        return 1 if self.owned_vms is not None else 0

    async def __aenter__(self) -> Reservation:
        await self.ledger._acquire(self)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self.committed:
            await self.release()

    async def commit(self) -> ResourceUsage:
        """Move the reserved delta into the ledger."""
        if self.committed:
            logger.warning(
                "Reservation already committed",
                tenant_id=self.tenant_id,
                reservation_id=self.reservation_id,
            )
            return await self.ledger.usage(self.tenant_id)
        usage = await self.ledger._settle(self)
        self.committed = True
        return usage

    async def release(self) -> None:
        if self.released or self.committed:
            return
        await self.ledger._drop(self)
        self.released = True
        logger.debug(
            "Released reservation",
            tenant_id=self.tenant_id,
            reservation_id=self.reservation_id,
        )


class QuotaLedger:
    """Used-resource ledger with per-tenant reservations."""

    def __init__(self, ledger_store: LedgerStore, plan_store: QuotaPlanStore) -> None:
        self.ledger_store = ledger_store
        self.plan_store = plan_store
        # a tenant lock lives only while some coroutine holds or awaits it
        self._locks: MutableMapping[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._outstanding: Dict[str, Dict[str, Reservation]] = {}

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def _forget(self, reservation: Reservation) -> None:
        held = self._outstanding.get(reservation.tenant_id)
        if held is None:
            return
        held.pop(reservation.reservation_id, None)
        if not held:
            del self._outstanding[reservation.tenant_id]

    async def plan_for(self, tenant_id: str) -> QuotaPlan:
        plan = await self.plan_store.plan_for_tenant(tenant_id)
        if plan is None:
            raise NotFoundError("Quota plan for tenant", tenant_id)
        return plan

    async def usage(self, tenant_id: str) -> ResourceUsage:
        return await self.ledger_store.get(tenant_id)

    def reserved(self, tenant_id: str) -> ResourceUsage:
        """Sum of the tenant's outstanding reservations."""
        total = ResourceUsage()
        for reservation in self._outstanding.get(tenant_id, {}).values():
            total = total + reservation.requested
        return total

    def reserved_vm_slots(self, tenant_id: str) -> int:
        return sum(r.vm_slots for r in self._outstanding.get(tenant_id, {}).values())

    async def commit(self, tenant_id: str, delta: ResourceUsage) -> ResourceUsage:
        """Add a delta to the tenant's used resources."""
        async with self._lock(tenant_id):
            return await self._apply(tenant_id, delta, ResourceUsage())

    async def reclaim(self, tenant_id: str, delta: ResourceUsage) -> ResourceUsage:
        """Subtract a delta from the tenant's used resources, flooring each field at zero."""
        async with self._lock(tenant_id):
            return await self._apply(tenant_id, ResourceUsage(), delta)

    async def apply_signed(self, tenant_id: str, delta: ResourceUsage) -> ResourceUsage:
        """Commit the positive fields of a delta and reclaim the negative ones."""
        async with self._lock(tenant_id):
            return await self._apply(tenant_id, delta.positive_part(), delta.negative_part())

    async def _apply(
        self, tenant_id: str, increase: ResourceUsage, decrease: ResourceUsage
    ) -> ResourceUsage:
        before = await self.ledger_store.get(tenant_id)
        after = (before + increase) - decrease
        await self.ledger_store.put(tenant_id, after)
        logger.info(
            "Updated resource ledger",
            tenant_id=tenant_id,
            cpu_cores=after.cpu_cores,
            memory_mb=after.memory_mb,
            storage_gb=after.storage_gb,
        )
        return after

    def reserve(
        self,
        tenant_id: str,
        plan: QuotaPlan,
        requested: ResourceUsage,
        owned_vms: Optional[int] = None,
        per_vm: Optional[ResourceUsage] = None,
        apply_delta: Optional[ResourceUsage] = None,
    ) -> Reservation:
        """
        Create a reservation to be entered with ``async with``.

        Args:
            tenant_id: Tenant to reserve for
            plan: The tenant's quota plan
            requested: Resources to hold against the aggregate maxima
            owned_vms: VMs the tenant owns; when given, one VM slot is held too
            per_vm: Size checked against the per-VM maxima (defaults to requested)
            apply_delta: Signed delta written on commit (defaults to requested)

        Returns:
            Reservation: Not yet acquired
        """
        return Reservation(self, tenant_id, plan, requested, owned_vms, per_vm, apply_delta)

    async def _acquire(self, reservation: Reservation) -> None:
        tenant_id = reservation.tenant_id
        async with self._lock(tenant_id):
            used = await self.ledger_store.get(tenant_id)
            held = self.reserved(tenant_id)
            check_per_vm(reservation.plan, reservation.per_vm)
            check_aggregate(reservation.plan, used + held, reservation.requested)
            if reservation.owned_vms is not None:
                check_vm_count(
                    reservation.plan,
                    reservation.owned_vms + self.reserved_vm_slots(tenant_id),
                )
            self._outstanding.setdefault(tenant_id, {})[reservation.reservation_id] = reservation
        logger.debug(
            "Reserved resources",
            tenant_id=tenant_id,
            reservation_id=reservation.reservation_id,
            cpu_cores=reservation.requested.cpu_cores,
            memory_mb=reservation.requested.memory_mb,
            storage_gb=reservation.requested.storage_gb,
        )

    async def _settle(self, reservation: Reservation) -> ResourceUsage:
        tenant_id = reservation.tenant_id
        async with self._lock(tenant_id):
            self._forget(reservation)
            delta = reservation.apply_delta
            return await self._apply(tenant_id, delta.positive_part(), delta.negative_part())

    async def _drop(self, reservation: Reservation) -> None:
        async with self._lock(reservation.tenant_id):
            self._forget(reservation)
