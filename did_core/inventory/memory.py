"""
In-Memory Inventory Stores

Dictionary-backed store implementations used by tests and single-process
deployments. Every conditional write runs under one asyncio lock so a
compare-and-set behaves atomically against concurrent coroutines.
"""

import asyncio
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from did_core.inventory.base import (
    Ddi,
    DdiStore,
    DidOrder,
    DidOrderStore,
    InventoryStatus,
    OrderStatus,
    SuspensionLog,
    SuspensionLogStore,
)


def _matches(record: Any, expected: Dict[str, Any]) -> bool:
    return all(getattr(record, key) == value for key, value in expected.items())


class InMemoryDdiStore(DdiStore):
    """In-memory DID store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._ddis: Dict[str, Ddi] = {}
        self._lock = asyncio.Lock()

    async def create(self, ddi: Ddi) -> None:
        """Create DID."""
        async with self._lock:
            if any(existing.ddi == ddi.ddi for existing in self._ddis.values()):
                raise ValueError(f"DID {ddi.ddi} already exists")
            self._ddis[ddi.id] = replace(ddi)

    async def get(self, ddi_id: str) -> Optional[Ddi]:
        """Get DID by ID."""
        ddi = self._ddis.get(ddi_id)
        return replace(ddi) if ddi else None

    async def get_by_number(self, number: str) -> Optional[Ddi]:
        """Get DID by E.164 number."""
        for ddi in self._ddis.values():
            if ddi.ddi == number:
                return replace(ddi)
        return None

    async def compare_and_set(
        self,
        ddi_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Ddi]:
        """Apply changes only if the expected fields still match."""
        async with self._lock:
            current = self._ddis.get(ddi_id)
            if current is None or not _matches(current, expected):
                return None
            updated = replace(current, **changes)
            self._ddis[ddi_id] = updated
            return replace(updated)

    async def list_due_for_renewal(self, on_date: date) -> List[Ddi]:
        """List DIDs due for renewal on or before a date."""
        due = [
            replace(ddi)
            for ddi in self._ddis.values()
            if ddi.inventory_status == InventoryStatus.ASSIGNED
            and ddi.next_renewal_at is not None
            and ddi.next_renewal_at <= on_date
            and ddi.monthly_price > 0
        ]
        due.sort(key=lambda d: (d.company_id or "", d.next_renewal_at, d.ddi))
        return due

    async def list_for_company(
        self,
        company_id: str,
        statuses: Optional[Iterable[InventoryStatus]] = None,
    ) -> List[Ddi]:
        """List DIDs owned by a company."""
        allowed = set(statuses) if statuses is not None else None
        result = [
            replace(ddi)
            for ddi in self._ddis.values()
            if ddi.company_id == company_id
            and (allowed is None or ddi.inventory_status in allowed)
        ]
        result.sort(key=lambda d: d.ddi)
        return result

    async def list_lapsed_reservations(
        self,
        now: datetime,
        company_id: Optional[str] = None,
    ) -> List[Ddi]:
        """List reserved DIDs whose window has lapsed."""
        lapsed = [
            replace(ddi)
            for ddi in self._ddis.values()
            if ddi.reservation_expired(now)
            and (company_id is None or ddi.reserved_for_company_id == company_id)
        ]
        lapsed.sort(key=lambda d: d.reserved_until)
        return lapsed


class InMemoryDidOrderStore(DidOrderStore):
    """In-memory DID order store implementation."""

    def __init__(self, ddis: InMemoryDdiStore):
        """Initialize in-memory store over the DID store its orders point at."""
        self._ddis = ddis
        self._orders: Dict[str, DidOrder] = {}
        self._lock = asyncio.Lock()

    async def create(self, order: DidOrder) -> None:
        """Create order."""
        async with self._lock:
            self._orders[order.id] = replace(order)

    async def get(self, order_id: str) -> Optional[DidOrder]:
        """Get order by ID."""
        order = self._orders.get(order_id)
        return replace(order) if order else None

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[DidOrder]:
        """Atomically move an order between statuses."""
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected:
                return None
            updated = replace(current, status=new_status, **(changes or {}))
            self._orders[order_id] = updated
            return replace(updated)

    async def find_pending_by_ddi(self, ddi_id: str) -> Optional[DidOrder]:
        """Get the pending order holding a DID."""
        for order in self._orders.values():
            if order.ddi_id == ddi_id and order.is_pending:
                return replace(order)
        return None

    async def list_pending(self, company_id: Optional[str] = None) -> List[DidOrder]:
        """List orders awaiting approval."""
        pending = [
            replace(order)
            for order in self._orders.values()
            if order.is_pending
            and (company_id is None or order.company_id == company_id)
        ]
        pending.sort(key=lambda o: o.requested_at)
        return pending

    async def list_expired(self, now: datetime, company_id: Optional[str] = None) -> List[DidOrder]:
        """List pending orders whose DID reservation has lapsed."""
        expired = []
        for order in await self.list_pending(company_id):
            ddi = await self._ddis.get(order.ddi_id)
            if ddi is not None and ddi.reserved_until is not None and ddi.reserved_until < now:
                expired.append(order)
        return expired


class InMemorySuspensionLogStore(SuspensionLogStore):
    """In-memory suspension log."""

    def __init__(self):
        """Initialize in-memory store."""
        self._entries: List[SuspensionLog] = []

    async def append(self, entry: SuspensionLog) -> None:
        """Append log entry."""
        self._entries.append(replace(entry))

    async def list_for_company(self, company_id: str) -> List[SuspensionLog]:
        """List log entries for a company."""
        return [replace(e) for e in self._entries if e.company_id == company_id]


__all__ = [
    "InMemoryDdiStore",
    "InMemoryDidOrderStore",
    "InMemorySuspensionLogStore",
]
