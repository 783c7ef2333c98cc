"""
In-Memory Billing Stores

Dictionary-backed company and invoice stores. Conditional writes hold a
single asyncio lock per store.
"""

import asyncio
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from did_core.billing.base import (
    BalanceMovement,
    Company,
    CompanyStore,
    Invoice,
    InvoiceStore,
    SyncStatus,
)


def _copy_invoice(invoice: Invoice) -> Invoice:
    return replace(invoice, renewal_ddi_ids=list(invoice.renewal_ddi_ids))


class InMemoryCompanyStore(CompanyStore):
    """In-memory company store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._companies: Dict[str, Company] = {}
        self._movements: List[BalanceMovement] = []
        self._lock = asyncio.Lock()

    async def create(self, company: Company) -> None:
        """Create company."""
        self._companies[company.id] = replace(company)

    async def get(self, company_id: str) -> Optional[Company]:
        """Get company by ID."""
        company = self._companies.get(company_id)
        return replace(company) if company else None

    async def adjust_balance(
        self,
        company_id: str,
        delta: Decimal,
        minimum: Optional[Decimal] = None,
    ) -> Optional[Decimal]:
        """Atomically add delta to the balance."""
        async with self._lock:
            company = self._companies.get(company_id)
            if company is None:
                return None
            new_balance = company.balance + delta
            if minimum is not None and new_balance < minimum:
                return None
            self._companies[company_id] = replace(company, balance=new_balance)
            return new_balance

    async def set_renewal_anchor(self, company_id: str, anchor: Optional[date]) -> None:
        """Move the consolidated renewal anchor."""
        async with self._lock:
            company = self._companies.get(company_id)
            if company is not None:
                self._companies[company_id] = replace(company, did_renewal_anchor=anchor)

    async def add_balance_movement(self, movement: BalanceMovement) -> None:
        """Record a balance movement."""
        self._movements.append(replace(movement))

    async def list_balance_movements(self, company_id: str) -> List[BalanceMovement]:
        """List balance movements for a company."""
        return [replace(m) for m in self._movements if m.company_id == company_id]


class InMemoryInvoiceStore(InvoiceStore):
    """In-memory invoice store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._invoices: Dict[str, Invoice] = {}
        self._lock = asyncio.Lock()

    async def create(self, invoice: Invoice) -> None:
        """Create invoice."""
        async with self._lock:
            self._invoices[invoice.id] = _copy_invoice(invoice)

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        """Get invoice by ID."""
        invoice = self._invoices.get(invoice_id)
        return _copy_invoice(invoice) if invoice else None

    async def compare_and_set(
        self,
        invoice_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Invoice]:
        """Apply changes only if the expected fields still match."""
        async with self._lock:
            current = self._invoices.get(invoice_id)
            if current is None:
                return None
            if any(getattr(current, key) != value for key, value in expected.items()):
                return None
            updated = replace(current, **changes)
            self._invoices[invoice_id] = updated
            return _copy_invoice(updated)

    async def claim_sync(
        self,
        invoice_id: str,
        now: datetime,
        lease: timedelta,
    ) -> Optional[Invoice]:
        """Take the sync lease on a pending invoice."""
        async with self._lock:
            current = self._invoices.get(invoice_id)
            if current is None or current.sync_status != SyncStatus.PENDING:
                return None
            if current.sync_locked_until is not None and current.sync_locked_until > now:
                return None
            updated = replace(current, sync_locked_until=now + lease)
            self._invoices[invoice_id] = updated
            return _copy_invoice(updated)

    async def list_for_company(self, company_id: str) -> List[Invoice]:
        """List invoices for a company."""
        invoices = [
            _copy_invoice(i) for i in self._invoices.values()
            if i.company_id == company_id
        ]
        invoices.sort(key=lambda x: x.created_at, reverse=True)
        return invoices

    async def list_by_sync_status(self, sync_status: SyncStatus) -> List[Invoice]:
        """List invoices in a sync status."""
        return [
            _copy_invoice(i) for i in self._invoices.values()
            if i.sync_status == sync_status
        ]


__all__ = [
    "InMemoryCompanyStore",
    "InMemoryInvoiceStore",
]
