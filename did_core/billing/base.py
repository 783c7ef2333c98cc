"""
Billing Base Types Module

This module defines the billing records the engine reads and writes:
companies (read from the external account aggregate), locally created
invoices, balance movements, and their storage interfaces.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


CENT = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    """Round a money amount to cents."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# Enums
# =============================================================================


class BillingMethod(str, Enum):
    """How a company pays for service."""

    PREPAID = "prepaid"
    PSEUDOPREPAID = "pseudoprepaid"
    POSTPAID = "postpaid"

    @property
    def uses_balance(self) -> bool:
        return self in (BillingMethod.PREPAID, BillingMethod.PSEUDOPREPAID)


class RenewalMode(str, Enum):
    """Brand-level DID renewal mode."""

    PER_DID = "per_did"
    CONSOLIDATED = "consolidated"


class InvoiceType(str, Enum):
    """Closed set of invoice types, each with exactly one paid handler."""

    STANDARD = "standard"
    DID_PURCHASE = "did_purchase"
    DID_RENEWAL = "did_renewal"
    BALANCE_TOPUP = "balance_topup"


class InvoiceStatus(str, Enum):
    """Local invoice status."""

    WAITING = "waiting"
    PROCESSING = "processing"
    CREATED = "created"
    ERROR = "error"
    PAID = "paid"
    OVERDUE = "overdue"


class SyncStatus(str, Enum):
    """Synchronization status with the external billing system."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"

    @property
    def is_settled(self) -> bool:
        return self in (SyncStatus.SYNCED, SyncStatus.NOT_APPLICABLE)


SYNCABLE_TYPES: Dict[BillingMethod, FrozenSet[InvoiceType]] = {
    BillingMethod.PREPAID: frozenset({
        InvoiceType.DID_PURCHASE,
        InvoiceType.DID_RENEWAL,
        InvoiceType.BALANCE_TOPUP,
    }),
    BillingMethod.PSEUDOPREPAID: frozenset({
        InvoiceType.DID_PURCHASE,
        InvoiceType.DID_RENEWAL,
        InvoiceType.BALANCE_TOPUP,
    }),
    BillingMethod.POSTPAID: frozenset({InvoiceType.STANDARD}),
}


def is_syncable(billing_method: BillingMethod, invoice_type: InvoiceType) -> bool:
    """Check whether an invoice type is pushed to external billing for a billing method."""
    return invoice_type in SYNCABLE_TYPES[billing_method]


# =============================================================================
# Records
# =============================================================================


@dataclass
class Company:
    """Customer account, as far as billing decisions need it."""

    name: str
    brand_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    billing_method: BillingMethod = BillingMethod.PREPAID
    balance: Decimal = Decimal("0.00")

    # External billing link
    billing_client_id: Optional[str] = None

    # Renewal configuration
    did_renewal_mode: RenewalMode = RenewalMode.PER_DID
    did_renewal_anchor: Optional[date] = None

    @property
    def has_billing_link(self) -> bool:
        return bool(self.billing_client_id)


@dataclass
class Invoice:
    """A billable event created locally."""

    number: str
    company_id: str
    brand_id: str
    invoice_type: InvoiceType
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    status: InvoiceStatus = InvoiceStatus.CREATED
    total: Decimal = Decimal("0.00")
    total_with_tax: Optional[Decimal] = None

    # Linked inventory
    ddi_id: Optional[str] = None
    renewal_ddi_ids: List[str] = field(default_factory=list)
    period_end: Optional[date] = None
    notes: str = ""

    # External sync
    sync_status: SyncStatus = SyncStatus.PENDING
    external_invoice_id: Optional[str] = None
    sync_attempts: int = 0
    sync_error: Optional[str] = None
    sync_locked_until: Optional[datetime] = None

    paid_at: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        """Amount due, preferring the taxed total."""
        if self.total_with_tax is not None:
            return self.total_with_tax
        return self.total if self.total is not None else Decimal("0.00")

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    @property
    def linked_ddi_ids(self) -> List[str]:
        """DIDs covered by this invoice."""
        if self.ddi_id:
            return [self.ddi_id]
        return list(self.renewal_ddi_ids)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "number": self.number,
            "company_id": self.company_id,
            "invoice_type": self.invoice_type.value,
            "status": self.status.value,
            "total": str(self.total),
            "total_with_tax": str(self.total_with_tax) if self.total_with_tax is not None else None,
            "ddi_id": self.ddi_id,
            "sync_status": self.sync_status.value,
            "external_invoice_id": self.external_invoice_id,
            "sync_attempts": self.sync_attempts,
            "sync_error": self.sync_error,
        }


@dataclass
class BalanceMovement:
    """Append-only record of one balance change."""

    company_id: str
    amount: Decimal
    balance_after: Decimal
    reason: str
    created_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


# =============================================================================
# Storage Interfaces
# =============================================================================


class CompanyStore(ABC):
    """Abstract company storage interface."""

    @abstractmethod
    async def create(self, company: Company) -> None:
        """Create company."""
        pass

    @abstractmethod
    async def get(self, company_id: str) -> Optional[Company]:
        """Get company by ID."""
        pass

    @abstractmethod
    async def adjust_balance(
        self,
        company_id: str,
        delta: Decimal,
        minimum: Optional[Decimal] = None,
    ) -> Optional[Decimal]:
        """
        Atomically add delta to the balance.

        Returns the new balance, or None when the company is missing or the
        result would fall below ``minimum``.
        """
        pass

    @abstractmethod
    async def set_renewal_anchor(self, company_id: str, anchor: Optional[date]) -> None:
        """Move the consolidated renewal anchor."""
        pass

    @abstractmethod
    async def add_balance_movement(self, movement: BalanceMovement) -> None:
        """Record a balance movement."""
        pass

    @abstractmethod
    async def list_balance_movements(self, company_id: str) -> List[BalanceMovement]:
        """List balance movements, oldest first."""
        pass


class InvoiceStore(ABC):
    """Abstract invoice storage interface."""

    @abstractmethod
    async def create(self, invoice: Invoice) -> None:
        """Create invoice."""
        pass

    @abstractmethod
    async def get(self, invoice_id: str) -> Optional[Invoice]:
        """Get invoice by ID."""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        invoice_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Invoice]:
        """Apply changes only if every expected field still holds."""
        pass

    @abstractmethod
    async def claim_sync(
        self,
        invoice_id: str,
        now: datetime,
        lease: timedelta,
    ) -> Optional[Invoice]:
        """
        Take the sync lease on a pending invoice.

        Succeeds only while sync_status is pending and no unexpired lease
        is held. Returns the claimed invoice or None.
        """
        pass

    @abstractmethod
    async def list_for_company(self, company_id: str) -> List[Invoice]:
        """List invoices for a company, newest first."""
        pass

    @abstractmethod
    async def list_by_sync_status(self, sync_status: SyncStatus) -> List[Invoice]:
        """List invoices in a sync status."""
        pass


class InvoiceListener(ABC):
    """Receives invoice lifecycle triggers."""

    @abstractmethod
    async def on_invoice_created(self, invoice: Invoice, now: datetime) -> bool:
        """Handle a newly created invoice. Returns True when acted upon."""
        pass


# Number helpers

def invoice_number(prefix: str, company_id: str, now: datetime) -> str:
    """Build a local invoice number such as ``DID-REN-{company}-{YmdHis}``."""
    return f"{prefix}-{company_id}-{now.strftime('%Y%m%d%H%M%S')}"


__all__ = [
    "CENT",
    "quantize_money",
    "BillingMethod",
    "RenewalMode",
    "InvoiceType",
    "InvoiceStatus",
    "SyncStatus",
    "SYNCABLE_TYPES",
    "is_syncable",
    "Company",
    "Invoice",
    "BalanceMovement",
    "CompanyStore",
    "InvoiceStore",
    "InvoiceListener",
    "invoice_number",
]
