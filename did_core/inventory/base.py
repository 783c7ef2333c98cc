"""
Inventory Base Types Module

This module defines the core types for DID inventory: the phone number
resource itself, postpaid acquisition orders, the suspension audit log
and the storage interfaces the state machine relies on.
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from did_core.errors import ValidationError


E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")


def validate_e164(number: str) -> str:
    """Return the number if it is a well formed E.164 string."""
    if not E164_PATTERN.match(number or ""):
        raise ValidationError(f"Malformed phone number: {number!r}", field="ddi")
    return number


# =============================================================================
# Enums
# =============================================================================


class InventoryStatus(str, Enum):
    """Inventory status of a DID."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    ASSIGNED = "assigned"
    SUSPENDED = "suspended"
    DISABLED = "disabled"


class OrderStatus(str, Enum):
    """Status of a postpaid DID order."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != OrderStatus.PENDING_APPROVAL


class SuspensionAction(str, Enum):
    """Actions recorded in the suspension log."""

    SUSPEND = "suspend"
    UNSUSPEND = "unsuspend"
    SUSPEND_DDI = "suspend_ddi"
    UNSUSPEND_DDI = "unsuspend_ddi"


# =============================================================================
# Records
# =============================================================================


@dataclass
class Ddi:
    """A phone number held in inventory."""

    ddi: str
    brand_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    inventory_status: InventoryStatus = InventoryStatus.AVAILABLE
    company_id: Optional[str] = None
    reserved_for_company_id: Optional[str] = None
    reserved_until: Optional[datetime] = None

    # Pricing
    monthly_price: Decimal = Decimal("0.00")
    setup_price: Decimal = Decimal("0.00")

    # Lifecycle
    assigned_at: Optional[datetime] = None
    next_renewal_at: Optional[date] = None
    is_byon: bool = False

    def __post_init__(self) -> None:
        validate_e164(self.ddi)
        if self.monthly_price < 0 or self.setup_price < 0:
            raise ValidationError("DID prices must be non-negative", field="price")

    @property
    def is_available(self) -> bool:
        return self.inventory_status == InventoryStatus.AVAILABLE

    @property
    def is_reserved(self) -> bool:
        return self.inventory_status == InventoryStatus.RESERVED

    @property
    def is_assigned(self) -> bool:
        return self.inventory_status == InventoryStatus.ASSIGNED

    def reservation_expired(self, now: datetime) -> bool:
        """Check whether a reservation window has lapsed."""
        return (
            self.is_reserved
            and self.reserved_until is not None
            and self.reserved_until < now
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "ddi": self.ddi,
            "brand_id": self.brand_id,
            "inventory_status": self.inventory_status.value,
            "company_id": self.company_id,
            "reserved_for_company_id": self.reserved_for_company_id,
            "reserved_until": self.reserved_until.isoformat() if self.reserved_until else None,
            "monthly_price": str(self.monthly_price),
            "setup_price": str(self.setup_price),
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "next_renewal_at": self.next_renewal_at.isoformat() if self.next_renewal_at else None,
            "is_byon": self.is_byon,
        }


@dataclass
class DidOrder:
    """A postpaid acquisition request, bound to one DID reservation."""

    ddi_id: str
    company_id: str
    requested_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OrderStatus = OrderStatus.PENDING_APPROVAL

    # Price snapshot taken at request time
    setup_fee: Decimal = Decimal("0.00")
    monthly_fee: Decimal = Decimal("0.00")

    approved_at: Optional[datetime] = None
    approved_by_admin_id: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by_admin_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    expired_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING_APPROVAL


@dataclass
class SuspensionLog:
    """Append-only suspension audit row."""

    action: SuspensionAction
    company_id: str
    created_at: datetime
    ddi_id: Optional[str] = None
    reason: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


# =============================================================================
# Storage Interfaces
# =============================================================================


class DdiStore(ABC):
    """Abstract DID storage interface."""

    @abstractmethod
    async def create(self, ddi: Ddi) -> None:
        """Create DID."""
        pass

    @abstractmethod
    async def get(self, ddi_id: str) -> Optional[Ddi]:
        """Get DID by ID."""
        pass

    @abstractmethod
    async def get_by_number(self, number: str) -> Optional[Ddi]:
        """Get DID by E.164 number."""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        ddi_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Ddi]:
        """
        Apply changes only if every expected field still holds.

        Returns the updated DID, or None when the DID is missing or any
        expected value no longer matches.
        """
        pass

    @abstractmethod
    async def list_due_for_renewal(self, on_date: date) -> List[Ddi]:
        """List assigned, priced DIDs whose renewal date is on or before a date."""
        pass

    @abstractmethod
    async def list_for_company(
        self,
        company_id: str,
        statuses: Optional[Iterable[InventoryStatus]] = None,
    ) -> List[Ddi]:
        """List DIDs owned by a company."""
        pass

    @abstractmethod
    async def list_lapsed_reservations(
        self,
        now: datetime,
        company_id: Optional[str] = None,
    ) -> List[Ddi]:
        """List reserved DIDs whose reservation window ended before ``now``."""
        pass


class DidOrderStore(ABC):
    """Abstract DID order storage interface."""

    @abstractmethod
    async def create(self, order: DidOrder) -> None:
        """Create order."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[DidOrder]:
        """Get order by ID."""
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[DidOrder]:
        """Atomically move an order from an expected status to a new one."""
        pass

    @abstractmethod
    async def find_pending_by_ddi(self, ddi_id: str) -> Optional[DidOrder]:
        """Get the pending order holding a DID, if any."""
        pass

    @abstractmethod
    async def list_pending(self, company_id: Optional[str] = None) -> List[DidOrder]:
        """List orders awaiting approval."""
        pass

    @abstractmethod
    async def list_expired(self, now: datetime, company_id: Optional[str] = None) -> List[DidOrder]:
        """List pending orders whose DID reservation ended before ``now``."""
        pass


class SuspensionLogStore(ABC):
    """Abstract suspension log storage interface."""

    @abstractmethod
    async def append(self, entry: SuspensionLog) -> None:
        """Append log entry."""
        pass

    @abstractmethod
    async def list_for_company(self, company_id: str) -> List[SuspensionLog]:
        """List log entries for a company, oldest first."""
        pass


__all__ = [
    "validate_e164",
    "InventoryStatus",
    "OrderStatus",
    "SuspensionAction",
    "Ddi",
    "DidOrder",
    "SuspensionLog",
    "DdiStore",
    "DidOrderStore",
    "SuspensionLogStore",
]
