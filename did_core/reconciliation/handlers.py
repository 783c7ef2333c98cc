"""
Paid Invoice Handlers

One handler per invoice type applies the state change implied by an
externally confirmed payment. Handlers raise DomainError on any
inconsistency; they never correct ownership on their own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from did_core.billing.balance import BalanceService
from did_core.billing.base import CompanyStore, Invoice, InvoiceType, RenewalMode
from did_core.billing.periods import add_months
from did_core.errors import (
    ConflictError,
    DomainError,
    NotFoundError,
    OwnershipMismatchError,
    ValidationError,
)
from did_core.inventory.base import Ddi, DdiStore, InventoryStatus
from did_core.inventory.state_machine import InventoryStateMachine
from did_core.notifications import NotificationSender, NotificationType, notify_best_effort

logger = structlog.get_logger(__name__)


@dataclass
class HandlerOutcome:
    """What a handler did with a paid invoice."""

    invoice_id: str
    invoice_type: InvoiceType
    actions: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


class InvoiceTypeHandler(ABC):
    """Applies a paid invoice of one type."""

    invoice_type: InvoiceType

    @abstractmethod
    async def handle(self, invoice: Invoice, now: datetime) -> HandlerOutcome:
        """Apply the payment. Raises DomainError on inconsistency."""
        pass


async def _linked_ddis(ddis: DdiStore, invoice: Invoice, allow_unowned: bool = False) -> List[Ddi]:
    """
    Load the DIDs an invoice covers and check they belong to its company.

    ``allow_unowned`` lets a DID with no owner through; only a purchase
    may still assign it.
    """
    ddi_ids = invoice.linked_ddi_ids
    if not ddi_ids:
        raise DomainError(
            f"Invoice {invoice.id} has no linked DDI",
            DomainError.NO_DDI_LINKED,
        )

    loaded = []
    for ddi_id in ddi_ids:
        ddi = await ddis.get(ddi_id)
        if ddi is None:
            raise DomainError(f"DDI {ddi_id} not found", DomainError.DDI_NOT_FOUND)
        if ddi.company_id is None and allow_unowned:
            loaded.append(ddi)
            continue
        if ddi.company_id != invoice.company_id:
            raise DomainError(
                f"DDI {ddi.ddi} belongs to company {ddi.company_id}, "
                f"invoice belongs to {invoice.company_id}",
                DomainError.COMPANY_MISMATCH,
            )
        loaded.append(ddi)
    return loaded


class BalanceTopUpHandler(InvoiceTypeHandler):
    """Credits the company balance."""

    invoice_type = InvoiceType.BALANCE_TOPUP

    def __init__(self, balance: BalanceService):
        self._balance = balance

    async def handle(self, invoice: Invoice, now: datetime) -> HandlerOutcome:
        amount = invoice.amount
        if amount <= 0:
            raise DomainError(
                f"Top-up invoice {invoice.id} has non-positive amount {amount}",
                DomainError.INVALID_AMOUNT,
            )

        try:
            credited = await self._balance.increment_balance(
                invoice.company_id,
                amount,
                reason=f"Top-up invoice {invoice.number}",
                now=now,
            )
        except Exception as e:
            raise DomainError(
                f"Balance update failed for invoice {invoice.id}: {e}",
                DomainError.BALANCE_UPDATE_FAILED,
            ) from e

        if not credited:
            raise DomainError(
                f"Balance update refused for invoice {invoice.id}",
                DomainError.BALANCE_UPDATE_FAILED,
            )

        logger.info("topup_credited", invoice_id=invoice.id, company_id=invoice.company_id, amount=str(amount))
        return HandlerOutcome(
            invoice_id=invoice.id,
            invoice_type=self.invoice_type,
            actions=["balance_incremented"],
            details={"amount": str(amount)},
        )


class DidPurchaseHandler(InvoiceTypeHandler):
    """Ensures the purchased DID is assigned to the paying company."""

    invoice_type = InvoiceType.DID_PURCHASE

    def __init__(self, ddis: DdiStore, state_machine: InventoryStateMachine):
        self._ddis = ddis
        self._state_machine = state_machine

    async def handle(self, invoice: Invoice, now: datetime) -> HandlerOutcome:
        outcome = HandlerOutcome(invoice_id=invoice.id, invoice_type=self.invoice_type)

        for ddi in await _linked_ddis(self._ddis, invoice, allow_unowned=True):
            if ddi.inventory_status in (InventoryStatus.ASSIGNED, InventoryStatus.SUSPENDED):
                outcome.actions.append("already_assigned")
                continue
            await self._state_machine.confirm_assignment(ddi.id, invoice.company_id, now)
            outcome.actions.append("assigned")
            logger.info("ddi_assigned_on_payment", invoice_id=invoice.id, ddi_id=ddi.id)

        return outcome


class DidRenewalHandler(InvoiceTypeHandler):
    """Advances renewal dates of an invoiced renewal cycle."""

    invoice_type = InvoiceType.DID_RENEWAL

    def __init__(
        self,
        ddis: DdiStore,
        companies: CompanyStore,
        state_machine: InventoryStateMachine,
    ):
        self._ddis = ddis
        self._companies = companies
        self._state_machine = state_machine

    async def handle(self, invoice: Invoice, now: datetime) -> HandlerOutcome:
        linked = await _linked_ddis(self._ddis, invoice)
        company = await self._companies.get(invoice.company_id)
        outcome = HandlerOutcome(invoice_id=invoice.id, invoice_type=self.invoice_type)

        new_anchor = None
        if (
            company is not None
            and company.did_renewal_mode == RenewalMode.CONSOLIDATED
            and company.did_renewal_anchor is not None
        ):
            new_anchor = add_months(company.did_renewal_anchor, 1)
            targets = [(ddi, new_anchor) for ddi in linked]
        else:
            targets = [(ddi, add_months(ddi.next_renewal_at or now.date(), 1)) for ddi in linked]

        try:
            moved = await self._state_machine.advance_renewals(invoice.company_id, targets)
        except OwnershipMismatchError as e:
            raise DomainError(e.message, DomainError.COMPANY_MISMATCH) from e
        except (ConflictError, NotFoundError) as e:
            raise DomainError(
                f"Renewal of invoice {invoice.id} not applied: {e.message}",
                DomainError.RENEWAL_NOT_APPLIED,
            ) from e

        if new_anchor is not None:
            try:
                await self._companies.set_renewal_anchor(company.id, new_anchor)
            except Exception:
                await self._state_machine.restore_renewals(invoice.company_id, linked)
                raise
            outcome.actions.append("anchor_advanced")
            outcome.details["next_renewal_at"] = new_anchor.isoformat()
        else:
            outcome.actions.append("renewal_advanced")
            for ddi in moved:
                outcome.details[ddi.id] = ddi.next_renewal_at.isoformat()

        logger.info("renewal_paid", invoice_id=invoice.id, ddis=len(moved))
        return outcome


class StandardInvoiceHandler(InvoiceTypeHandler):
    """Postpaid service stays active regardless of payment; audit only."""

    invoice_type = InvoiceType.STANDARD

    async def handle(self, invoice: Invoice, now: datetime) -> HandlerOutcome:
        logger.info(
            "standard_invoice_paid",
            invoice_id=invoice.id,
            company_id=invoice.company_id,
            amount=str(invoice.amount),
        )
        return HandlerOutcome(
            invoice_id=invoice.id,
            invoice_type=self.invoice_type,
            actions=["payment_recorded"],
            details={
                "company_id": invoice.company_id,
                "amount": str(invoice.amount),
                "paid_at": now.isoformat(),
            },
        )


class DidRenewalOverdueHandler:
    """Releases the DIDs of a renewal invoice that went unpaid."""

    def __init__(
        self,
        ddis: DdiStore,
        state_machine: InventoryStateMachine,
        notifier: Optional[NotificationSender] = None,
    ):
        self._ddis = ddis
        self._state_machine = state_machine
        self._notifier = notifier

    async def handle(self, invoice: Invoice, now: datetime) -> List[str]:
        """Release covered DIDs. Returns the IDs released."""
        if invoice.invoice_type != InvoiceType.DID_RENEWAL:
            raise ValidationError(f"Invoice {invoice.id} is not a renewal invoice")

        candidates = await self._candidates(invoice, now)
        released: List[str] = []

        for ddi in candidates:
            if ddi.company_id != invoice.company_id:
                logger.warning("overdue_ddi_owner_changed", ddi_id=ddi.id, invoice_id=invoice.id)
                continue
            if ddi.inventory_status not in (InventoryStatus.ASSIGNED, InventoryStatus.RESERVED):
                continue
            await self._state_machine.release(ddi.id)
            released.append(ddi.id)

        logger.info("overdue_renewal_released", invoice_id=invoice.id, released=len(released))
        if released:
            await notify_best_effort(
                self._notifier,
                invoice.company_id,
                NotificationType.DID_RELEASED_OVERDUE,
                {"invoice_id": invoice.id, "ddi_ids": released},
            )
        return released

    async def _candidates(self, invoice: Invoice, now: datetime) -> List[Ddi]:
        if invoice.linked_ddi_ids:
            loaded = [await self._ddis.get(ddi_id) for ddi_id in invoice.linked_ddi_ids]
            return [d for d in loaded if d is not None]

        cutoff = invoice.period_end or invoice.created_at.date()
        return [
            d for d in await self._ddis.list_for_company(invoice.company_id, [InventoryStatus.ASSIGNED])
            if d.next_renewal_at is not None
            and d.next_renewal_at <= cutoff
            and d.monthly_price > 0
        ]


__all__ = [
    "HandlerOutcome",
    "InvoiceTypeHandler",
    "BalanceTopUpHandler",
    "DidPurchaseHandler",
    "DidRenewalHandler",
    "StandardInvoiceHandler",
    "DidRenewalOverdueHandler",
]
