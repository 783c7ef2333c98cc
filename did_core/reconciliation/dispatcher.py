"""
Payment Reconciliation Dispatcher

Entry point for invoice lifecycle triggers and externally confirmed
payments.

Creation triggers pass through a gate that only reacts to new invoices,
invoices whose status just became ``created``, and invoices still
waiting for sync; this keeps the dispatcher from reacting to its own
writes. Paid notifications claim the invoice with a status
compare-and-set before dispatching, so duplicate or concurrent deliveries
apply the side effects once. Dispatch goes through a registry keyed by
InvoiceType that must cover every type.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog

from did_core.billing.balance import BalanceService
from did_core.billing.base import (
    CompanyStore,
    Invoice,
    InvoiceListener,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    SyncStatus,
)
from did_core.errors import ConflictError, NotFoundError
from did_core.inventory.base import DdiStore
from did_core.inventory.state_machine import InventoryStateMachine
from did_core.notifications import NotificationSender
from did_core.reconciliation.handlers import (
    BalanceTopUpHandler,
    DidPurchaseHandler,
    DidRenewalHandler,
    DidRenewalOverdueHandler,
    HandlerOutcome,
    InvoiceTypeHandler,
    StandardInvoiceHandler,
)
from did_core.sync.engine import BillingSyncEngine, can_retry

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of a paid notification."""

    invoice_id: str
    duplicate: bool = False
    outcome: Optional[HandlerOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "invoice_id": self.invoice_id,
            "duplicate": self.duplicate,
            "actions": self.outcome.actions if self.outcome else [],
        }


def should_trigger(invoice: Invoice, previous: Optional[Invoice] = None) -> bool:
    """
    Decide whether an invoice save should be acted on.

    Honored when the invoice is new, when its status just became created,
    or when its sync is still pending.
    """
    if previous is None:
        return True
    if invoice.status == InvoiceStatus.CREATED and previous.status != InvoiceStatus.CREATED:
        return True
    return invoice.sync_status == SyncStatus.PENDING


class PaymentReconciliationDispatcher(InvoiceListener):
    """Routes invoice triggers to sync and paid invoices to their handler."""

    def __init__(
        self,
        invoices: InvoiceStore,
        handlers: Mapping[InvoiceType, InvoiceTypeHandler],
        sync_engine: Optional[BillingSyncEngine] = None,
        overdue_handler: Optional[DidRenewalOverdueHandler] = None,
        sync_inline: bool = False,
    ):
        missing = [t.value for t in InvoiceType if t not in handlers]
        if missing:
            raise ValueError(f"No paid handler registered for invoice types: {', '.join(missing)}")
        for invoice_type, handler in handlers.items():
            if handler.invoice_type != invoice_type:
                raise ValueError(
                    f"Handler {type(handler).__name__} registered for {invoice_type.value}"
                )

        self._invoices = invoices
        self._handlers: Dict[InvoiceType, InvoiceTypeHandler] = dict(handlers)
        self._sync_engine = sync_engine
        self._overdue_handler = overdue_handler
        self._sync_inline = sync_inline

    @classmethod
    def create(
        cls,
        invoices: InvoiceStore,
        ddis: DdiStore,
        companies: CompanyStore,
        state_machine: InventoryStateMachine,
        balance: BalanceService,
        sync_engine: Optional[BillingSyncEngine] = None,
        notifier: Optional[NotificationSender] = None,
        sync_inline: bool = False,
    ) -> "PaymentReconciliationDispatcher":
        """Build a dispatcher with the standard handler for every invoice type."""
        handlers: Dict[InvoiceType, InvoiceTypeHandler] = {
            InvoiceType.STANDARD: StandardInvoiceHandler(),
            InvoiceType.DID_PURCHASE: DidPurchaseHandler(ddis, state_machine),
            InvoiceType.DID_RENEWAL: DidRenewalHandler(ddis, companies, state_machine),
            InvoiceType.BALANCE_TOPUP: BalanceTopUpHandler(balance),
        }
        return cls(
            invoices,
            handlers,
            sync_engine=sync_engine,
            overdue_handler=DidRenewalOverdueHandler(ddis, state_machine, notifier),
            sync_inline=sync_inline,
        )

    # -------------------------------------------------------------------------
    # Creation / update triggers
    # -------------------------------------------------------------------------

    async def on_invoice_created(self, invoice: Invoice, now: datetime) -> bool:
        return await self.on_invoice_saved(invoice, None, now)

    async def on_invoice_saved(
        self,
        invoice: Invoice,
        previous: Optional[Invoice],
        now: datetime,
    ) -> bool:
        """Queue a sync for a created or updated invoice when the gate allows it."""
        if not should_trigger(invoice, previous):
            logger.debug("invoice_trigger_ignored", invoice_id=invoice.id)
            return False
        if self._sync_engine is None or not can_retry(invoice):
            return False

        await self._sync_engine.enqueue(invoice, now)
        if self._sync_inline:
            await self._sync_engine.sync(invoice.id, now)
        return True

    # -------------------------------------------------------------------------
    # Payment events
    # -------------------------------------------------------------------------

    async def reconcile_payment(self, invoice_id: str, now: datetime) -> ReconciliationResult:
        """
        Mark an invoice paid and apply its handler, once.

        A failing handler restores the previous status and re-raises, so
        the payment notification can be delivered again.
        """
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.is_paid:
            logger.info("payment_duplicate", invoice_id=invoice_id)
            return ReconciliationResult(invoice_id=invoice_id, duplicate=True)

        previous_status = invoice.status
        claimed = await self._invoices.compare_and_set(
            invoice_id,
            expected={"status": previous_status},
            changes={"status": InvoiceStatus.PAID, "paid_at": now},
        )
        if claimed is None:
            logger.info("payment_claimed_concurrently", invoice_id=invoice_id)
            return ReconciliationResult(invoice_id=invoice_id, duplicate=True)

        handler = self._handlers[claimed.invoice_type]
        try:
            outcome = await handler.handle(claimed, now)
        except Exception:
            await self._invoices.compare_and_set(
                invoice_id,
                expected={"status": InvoiceStatus.PAID},
                changes={"status": previous_status, "paid_at": None},
            )
            logger.exception(
                "payment_handler_failed",
                invoice_id=invoice_id,
                invoice_type=claimed.invoice_type.value,
            )
            raise

        logger.info(
            "payment_reconciled",
            invoice_id=invoice_id,
            invoice_type=claimed.invoice_type.value,
            actions=outcome.actions,
        )
        return ReconciliationResult(invoice_id=invoice_id, outcome=outcome)

    async def handle_overdue(self, invoice_id: str, now: datetime) -> List[str]:
        """
        Mark an unpaid invoice overdue and release what it covered.

        Returns the IDs of released DIDs.
        """
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        if invoice.is_paid:
            raise ConflictError(f"Invoice {invoice_id} is already paid", current_state="paid")
        if invoice.status == InvoiceStatus.OVERDUE:
            return []

        marked = await self._invoices.compare_and_set(
            invoice_id,
            expected={"status": invoice.status},
            changes={"status": InvoiceStatus.OVERDUE},
        )
        if marked is None:
            raise ConflictError(f"Invoice {invoice_id} changed concurrently")

        logger.info("invoice_overdue", invoice_id=invoice_id, invoice_type=invoice.invoice_type.value)
        if marked.invoice_type != InvoiceType.DID_RENEWAL or self._overdue_handler is None:
            return []
        return await self._overdue_handler.handle(marked, now)


__all__ = [
    "ReconciliationResult",
    "should_trigger",
    "PaymentReconciliationDispatcher",
]
