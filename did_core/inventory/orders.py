"""
DID Orders

Postpaid acquisition flow. A customer order reserves the DID for a
limited window and snapshots its prices; an administrator then approves
the order (assigning the DID and raising the purchase invoice) or rejects
it (releasing the reservation). Orders left pending past the reservation
window are expired by the reservation reaper.

Approval and expiry are arbitrated by the order status transition: only
one of them can move an order out of pending_approval. Order status only
moves forward. Approval assigns the DID first and releases it again if
the order was resolved by someone else in the meantime; an order whose
DID can no longer be assigned is rejected with ``assignment_failed``.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import structlog

from did_core.billing.base import (
    BillingMethod,
    CompanyStore,
    Invoice,
    InvoiceListener,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    RenewalMode,
    SyncStatus,
    invoice_number,
    quantize_money,
)
from did_core.billing.periods import FirstPeriodCalculator
from did_core.errors import (
    ConflictError,
    DomainError,
    NotFoundError,
    OwnershipMismatchError,
    ValidationError,
)
from did_core.inventory.base import DdiStore, DidOrder, DidOrderStore, OrderStatus
from did_core.inventory.state_machine import InventoryStateMachine
from did_core.notifications import NotificationSender, NotificationType, notify_best_effort

logger = structlog.get_logger(__name__)


RESERVATION_HOURS = 24

ASSIGNMENT_FAILED = "assignment_failed"


class DidOrderService:
    """Creates postpaid DID orders."""

    def __init__(
        self,
        ddis: DdiStore,
        orders: DidOrderStore,
        companies: CompanyStore,
        state_machine: InventoryStateMachine,
        notifier: Optional[NotificationSender] = None,
        reservation_ttl: timedelta = timedelta(hours=RESERVATION_HOURS),
    ):
        self._ddis = ddis
        self._orders = orders
        self._companies = companies
        self._state_machine = state_machine
        self._notifier = notifier
        self._reservation_ttl = reservation_ttl

    async def create_order(self, company_id: str, ddi_id: str, now: datetime) -> DidOrder:
        """
        Reserve a DID for a postpaid company and record the order.

        Raises:
            NotFoundError: unknown company or DID
            DomainError: company is not postpaid
            ValidationError: DID belongs to another brand
            ConflictError: DID not available or already ordered
        """
        company = await self._companies.get(company_id)
        if company is None:
            raise NotFoundError("Company", company_id)
        if company.billing_method != BillingMethod.POSTPAID:
            raise DomainError(
                "Only postpaid companies can order DIDs for approval",
                DomainError.BILLING_METHOD_NOT_ALLOWED,
            )

        ddi = await self._ddis.get(ddi_id)
        if ddi is None:
            raise NotFoundError("DDI", ddi_id)
        if ddi.brand_id != company.brand_id:
            raise ValidationError("DDI is not offered to this company's brand", field="ddi_id")
        if await self._orders.find_pending_by_ddi(ddi_id) is not None:
            raise ConflictError(f"DDI {ddi.ddi} already has a pending order")

        reserved = await self._state_machine.reserve(ddi_id, company_id, now, self._reservation_ttl)

        order = DidOrder(
            ddi_id=ddi_id,
            company_id=company_id,
            requested_at=now,
            setup_fee=reserved.setup_price,
            monthly_fee=reserved.monthly_price,
        )
        try:
            await self._orders.create(order)
        except Exception:
            logger.exception("order_create_failed", ddi_id=ddi_id, company_id=company_id)
            await self._state_machine.release(ddi_id)
            raise

        logger.info(
            "order_created",
            order_id=order.id,
            ddi_id=ddi_id,
            company_id=company_id,
            reserved_until=reserved.reserved_until.isoformat(),
        )
        await notify_best_effort(
            self._notifier,
            company_id,
            NotificationType.DID_ORDER_REQUESTED,
            {"order_id": order.id, "ddi": reserved.ddi},
        )
        return order


class DidOrderApprovalService:
    """Administrative approval and rejection of pending orders."""

    def __init__(
        self,
        ddis: DdiStore,
        orders: DidOrderStore,
        companies: CompanyStore,
        invoices: InvoiceStore,
        state_machine: InventoryStateMachine,
        calculator: Optional[FirstPeriodCalculator] = None,
        listener: Optional[InvoiceListener] = None,
        notifier: Optional[NotificationSender] = None,
    ):
        self._ddis = ddis
        self._orders = orders
        self._companies = companies
        self._invoices = invoices
        self._state_machine = state_machine
        self._calculator = calculator or FirstPeriodCalculator()
        self._listener = listener
        self._notifier = notifier

    async def _pending_order(self, order_id: str) -> DidOrder:
        order = await self._orders.get(order_id)
        if order is None:
            raise NotFoundError("DidOrder", order_id)
        if not order.is_pending:
            raise ConflictError(
                f"Order {order_id} is already {order.status.value}",
                current_state=order.status.value,
            )
        return order

    async def approve(self, order_id: str, admin_id: str, now: datetime) -> DidOrder:
        """
        Approve a pending order: assign the DID and raise its purchase invoice.

        Raises:
            ConflictError: order not pending, or reservation no longer held
        """
        order = await self._pending_order(order_id)

        ddi = await self._ddis.get(order.ddi_id)
        if ddi is None:
            await self._reject_unassignable(order, admin_id, now)
            raise NotFoundError("DDI", order.ddi_id)
        if not ddi.is_reserved or ddi.reserved_for_company_id != order.company_id:
            await self._reject_unassignable(order, admin_id, now)
            raise ConflictError(
                f"DDI {ddi.ddi} is no longer reserved for this order",
                current_state=ddi.inventory_status.value,
            )

        company = await self._companies.get(order.company_id)
        if company is None:
            raise NotFoundError("Company", order.company_id)

        period = self._calculator.calculate(
            company.did_renewal_mode,
            order.monthly_fee,
            now.date(),
            company.did_renewal_anchor,
        )
        try:
            await self._state_machine.confirm_assignment(
                order.ddi_id,
                order.company_id,
                now,
                next_renewal_at=period.next_renewal_at,
            )
        except (ConflictError, OwnershipMismatchError, NotFoundError):
            await self._reject_unassignable(order, admin_id, now)
            raise

        approved = await self._orders.transition(
            order_id,
            expected=OrderStatus.PENDING_APPROVAL,
            new_status=OrderStatus.APPROVED,
            changes={"approved_at": now, "approved_by_admin_id": admin_id},
        )
        if approved is None:
            # Expired or rejected while the DID was being assigned
            await self._state_machine.release(order.ddi_id)
            logger.warning("order_resolved_during_approval", order_id=order_id, ddi_id=order.ddi_id)
            raise ConflictError(f"Order {order_id} was resolved concurrently")

        if company.did_renewal_mode == RenewalMode.CONSOLIDATED and company.did_renewal_anchor is None:
            await self._companies.set_renewal_anchor(company.id, period.next_renewal_at)

        total = quantize_money(order.setup_fee + period.amount)
        if total > Decimal("0"):
            invoice = Invoice(
                number=invoice_number("DID-ORDER", company.id, now),
                company_id=company.id,
                brand_id=company.brand_id,
                invoice_type=InvoiceType.DID_PURCHASE,
                created_at=now,
                status=InvoiceStatus.CREATED,
                total=total,
                total_with_tax=total,
                ddi_id=order.ddi_id,
                period_end=period.next_renewal_at,
                notes=f"DID order {order.id}",
                sync_status=SyncStatus.PENDING,
            )
            await self._invoices.create(invoice)
            if self._listener is not None:
                await self._listener.on_invoice_created(invoice, now)

        logger.info(
            "order_approved",
            order_id=order_id,
            admin_id=admin_id,
            ddi_id=order.ddi_id,
            total=str(total),
        )
        await notify_best_effort(
            self._notifier,
            order.company_id,
            NotificationType.DID_ORDER_APPROVED,
            {"order_id": order_id, "ddi": ddi.ddi},
        )
        return approved

    async def _reject_unassignable(self, order: DidOrder, admin_id: str, now: datetime) -> None:
        rejected = await self._orders.transition(
            order.id,
            expected=OrderStatus.PENDING_APPROVAL,
            new_status=OrderStatus.REJECTED,
            changes={
                "rejected_at": now,
                "rejection_reason": ASSIGNMENT_FAILED,
                "rejected_by_admin_id": admin_id,
            },
        )
        if rejected is None:
            return
        await self._release_reservation(order)
        logger.warning("order_assignment_failed", order_id=order.id, ddi_id=order.ddi_id)

    async def _release_reservation(self, order: DidOrder) -> None:
        ddi = await self._ddis.get(order.ddi_id)
        if ddi is not None and ddi.is_reserved and ddi.reserved_for_company_id == order.company_id:
            await self._state_machine.release(order.ddi_id)

    async def reject(
        self,
        order_id: str,
        admin_id: str,
        reason: str,
        now: datetime,
    ) -> DidOrder:
        """Reject a pending order and release its reservation if still held."""
        order = await self._pending_order(order_id)

        rejected = await self._orders.transition(
            order_id,
            expected=OrderStatus.PENDING_APPROVAL,
            new_status=OrderStatus.REJECTED,
            changes={
                "rejected_at": now,
                "rejection_reason": reason,
                "rejected_by_admin_id": admin_id,
            },
        )
        if rejected is None:
            raise ConflictError(f"Order {order_id} was resolved concurrently")

        await self._release_reservation(order)

        logger.info("order_rejected", order_id=order_id, admin_id=admin_id, reason=reason)
        await notify_best_effort(
            self._notifier,
            order.company_id,
            NotificationType.DID_ORDER_REJECTED,
            {"order_id": order_id, "reason": reason},
        )
        return rejected


__all__ = [
    "RESERVATION_HOURS",
    "ASSIGNMENT_FAILED",
    "DidOrderService",
    "DidOrderApprovalService",
]
