"""Unit tests for postpaid DID orders and their approval."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from did_core.billing.base import BillingMethod, InvoiceStatus, InvoiceType, RenewalMode
from did_core.errors import ConflictError, DomainError, ValidationError
from did_core.inventory.base import Ddi, InventoryStatus, OrderStatus
from did_core.inventory.orders import ASSIGNMENT_FAILED
from did_core.notifications import NotificationType


class TestCreateOrder:
    """Tests for order intake."""

    @pytest.mark.asyncio
    async def test_reserves_and_snapshots_prices(self, engine, notifier, postpaid_company, make_ddi, now):
        ddi = await make_ddi(monthly_price="10.00", setup_price="5.00")

        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        assert order.status == OrderStatus.PENDING_APPROVAL
        assert order.setup_fee == Decimal("5.00")
        assert order.monthly_fee == Decimal("10.00")

        stored = await engine.ddis.get(ddi.id)
        assert stored.inventory_status == InventoryStatus.RESERVED
        assert stored.reserved_for_company_id == postpaid_company.id
        assert notifier.sent[0]["type"] == NotificationType.DID_ORDER_REQUESTED

    @pytest.mark.asyncio
    async def test_prepaid_rejected(self, engine, prepaid_company, make_ddi, now):
        ddi = await make_ddi()

        with pytest.raises(DomainError) as exc_info:
            await engine.order_service.create_order(prepaid_company.id, ddi.id, now)

        assert exc_info.value.code == DomainError.BILLING_METHOD_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_other_brand_rejected(self, engine, postpaid_company, now):
        ddi = Ddi(ddi="+34919999999", brand_id="brand-2")
        await engine.ddis.create(ddi)

        with pytest.raises(ValidationError):
            await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

    @pytest.mark.asyncio
    async def test_second_order_rejected(self, engine, make_company, postpaid_company, make_ddi, now):
        other = await make_company(billing_method=BillingMethod.POSTPAID, name="Other")
        ddi = await make_ddi()
        await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        with pytest.raises(ConflictError):
            await engine.order_service.create_order(other.id, ddi.id, now)


class TestApproval:
    """Tests for approving and rejecting orders."""

    @pytest.mark.asyncio
    async def test_approve_assigns_and_invoices(self, engine, notifier, postpaid_company, make_ddi, now):
        ddi = await make_ddi(monthly_price="10.00", setup_price="5.00")
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        approved = await engine.approvals.approve(order.id, "admin-1", now)

        assert approved.status == OrderStatus.APPROVED
        assert approved.approved_by_admin_id == "admin-1"

        stored = await engine.ddis.get(ddi.id)
        assert stored.inventory_status == InventoryStatus.ASSIGNED
        assert stored.company_id == postpaid_company.id
        assert stored.next_renewal_at == date(2026, 2, 15)

        invoices = await engine.invoices.list_for_company(postpaid_company.id)
        assert len(invoices) == 1
        assert invoices[0].invoice_type == InvoiceType.DID_PURCHASE
        assert invoices[0].status == InvoiceStatus.CREATED
        assert invoices[0].amount == Decimal("15.00")
        assert invoices[0].ddi_id == ddi.id
        assert invoices[0].number.startswith("DID-ORDER-")
        assert notifier.sent[-1]["type"] == NotificationType.DID_ORDER_APPROVED

    @pytest.mark.asyncio
    async def test_free_did_has_no_invoice(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi(monthly_price="0.00")
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        await engine.approvals.approve(order.id, "admin-1", now)

        assert await engine.invoices.list_for_company(postpaid_company.id) == []

    @pytest.mark.asyncio
    async def test_consolidated_anchor_set(self, engine, make_company, make_ddi, now):
        company = await make_company(billing_method=BillingMethod.POSTPAID, mode=RenewalMode.CONSOLIDATED)
        ddi = await make_ddi(monthly_price="31.00")
        order = await engine.order_service.create_order(company.id, ddi.id, now)

        await engine.approvals.approve(order.id, "admin-1", now)

        assert (await engine.companies.get(company.id)).did_renewal_anchor == date(2026, 2, 1)
        assert (await engine.ddis.get(ddi.id)).next_renewal_at == date(2026, 2, 1)

    @pytest.mark.asyncio
    async def test_assignment_failure_rejects_order(self, engine, postpaid_company, make_ddi, now):
        """An order whose DID cannot be assigned ends rejected, never back in pending."""
        ddi = await make_ddi()
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        failing = AsyncMock(side_effect=ConflictError("changed state"))
        with patch.object(engine.state_machine, "confirm_assignment", failing):
            with pytest.raises(ConflictError):
                await engine.approvals.approve(order.id, "admin-1", now)

        stored = await engine.orders.get(order.id)
        assert stored.status == OrderStatus.REJECTED
        assert stored.rejection_reason == ASSIGNMENT_FAILED
        assert stored.approved_at is None
        assert (await engine.ddis.get(ddi.id)).inventory_status == InventoryStatus.AVAILABLE
        assert await engine.invoices.list_for_company(postpaid_company.id) == []

    @pytest.mark.asyncio
    async def test_lost_reservation_rejects_order(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi()
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)
        await engine.state_machine.release(ddi.id)

        with pytest.raises(ConflictError):
            await engine.approvals.approve(order.id, "admin-1", now)

        stored = await engine.orders.get(order.id)
        assert stored.status == OrderStatus.REJECTED
        assert stored.rejection_reason == ASSIGNMENT_FAILED

    @pytest.mark.asyncio
    async def test_order_resolved_during_assignment(self, engine, postpaid_company, make_ddi, now):
        """The DID goes back to the pool when the order expires mid-approval."""
        ddi = await make_ddi()
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)
        assign = engine.state_machine.confirm_assignment

        async def assign_then_expire(*args, **kwargs):
            assigned = await assign(*args, **kwargs)
            await engine.orders.transition(
                order.id, OrderStatus.PENDING_APPROVAL, OrderStatus.EXPIRED, {"expired_at": now}
            )
            return assigned

        with patch.object(engine.state_machine, "confirm_assignment", AsyncMock(side_effect=assign_then_expire)):
            with pytest.raises(ConflictError):
                await engine.approvals.approve(order.id, "admin-1", now)

        assert (await engine.orders.get(order.id)).status == OrderStatus.EXPIRED
        stored = await engine.ddis.get(ddi.id)
        assert stored.inventory_status == InventoryStatus.AVAILABLE
        assert stored.company_id is None
        assert await engine.invoices.list_for_company(postpaid_company.id) == []

    @pytest.mark.asyncio
    async def test_reject_releases(self, engine, notifier, postpaid_company, make_ddi, now):
        ddi = await make_ddi()
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)

        rejected = await engine.approvals.reject(order.id, "admin-2", "number not verified", now)

        assert rejected.status == OrderStatus.REJECTED
        assert rejected.rejected_by_admin_id == "admin-2"
        assert rejected.rejection_reason == "number not verified"
        assert (await engine.ddis.get(ddi.id)).inventory_status == InventoryStatus.AVAILABLE
        assert notifier.sent[-1]["type"] == NotificationType.DID_ORDER_REJECTED

    @pytest.mark.asyncio
    async def test_resolved_order_cannot_be_approved(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi()
        order = await engine.order_service.create_order(postpaid_company.id, ddi.id, now)
        await engine.approvals.reject(order.id, "admin-2", "no", now)

        with pytest.raises(ConflictError):
            await engine.approvals.approve(order.id, "admin-1", now)
