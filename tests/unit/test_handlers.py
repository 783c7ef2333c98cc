"""Unit tests for paid invoice handlers."""

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from did_core.billing.base import Invoice, InvoiceType, RenewalMode
from did_core.errors import DomainError, ValidationError
from did_core.inventory.base import InventoryStatus
from did_core.reconciliation.handlers import (
    BalanceTopUpHandler,
    DidPurchaseHandler,
    DidRenewalHandler,
    DidRenewalOverdueHandler,
    StandardInvoiceHandler,
)


def _invoice(company, invoice_type, now, **kwargs) -> Invoice:
    return Invoice(
        number=f"{invoice_type.value}-1",
        company_id=company.id,
        brand_id=company.brand_id,
        invoice_type=invoice_type,
        created_at=now,
        **kwargs,
    )


class TestBalanceTopUpHandler:
    """Tests for top-up payments."""

    @pytest.mark.asyncio
    async def test_credits_taxed_total(self, engine, prepaid_company, now):
        invoice = _invoice(
            prepaid_company, InvoiceType.BALANCE_TOPUP, now,
            total=Decimal("20.00"), total_with_tax=Decimal("24.20"),
        )

        outcome = await BalanceTopUpHandler(engine.balance).handle(invoice, now)

        assert outcome.details["amount"] == "24.20"
        assert (await engine.companies.get(prepaid_company.id)).balance == Decimal("124.20")

    @pytest.mark.asyncio
    async def test_rejects_non_positive(self, engine, prepaid_company, now):
        invoice = _invoice(prepaid_company, InvoiceType.BALANCE_TOPUP, now, total=Decimal("0.00"))

        with pytest.raises(DomainError) as exc_info:
            await BalanceTopUpHandler(engine.balance).handle(invoice, now)

        assert exc_info.value.code == DomainError.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_balance_error_wrapped(self, prepaid_company, now):
        balance = AsyncMock()
        balance.increment_balance.side_effect = RuntimeError("ledger offline")
        invoice = _invoice(prepaid_company, InvoiceType.BALANCE_TOPUP, now, total=Decimal("10.00"))

        with pytest.raises(DomainError) as exc_info:
            await BalanceTopUpHandler(balance).handle(invoice, now)

        assert exc_info.value.code == DomainError.BALANCE_UPDATE_FAILED
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_balance_refused(self, prepaid_company, now):
        balance = AsyncMock()
        balance.increment_balance.return_value = False
        invoice = _invoice(prepaid_company, InvoiceType.BALANCE_TOPUP, now, total=Decimal("10.00"))

        with pytest.raises(DomainError) as exc_info:
            await BalanceTopUpHandler(balance).handle(invoice, now)

        assert exc_info.value.code == DomainError.BALANCE_UPDATE_FAILED


class TestDidPurchaseHandler:
    """Tests for purchase payments."""

    @pytest.mark.asyncio
    async def test_assigns_reserved_did(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi()
        await engine.state_machine.reserve(ddi.id, postpaid_company.id, now)
        invoice = _invoice(postpaid_company, InvoiceType.DID_PURCHASE, now, ddi_id=ddi.id)

        outcome = await DidPurchaseHandler(engine.ddis, engine.state_machine).handle(invoice, now)

        assert outcome.actions == ["assigned"]
        assert (await engine.ddis.get(ddi.id)).inventory_status == InventoryStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_already_assigned(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=postpaid_company.id)
        invoice = _invoice(postpaid_company, InvoiceType.DID_PURCHASE, now, ddi_id=ddi.id)

        outcome = await DidPurchaseHandler(engine.ddis, engine.state_machine).handle(invoice, now)

        assert outcome.actions == ["already_assigned"]

    @pytest.mark.asyncio
    async def test_unowned_did_assigned_now(self, engine, postpaid_company, make_ddi, now):
        ddi = await make_ddi()
        invoice = _invoice(postpaid_company, InvoiceType.DID_PURCHASE, now, ddi_id=ddi.id)

        outcome = await DidPurchaseHandler(engine.ddis, engine.state_machine).handle(invoice, now)

        assert outcome.actions == ["assigned"]
        assert (await engine.ddis.get(ddi.id)).company_id == postpaid_company.id

    @pytest.mark.asyncio
    async def test_no_linked_did(self, engine, postpaid_company, now):
        invoice = _invoice(postpaid_company, InvoiceType.DID_PURCHASE, now)

        with pytest.raises(DomainError) as exc_info:
            await DidPurchaseHandler(engine.ddis, engine.state_machine).handle(invoice, now)

        assert exc_info.value.code == DomainError.NO_DDI_LINKED

    @pytest.mark.asyncio
    async def test_missing_did(self, engine, postpaid_company, now):
        invoice = _invoice(postpaid_company, InvoiceType.DID_PURCHASE, now, ddi_id="missing")

        with pytest.raises(DomainError) as exc_info:
            await DidPurchaseHandler(engine.ddis, engine.state_machine).handle(invoice, now)

        assert exc_info.value.code == DomainError.DDI_NOT_FOUND


class TestDidRenewalHandler:
    """Tests for renewal payments."""

    @pytest.mark.asyncio
    async def test_consolidated_anchor_advanced(self, engine, make_company, make_ddi, now):
        company = await make_company(mode=RenewalMode.CONSOLIDATED, anchor=date(2026, 1, 1))
        first = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=company.id,
                               next_renewal_at=date(2026, 1, 1))
        second = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=company.id,
                                next_renewal_at=date(2026, 1, 1))
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, renewal_ddi_ids=[first.id, second.id])

        handler = DidRenewalHandler(engine.ddis, engine.companies, engine.state_machine)
        outcome = await handler.handle(invoice, now)

        assert outcome.actions == ["anchor_advanced"]
        assert (await engine.companies.get(company.id)).did_renewal_anchor == date(2026, 2, 1)
        assert (await engine.ddis.get(first.id)).next_renewal_at == date(2026, 2, 1)
        assert (await engine.ddis.get(second.id)).next_renewal_at == date(2026, 2, 1)

    @pytest.mark.asyncio
    async def test_per_did_month_end(self, engine, make_company, make_ddi, now):
        company = await make_company()
        ddi = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=company.id,
                             next_renewal_at=date(2026, 1, 31))
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, ddi_id=ddi.id)

        await DidRenewalHandler(engine.ddis, engine.companies, engine.state_machine).handle(invoice, now)

        assert (await engine.ddis.get(ddi.id)).next_renewal_at == date(2026, 2, 28)

    @pytest.mark.asyncio
    async def test_released_did_is_mismatch(self, engine, make_company, make_ddi, now):
        """A DID with no owner cannot be renewed by a company's payment."""
        company = await make_company()
        ddi = await make_ddi()
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, ddi_id=ddi.id)

        with pytest.raises(DomainError) as exc_info:
            await DidRenewalHandler(engine.ddis, engine.companies, engine.state_machine).handle(invoice, now)

        assert exc_info.value.code == DomainError.COMPANY_MISMATCH
        stored = await engine.ddis.get(ddi.id)
        assert stored.inventory_status == InventoryStatus.AVAILABLE
        assert stored.next_renewal_at is None

    @pytest.mark.asyncio
    async def test_suspended_did_advances(self, engine, make_company, make_ddi, now):
        company = await make_company()
        ddi = await make_ddi(status=InventoryStatus.SUSPENDED, company_id=company.id,
                             next_renewal_at=date(2026, 1, 15))
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, ddi_id=ddi.id)

        outcome = await DidRenewalHandler(engine.ddis, engine.companies, engine.state_machine).handle(invoice, now)

        assert outcome.details == {ddi.id: "2026-02-15"}
        stored = await engine.ddis.get(ddi.id)
        assert stored.next_renewal_at == date(2026, 2, 15)
        assert stored.inventory_status == InventoryStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_disabled_did_not_renewed(self, engine, make_company, make_ddi, now):
        company = await make_company()
        ddi = await make_ddi(status=InventoryStatus.DISABLED, company_id=company.id,
                             next_renewal_at=date(2026, 1, 15))
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, ddi_id=ddi.id)

        with pytest.raises(DomainError) as exc_info:
            await DidRenewalHandler(engine.ddis, engine.companies, engine.state_machine).handle(invoice, now)

        assert exc_info.value.code == DomainError.RENEWAL_NOT_APPLIED
        assert (await engine.ddis.get(ddi.id)).next_renewal_at == date(2026, 1, 15)


class TestStandardInvoiceHandler:
    """Tests for postpaid invoice payments."""

    @pytest.mark.asyncio
    async def test_audit_only(self, postpaid_company, now):
        invoice = _invoice(postpaid_company, InvoiceType.STANDARD, now, total=Decimal("99.00"))

        outcome = await StandardInvoiceHandler().handle(invoice, now)

        assert outcome.actions == ["payment_recorded"]
        assert outcome.details["amount"] == "99.00"


class TestDidRenewalOverdueHandler:
    """Tests for unpaid renewal release."""

    @pytest.mark.asyncio
    async def test_rejects_other_types(self, engine, prepaid_company, now):
        invoice = _invoice(prepaid_company, InvoiceType.BALANCE_TOPUP, now)

        with pytest.raises(ValidationError):
            await DidRenewalOverdueHandler(engine.ddis, engine.state_machine).handle(invoice, now)

    @pytest.mark.asyncio
    async def test_falls_back_to_due_dids(self, engine, make_company, make_ddi, now):
        """Invoices without linked DIDs release what was due by the period end."""
        company = await make_company()
        due = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=company.id,
                             next_renewal_at=date(2026, 1, 10))
        later = await make_ddi(status=InventoryStatus.ASSIGNED, company_id=company.id,
                               next_renewal_at=date(2026, 3, 10))
        invoice = _invoice(company, InvoiceType.DID_RENEWAL, now, period_end=date(2026, 1, 15))

        released = await DidRenewalOverdueHandler(engine.ddis, engine.state_machine).handle(
            invoice, now + timedelta(days=30)
        )

        assert released == [due.id]
        assert (await engine.ddis.get(later.id)).inventory_status == InventoryStatus.ASSIGNED
