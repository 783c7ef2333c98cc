"""
Direct DID Purchase

Balance-billed companies buy an available DID immediately: the setup fee
and the first period are taken from the balance and the DID is assigned
in the same step. Postpaid companies go through DidOrderService instead.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import structlog

from did_core.billing.balance import BalanceService
from did_core.billing.base import (
    Company,
    CompanyStore,
    Invoice,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    RenewalMode,
    SyncStatus,
    invoice_number,
    quantize_money,
)
from did_core.billing.periods import FirstPeriod, FirstPeriodCalculator
from did_core.billing.policy import BillingDecisionPolicy
from did_core.errors import ConflictError, DomainError, NotFoundError, ValidationError
from did_core.inventory.base import Ddi, DdiStore
from did_core.inventory.state_machine import InventoryStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class PurchaseResult:
    """Completed direct purchase."""

    ddi: Ddi
    invoice: Invoice
    first_period: FirstPeriod


class DidPurchaseService:
    """Immediate DID purchase paid from balance."""

    def __init__(
        self,
        ddis: DdiStore,
        companies: CompanyStore,
        invoices: InvoiceStore,
        state_machine: InventoryStateMachine,
        balance: BalanceService,
        policy: Optional[BillingDecisionPolicy] = None,
        calculator: Optional[FirstPeriodCalculator] = None,
    ):
        self._ddis = ddis
        self._companies = companies
        self._invoices = invoices
        self._state_machine = state_machine
        self._balance = balance
        self._policy = policy or BillingDecisionPolicy()
        self._calculator = calculator or FirstPeriodCalculator()

    async def _load(self, company_id: str, ddi_id: str) -> Tuple[Company, Ddi]:
        company = await self._companies.get(company_id)
        if company is None:
            raise NotFoundError("Company", company_id)
        if not company.billing_method.uses_balance:
            raise DomainError(
                "Direct purchase requires a prepaid company",
                DomainError.BILLING_METHOD_NOT_ALLOWED,
            )

        ddi = await self._ddis.get(ddi_id)
        if ddi is None:
            raise NotFoundError("DDI", ddi_id)
        if ddi.brand_id != company.brand_id:
            raise ValidationError("DDI is not offered to this company's brand", field="ddi_id")
        if not ddi.is_available:
            raise ConflictError(
                f"DDI {ddi.ddi} is not available",
                current_state=ddi.inventory_status.value,
            )
        return company, ddi

    async def preview(self, company_id: str, ddi_id: str, now: datetime) -> Dict[str, Any]:
        """Price breakdown for buying a DID now."""
        company, ddi = await self._load(company_id, ddi_id)
        breakdown = self._calculator.preview(
            company.did_renewal_mode,
            ddi.monthly_price,
            ddi.setup_price,
            now.date(),
            company.did_renewal_anchor,
        )
        breakdown["balance"] = str(company.balance)
        return breakdown

    async def purchase(self, company_id: str, ddi_id: str, now: datetime) -> PurchaseResult:
        """
        Buy an available DID from balance.

        Raises:
            DomainError: company not balance-billed or balance insufficient
            ConflictError: DID not available
        """
        company, ddi = await self._load(company_id, ddi_id)

        period = self._calculator.calculate(
            company.did_renewal_mode,
            ddi.monthly_price,
            now.date(),
            company.did_renewal_anchor,
        )
        total = quantize_money(ddi.setup_price + period.amount)

        if not self._policy.can_pay_from_balance(company, total):
            raise DomainError(
                f"Balance {company.balance} does not cover {total}",
                DomainError.INSUFFICIENT_BALANCE,
            )

        assigned = await self._state_machine.confirm_assignment(
            ddi.id,
            company.id,
            now,
            next_renewal_at=period.next_renewal_at,
        )

        if not await self._balance.decrement_balance(
            company.id, total, reason=f"DID purchase {ddi.ddi}", now=now
        ):
            await self._state_machine.release(ddi.id)
            raise DomainError(
                f"Balance no longer covers {total}",
                DomainError.INSUFFICIENT_BALANCE,
            )

        if company.did_renewal_mode == RenewalMode.CONSOLIDATED and company.did_renewal_anchor is None:
            await self._companies.set_renewal_anchor(company.id, period.next_renewal_at)

        invoice = Invoice(
            number=invoice_number("DID-BUY", company.id, now),
            company_id=company.id,
            brand_id=company.brand_id,
            invoice_type=InvoiceType.DID_PURCHASE,
            created_at=now,
            status=InvoiceStatus.PAID,
            total=total,
            total_with_tax=total,
            ddi_id=ddi.id,
            period_end=period.next_renewal_at,
            notes=f"DID purchase {ddi.ddi}",
            sync_status=SyncStatus.NOT_APPLICABLE,
            paid_at=now,
        )
        await self._invoices.create(invoice)

        logger.info(
            "ddi_purchased",
            company_id=company.id,
            ddi_id=ddi.id,
            total=str(total),
            next_renewal_at=period.next_renewal_at.isoformat(),
        )
        return PurchaseResult(ddi=assigned, invoice=invoice, first_period=period)


__all__ = [
    "PurchaseResult",
    "DidPurchaseService",
]
