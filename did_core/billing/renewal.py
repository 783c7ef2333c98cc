"""
DID Renewal Scheduler

Daily batch that bills the monthly rental of assigned DIDs.

For every balance-billed company with DIDs due on the target date, the
scheduler either takes the full cost from the balance (recording a paid
invoice and advancing the renewal dates right away) or creates a pending
renewal invoice for the external billing system. Renewal dates of an
invoiced cycle are advanced only when the invoice is paid, so the two
paths never both advance the same cycle. A balance renewal that cannot be
recorded in full is refunded and stays due for the next run.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from did_core.billing.balance import BalanceService
from did_core.billing.base import (
    Company,
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
from did_core.billing.periods import add_months
from did_core.billing.policy import BillingDecisionPolicy
from did_core.core.logging import LogContext
from did_core.inventory.base import Ddi, DdiStore
from did_core.inventory.state_machine import InventoryStateMachine

logger = structlog.get_logger(__name__)


MAX_LISTED_NUMBERS = 3


@dataclass
class RenewalRunResult:
    """Counters for one renewal run."""

    companies_processed: int = 0
    ddis_renewed_balance: int = 0
    ddis_invoiced: int = 0
    total_balance_deducted: Decimal = Decimal("0.00")
    total_invoiced: Decimal = Decimal("0.00")
    errors: int = 0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "companies_processed": self.companies_processed,
            "ddis_renewed_balance": self.ddis_renewed_balance,
            "ddis_invoiced": self.ddis_invoiced,
            "total_balance_deducted": str(self.total_balance_deducted),
            "total_invoiced": str(self.total_invoiced),
            "errors": self.errors,
            "dry_run": self.dry_run,
            "success": self.success,
        }


def renewal_summary(mode: RenewalMode, ddis: List[Ddi]) -> str:
    """Short human summary such as ``DID renewal [per_did]: +1..., (+2 more)``."""
    numbers = [d.ddi for d in ddis]
    listed = ", ".join(numbers[:MAX_LISTED_NUMBERS])
    extra = len(numbers) - MAX_LISTED_NUMBERS
    if extra > 0:
        listed += f" (+{extra} more)"
    return f"DID renewal [{mode.value}]: {listed}"


class RenewalScheduler:
    """Bills due DID renewals once per calendar date."""

    def __init__(
        self,
        ddis: DdiStore,
        companies: CompanyStore,
        invoices: InvoiceStore,
        state_machine: InventoryStateMachine,
        balance: BalanceService,
        policy: Optional[BillingDecisionPolicy] = None,
        listener: Optional[InvoiceListener] = None,
    ):
        self._ddis = ddis
        self._companies = companies
        self._invoices = invoices
        self._state_machine = state_machine
        self._balance = balance
        self._policy = policy or BillingDecisionPolicy()
        self._listener = listener

    async def run(
        self,
        target_date: date,
        now: datetime,
        dry_run: bool = False,
        company_id: Optional[str] = None,
    ) -> RenewalRunResult:
        """
        Process every DID due on or before ``target_date``.

        Args:
            target_date: Renewal date to bill up to
            now: Reference timestamp for created records
            dry_run: Count what would happen without mutating anything
            company_id: Restrict the run to one company
        """
        result = RenewalRunResult(dry_run=dry_run)

        with LogContext(job="did_renewal", run_date=target_date.isoformat(), dry_run=dry_run):
            if company_id is not None and await self._companies.get(company_id) is None:
                logger.warning("renewal_company_missing", company_id=company_id)
                return result

            grouped = await self._due_by_company(target_date, company_id)
            logger.info("renewal_run_started", companies=len(grouped))

            for cid, ddis in grouped.items():
                try:
                    company = await self._companies.get(cid)
                    if company is None:
                        logger.warning("renewal_company_missing", company_id=cid)
                        continue
                    if not company.billing_method.uses_balance or not company.has_billing_link:
                        continue

                    await self._renew_company(company, ddis, now, dry_run, result)
                    result.companies_processed += 1
                except Exception:
                    result.errors += 1
                    logger.exception("renewal_company_failed", company_id=cid)

            logger.info("renewal_run_completed", **result.to_dict())

        return result

    async def _due_by_company(
        self,
        target_date: date,
        company_id: Optional[str],
    ) -> "OrderedDict[str, List[Ddi]]":
        grouped: "OrderedDict[str, List[Ddi]]" = OrderedDict()
        for ddi in await self._ddis.list_due_for_renewal(target_date):
            if ddi.company_id is None:
                continue
            if company_id is not None and ddi.company_id != company_id:
                continue
            grouped.setdefault(ddi.company_id, []).append(ddi)
        return grouped

    async def _without_open_invoice(self, company_id: str, ddis: List[Ddi]) -> List[Ddi]:
        """Drop DIDs already covered by an unpaid renewal invoice for their current cycle."""
        covered = set()
        for invoice in await self._invoices.list_for_company(company_id):
            if invoice.invoice_type != InvoiceType.DID_RENEWAL:
                continue
            if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.OVERDUE):
                continue
            covered.update(invoice.linked_ddi_ids)
        return [d for d in ddis if d.id not in covered]

    async def _renew_company(
        self,
        company: Company,
        ddis: List[Ddi],
        now: datetime,
        dry_run: bool,
        result: RenewalRunResult,
    ) -> None:
        ddis = await self._without_open_invoice(company.id, ddis)
        if not ddis:
            logger.info("renewal_already_invoiced", company_id=company.id)
            return

        mode = company.did_renewal_mode or RenewalMode.PER_DID
        total_cost = quantize_money(sum((d.monthly_price for d in ddis), Decimal("0")))
        decision = self._policy.decide(company, total_cost)

        logger.info(
            "renewal_company",
            company_id=company.id,
            ddis=len(ddis),
            total_cost=str(total_cost),
            mode=mode.value,
            decision=decision.decision.value,
        )

        if dry_run:
            if decision.pay_from_balance:
                result.ddis_renewed_balance += len(ddis)
                result.total_balance_deducted += total_cost
            else:
                result.ddis_invoiced += len(ddis)
                result.total_invoiced += total_cost
            return

        if decision.pay_from_balance:
            reason = renewal_summary(mode, ddis)
            deducted = await self._balance.decrement_balance(company.id, total_cost, reason=reason, now=now)
            if deducted:
                try:
                    await self._record_balance_renewal(company, ddis, mode, total_cost, now)
                except Exception:
                    await self._refund(company, total_cost, reason, now)
                    raise
                result.ddis_renewed_balance += len(ddis)
                result.total_balance_deducted += total_cost
                return
            logger.warning("renewal_balance_refused", company_id=company.id)

        await self._create_renewal_invoice(company, ddis, mode, total_cost, now)
        result.ddis_invoiced += len(ddis)
        result.total_invoiced += total_cost

    async def _refund(self, company: Company, amount: Decimal, reason: str, now: datetime) -> None:
        try:
            refunded = await self._balance.increment_balance(
                company.id, amount, reason=f"Refund: {reason}", now=now
            )
        except Exception:
            logger.exception("renewal_refund_failed", company_id=company.id, amount=str(amount))
            return
        if refunded:
            logger.warning("renewal_refunded", company_id=company.id, amount=str(amount))
        else:
            logger.error("renewal_refund_refused", company_id=company.id, amount=str(amount))

    async def _record_balance_renewal(
        self,
        company: Company,
        ddis: List[Ddi],
        mode: RenewalMode,
        total_cost: Decimal,
        now: datetime,
    ) -> None:
        """Advance the paid cycle, then record its invoice. Undone as a whole on failure."""
        targets = self._renewal_targets(company, ddis, mode, now)
        await self._state_machine.advance_renewals(company.id, targets)

        try:
            if mode == RenewalMode.CONSOLIDATED:
                await self._companies.set_renewal_anchor(company.id, targets[0][1])

            invoice = self._build_invoice(company, ddis, mode, total_cost, now)
            invoice.status = InvoiceStatus.PAID
            invoice.sync_status = SyncStatus.NOT_APPLICABLE
            invoice.paid_at = now
            await self._invoices.create(invoice)
        except Exception:
            await self._state_machine.restore_renewals(company.id, ddis)
            if mode == RenewalMode.CONSOLIDATED:
                await self._companies.set_renewal_anchor(company.id, company.did_renewal_anchor)
            raise

    async def _create_renewal_invoice(
        self,
        company: Company,
        ddis: List[Ddi],
        mode: RenewalMode,
        total_cost: Decimal,
        now: datetime,
    ) -> Invoice:
        invoice = self._build_invoice(company, ddis, mode, total_cost, now)
        await self._invoices.create(invoice)
        logger.info("renewal_invoice_created", company_id=company.id, invoice_id=invoice.id)

        if self._listener is not None:
            await self._listener.on_invoice_created(invoice, now)
        return invoice

    @staticmethod
    def _build_invoice(
        company: Company,
        ddis: List[Ddi],
        mode: RenewalMode,
        total_cost: Decimal,
        now: datetime,
    ) -> Invoice:
        return Invoice(
            number=invoice_number("DID-REN", company.id, now),
            company_id=company.id,
            brand_id=company.brand_id,
            invoice_type=InvoiceType.DID_RENEWAL,
            created_at=now,
            status=InvoiceStatus.CREATED,
            total=total_cost,
            total_with_tax=total_cost,
            ddi_id=ddis[0].id if len(ddis) == 1 else None,
            renewal_ddi_ids=[d.id for d in ddis],
            period_end=max(d.next_renewal_at for d in ddis),
            notes=renewal_summary(mode, ddis),
            sync_status=SyncStatus.PENDING,
        )

    @staticmethod
    def _renewal_targets(
        company: Company,
        ddis: List[Ddi],
        mode: RenewalMode,
        now: datetime,
    ) -> List[Tuple[Ddi, date]]:
        if mode == RenewalMode.CONSOLIDATED:
            anchor = company.did_renewal_anchor or ddis[0].next_renewal_at or now.date()
            new_anchor = add_months(anchor, 1)
            return [(ddi, new_anchor) for ddi in ddis]
        return [(ddi, add_months(ddi.next_renewal_at or now.date(), 1)) for ddi in ddis]


__all__ = [
    "RenewalRunResult",
    "RenewalScheduler",
    "renewal_summary",
]
