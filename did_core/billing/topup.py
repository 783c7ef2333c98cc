"""
Balance Top-Up Requests

Creates balance_topup invoices for balance-billed companies. The balance
itself is credited only when the invoice is reported paid.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

import structlog

from did_core.billing.base import (
    CompanyStore,
    Invoice,
    InvoiceListener,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    SyncStatus,
    invoice_number,
)
from did_core.errors import DomainError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)


MIN_TOPUP_AMOUNT = Decimal("5.00")
MAX_TOPUP_AMOUNT = Decimal("1000.00")


def parse_topup_amount(
    amount: Union[str, int, Decimal],
    minimum: Decimal = MIN_TOPUP_AMOUNT,
    maximum: Decimal = MAX_TOPUP_AMOUNT,
) -> Decimal:
    """Validate a requested top-up amount."""
    if isinstance(amount, float):
        raise ValidationError("Top-up amount must be given as a decimal string", field="amount")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid top-up amount: {amount!r}", field="amount") from e

    if not value.is_finite():
        raise ValidationError(f"Invalid top-up amount: {amount!r}", field="amount")
    if value.as_tuple().exponent < -2:
        raise ValidationError("Top-up amount cannot have more than 2 decimals", field="amount")
    if value < minimum or value > maximum:
        raise ValidationError(
            f"Top-up amount must be between {minimum} and {maximum}",
            field="amount",
        )
    return value.quantize(Decimal("0.01"))


class BalanceTopUpService:
    """Turns a top-up request into a pending balance_topup invoice."""

    def __init__(
        self,
        companies: CompanyStore,
        invoices: InvoiceStore,
        listener: Optional[InvoiceListener] = None,
        minimum: Decimal = MIN_TOPUP_AMOUNT,
        maximum: Decimal = MAX_TOPUP_AMOUNT,
    ):
        self._companies = companies
        self._invoices = invoices
        self._listener = listener
        self._minimum = minimum
        self._maximum = maximum

    async def request_top_up(
        self,
        company_id: str,
        amount: Union[str, int, Decimal],
        now: datetime,
    ) -> Invoice:
        """
        Create a top-up invoice.

        Raises:
            ValidationError: amount outside the allowed range
            NotFoundError: unknown company
            DomainError: company cannot top up
        """
        value = parse_topup_amount(amount, self._minimum, self._maximum)

        company = await self._companies.get(company_id)
        if company is None:
            raise NotFoundError("Company", company_id)
        if not company.billing_method.uses_balance:
            raise DomainError(
                "Only prepaid companies can top up their balance",
                DomainError.BILLING_METHOD_NOT_ALLOWED,
            )
        if not company.has_billing_link:
            raise DomainError(
                "Company is not linked to the billing system",
                DomainError.BILLING_NOT_LINKED,
            )

        invoice = Invoice(
            number=invoice_number("TOPUP", company.id, now),
            company_id=company.id,
            brand_id=company.brand_id,
            invoice_type=InvoiceType.BALANCE_TOPUP,
            created_at=now,
            status=InvoiceStatus.CREATED,
            total=value,
            total_with_tax=value,
            notes=f"Balance top-up of {value}",
            sync_status=SyncStatus.PENDING,
        )
        await self._invoices.create(invoice)
        logger.info("topup_requested", company_id=company.id, invoice_id=invoice.id, amount=str(value))

        if self._listener is not None:
            await self._listener.on_invoice_created(invoice, now)
        return invoice


__all__ = [
    "MIN_TOPUP_AMOUNT",
    "MAX_TOPUP_AMOUNT",
    "parse_topup_amount",
    "BalanceTopUpService",
]
