"""
Billing Decision Policy

Decides whether a charge is taken from the company balance or billed
through an invoice.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from did_core.billing.base import Company


class BillingDecision(str, Enum):
    """Outcome of a billing decision."""

    PAY_FROM_BALANCE = "pay_from_balance"
    INVOICE = "invoice"


@dataclass(frozen=True)
class DecisionResult:
    """Billing decision with its reason."""

    decision: BillingDecision
    reason: str

    @property
    def pay_from_balance(self) -> bool:
        return self.decision == BillingDecision.PAY_FROM_BALANCE


class BillingDecisionPolicy:
    """
    Pure affordability rule.

    Balance-billed companies (prepaid, pseudoprepaid) pay from balance when
    it covers the full cost. Everything else is invoiced.
    """

    def decide(self, company: Company, cost: Decimal) -> DecisionResult:
        if not company.billing_method.uses_balance:
            return DecisionResult(BillingDecision.INVOICE, "billing_method_postpaid")
        if company.balance >= cost:
            return DecisionResult(BillingDecision.PAY_FROM_BALANCE, "balance_sufficient")
        return DecisionResult(BillingDecision.INVOICE, "balance_insufficient")

    def can_pay_from_balance(self, company: Company, cost: Decimal) -> bool:
        return self.decide(company, cost).pay_from_balance


__all__ = [
    "BillingDecision",
    "DecisionResult",
    "BillingDecisionPolicy",
]
