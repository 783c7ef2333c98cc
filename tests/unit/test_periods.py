"""Unit tests for billing period arithmetic and the billing policy."""

from datetime import date
from decimal import Decimal

import pytest

from did_core.billing.base import BillingMethod, Company, RenewalMode
from did_core.billing.periods import FirstPeriodCalculator, add_months, next_anchor_date
from did_core.billing.policy import BillingDecision, BillingDecisionPolicy


class TestAddMonths:
    """Tests for calendar month arithmetic."""

    @pytest.mark.parametrize(
        "start,months,expected",
        [
            (date(2026, 1, 15), 1, date(2026, 2, 15)),
            (date(2026, 1, 1), 1, date(2026, 2, 1)),
            (date(2026, 1, 31), 1, date(2026, 2, 28)),
            (date(2028, 1, 31), 1, date(2028, 2, 29)),
            (date(2026, 12, 10), 1, date(2027, 1, 10)),
            (date(2026, 3, 31), 13, date(2027, 4, 30)),
        ],
    )
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected

    def test_next_anchor_date(self):
        """The anchor day is taken strictly after the start."""
        anchor = date(2026, 1, 5)
        assert next_anchor_date(date(2026, 1, 20), anchor) == date(2026, 2, 5)
        assert next_anchor_date(date(2026, 1, 2), anchor) == date(2026, 1, 5)
        assert next_anchor_date(date(2026, 1, 5), anchor) == date(2026, 2, 5)


class TestFirstPeriodCalculator:
    """Tests for first period pricing."""

    def test_per_did_full_month(self):
        """Per-DID billing charges a full month from assignment."""
        period = FirstPeriodCalculator().calculate(
            RenewalMode.PER_DID, Decimal("10.00"), date(2026, 1, 15)
        )

        assert period.next_renewal_at == date(2026, 2, 15)
        assert period.amount == Decimal("10.00")
        assert period.is_prorated is False

    def test_consolidated_without_anchor(self):
        """Without an anchor the first period ends at the month end."""
        period = FirstPeriodCalculator().calculate(
            RenewalMode.CONSOLIDATED, Decimal("31.00"), date(2026, 1, 20)
        )

        assert period.next_renewal_at == date(2026, 2, 1)
        assert period.days == 12
        assert period.amount == Decimal("12.00")
        assert period.is_prorated is True

    def test_consolidated_with_anchor(self):
        """With an anchor the first period ends at the next anchor day."""
        period = FirstPeriodCalculator().calculate(
            RenewalMode.CONSOLIDATED,
            Decimal("31.00"),
            date(2026, 1, 20),
            anchor=date(2026, 1, 5),
        )

        assert period.next_renewal_at == date(2026, 2, 5)
        assert period.days == 16
        assert period.amount == Decimal("16.00")

    def test_preview_totals(self):
        """The preview adds the setup price to the first period."""
        preview = FirstPeriodCalculator().preview(
            RenewalMode.PER_DID,
            Decimal("10.00"),
            Decimal("5.00"),
            date(2026, 1, 15),
        )

        assert preview["total_due_now"] == "15.00"
        assert preview["first_period"]["next_renewal_at"] == "2026-02-15"


class TestBillingDecisionPolicy:
    """Tests for the affordability rule."""

    def _company(self, method: BillingMethod, balance: str) -> Company:
        return Company(name="Acme", brand_id="brand-1", billing_method=method, balance=Decimal(balance))

    def test_prepaid_with_funds(self):
        decision = BillingDecisionPolicy().decide(
            self._company(BillingMethod.PREPAID, "30.00"), Decimal("25.50")
        )
        assert decision.decision == BillingDecision.PAY_FROM_BALANCE

    def test_exact_balance_is_enough(self):
        policy = BillingDecisionPolicy()
        assert policy.can_pay_from_balance(
            self._company(BillingMethod.PSEUDOPREPAID, "25.50"), Decimal("25.50")
        )

    def test_prepaid_short_of_funds(self):
        decision = BillingDecisionPolicy().decide(
            self._company(BillingMethod.PREPAID, "10.00"), Decimal("25.50")
        )
        assert decision.decision == BillingDecision.INVOICE
        assert decision.reason == "balance_insufficient"

    def test_postpaid_always_invoiced(self):
        decision = BillingDecisionPolicy().decide(
            self._company(BillingMethod.POSTPAID, "1000.00"), Decimal("1.00")
        )
        assert decision.decision == BillingDecision.INVOICE
