"""
Balance Service

Atomic balance mutation for balance-billed companies. Each successful
change is recorded as a BalanceMovement for audit.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from did_core.billing.base import BalanceMovement, CompanyStore, quantize_money

logger = structlog.get_logger(__name__)


class BalanceService(ABC):
    """Balance/rating collaborator."""

    @abstractmethod
    async def increment_balance(
        self,
        company_id: str,
        amount: Decimal,
        reason: str,
        now: datetime,
    ) -> bool:
        """Add funds. Returns False when the change could not be applied."""
        pass

    @abstractmethod
    async def decrement_balance(
        self,
        company_id: str,
        amount: Decimal,
        reason: str,
        now: datetime,
    ) -> bool:
        """Take funds. Returns False when the balance does not cover the amount."""
        pass


class StoreBalanceService(BalanceService):
    """Balance service backed by the company store's atomic adjustment."""

    def __init__(self, companies: CompanyStore):
        self._companies = companies

    async def increment_balance(
        self,
        company_id: str,
        amount: Decimal,
        reason: str,
        now: datetime,
    ) -> bool:
        if amount <= 0:
            return False
        return await self._apply(company_id, quantize_money(amount), reason, now, minimum=None)

    async def decrement_balance(
        self,
        company_id: str,
        amount: Decimal,
        reason: str,
        now: datetime,
    ) -> bool:
        if amount < 0:
            return False
        return await self._apply(company_id, -quantize_money(amount), reason, now, minimum=Decimal("0"))

    async def _apply(
        self,
        company_id: str,
        delta: Decimal,
        reason: str,
        now: datetime,
        minimum: Optional[Decimal],
    ) -> bool:
        new_balance = await self._companies.adjust_balance(company_id, delta, minimum=minimum)
        if new_balance is None:
            logger.warning(
                "balance_adjustment_refused",
                company_id=company_id,
                delta=str(delta),
                reason=reason,
            )
            return False

        await self._companies.add_balance_movement(
            BalanceMovement(
                company_id=company_id,
                amount=delta,
                balance_after=new_balance,
                reason=reason,
                created_at=now,
            )
        )
        logger.info(
            "balance_adjusted",
            company_id=company_id,
            delta=str(delta),
            balance_after=str(new_balance),
        )
        return True


__all__ = [
    "BalanceService",
    "StoreBalanceService",
]
