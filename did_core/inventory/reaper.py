"""
Reservation Expiry Reaper

Periodic sweep that expires pending DID orders whose reservation window
has lapsed and returns their DIDs to the available pool.

A second pass reclaims lapsed reservations that no pending order holds
any more, such as a DID left reserved when a previous sweep stopped
between expiring the order and releasing the DID.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from did_core.core.logging import LogContext
from did_core.inventory.base import Ddi, DdiStore, DidOrder, DidOrderStore, OrderStatus
from did_core.inventory.state_machine import InventoryStateMachine
from did_core.notifications import NotificationSender, NotificationType, notify_best_effort

logger = structlog.get_logger(__name__)


@dataclass
class ReaperRunResult:
    """Counters for one reaper run."""

    orders_expired: int = 0
    ddis_released: int = 0
    reservations_reclaimed: int = 0
    notifications_sent: int = 0
    skipped: int = 0
    errors: int = 0
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "orders_expired": self.orders_expired,
            "ddis_released": self.ddis_released,
            "reservations_reclaimed": self.reservations_reclaimed,
            "notifications_sent": self.notifications_sent,
            "skipped": self.skipped,
            "errors": self.errors,
            "dry_run": self.dry_run,
            "success": self.success,
        }


class ReservationExpiryReaper:
    """Expires lapsed DID order reservations."""

    def __init__(
        self,
        ddis: DdiStore,
        orders: DidOrderStore,
        state_machine: InventoryStateMachine,
        notifier: Optional[NotificationSender] = None,
    ):
        self._ddis = ddis
        self._orders = orders
        self._state_machine = state_machine
        self._notifier = notifier

    async def run(
        self,
        now: datetime,
        dry_run: bool = False,
        send_notifications: bool = True,
        company_id: Optional[str] = None,
    ) -> ReaperRunResult:
        """
        Expire every pending order whose DID reservation ended before ``now``.

        Args:
            now: Reference timestamp
            dry_run: Count expirable orders without mutating anything
            send_notifications: Notify customers of expired orders
            company_id: Restrict the sweep to one company
        """
        result = ReaperRunResult(dry_run=dry_run)

        with LogContext(job="reservation_cleanup", now=now.isoformat(), dry_run=dry_run):
            for order in await self._orders.list_expired(now, company_id):
                if dry_run:
                    result.orders_expired += 1
                    result.ddis_released += 1
                    continue
                try:
                    await self._expire(order, now, send_notifications, result)
                except Exception:
                    result.errors += 1
                    logger.exception("order_expiry_failed", order_id=order.id)

            for ddi in await self._ddis.list_lapsed_reservations(now, company_id):
                try:
                    await self._reclaim(ddi, now, dry_run, result)
                except Exception:
                    result.errors += 1
                    logger.exception("reservation_reclaim_failed", ddi_id=ddi.id)

            logger.info("reservation_cleanup_completed", **result.to_dict())

        return result

    async def _expire(
        self,
        order: DidOrder,
        now: datetime,
        send_notifications: bool,
        result: ReaperRunResult,
    ) -> None:
        expired = await self._orders.transition(
            order.id,
            expected=OrderStatus.PENDING_APPROVAL,
            new_status=OrderStatus.EXPIRED,
            changes={"expired_at": now},
        )
        if expired is None:
            # Approved or rejected since the sweep started
            result.skipped += 1
            logger.info("order_resolved_concurrently", order_id=order.id)
            return

        result.orders_expired += 1
        if await self._state_machine.expire_reservation(order.ddi_id, now):
            result.ddis_released += 1

        logger.info("order_expired", order_id=order.id, ddi_id=order.ddi_id, company_id=order.company_id)

        if send_notifications:
            sent = await notify_best_effort(
                self._notifier,
                order.company_id,
                NotificationType.DID_ORDER_EXPIRED,
                {"order_id": order.id, "ddi_id": order.ddi_id},
            )
            if sent:
                result.notifications_sent += 1

    async def _reclaim(self, ddi: Ddi, now: datetime, dry_run: bool, result: ReaperRunResult) -> None:
        if await self._orders.find_pending_by_ddi(ddi.id) is not None:
            # Still owned by the order pass
            return
        if dry_run:
            result.reservations_reclaimed += 1
            return
        if await self._state_machine.expire_reservation(ddi.id, now):
            result.reservations_reclaimed += 1
            logger.warning(
                "orphan_reservation_reclaimed",
                ddi_id=ddi.id,
                company_id=ddi.reserved_for_company_id,
            )


__all__ = [
    "ReaperRunResult",
    "ReservationExpiryReaper",
]
