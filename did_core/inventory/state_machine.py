"""
Inventory State Machine

Owns the inventory status of a DID and its reservation window.

Legal transitions:

    available -> reserved -> {assigned | available}
    assigned  -> {available, suspended}
    suspended -> assigned
    any       -> disabled (administrative)

Every mutation is a compare-and-set against the status the caller last
observed, so two actors racing on the same DID can never both succeed.
Released DIDs are recycled: the same record returns to the available pool
with its owner, reservation and renewal fields cleared and its catalog
prices kept.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import structlog

from did_core.errors import ConflictError, NotFoundError, OwnershipMismatchError
from did_core.inventory.base import (
    Ddi,
    DdiStore,
    InventoryStatus,
    SuspensionAction,
    SuspensionLog,
    SuspensionLogStore,
)


TRANSITIONS: Dict[InventoryStatus, FrozenSet[InventoryStatus]] = {
    InventoryStatus.AVAILABLE: frozenset({InventoryStatus.RESERVED, InventoryStatus.ASSIGNED}),
    InventoryStatus.RESERVED: frozenset({InventoryStatus.ASSIGNED, InventoryStatus.AVAILABLE}),
    InventoryStatus.ASSIGNED: frozenset({InventoryStatus.AVAILABLE, InventoryStatus.SUSPENDED}),
    InventoryStatus.SUSPENDED: frozenset({InventoryStatus.ASSIGNED}),
    InventoryStatus.DISABLED: frozenset(),
}

RENEWABLE: FrozenSet[InventoryStatus] = frozenset({InventoryStatus.ASSIGNED, InventoryStatus.SUSPENDED})

RELEASED_FIELDS: Dict[str, Any] = {
    "inventory_status": InventoryStatus.AVAILABLE,
    "company_id": None,
    "reserved_for_company_id": None,
    "reserved_until": None,
    "assigned_at": None,
    "next_renewal_at": None,
}


def can_transition(current: InventoryStatus, target: InventoryStatus) -> bool:
    """Check whether a status change is legal."""
    if target == InventoryStatus.DISABLED:
        return current != InventoryStatus.DISABLED
    return target in TRANSITIONS[current]


class InventoryStateMachine:
    """Applies legal inventory transitions through the DID store."""

    def __init__(
        self,
        ddis: DdiStore,
        suspension_logs: Optional[SuspensionLogStore] = None,
        default_ttl: timedelta = timedelta(hours=24),
    ):
        self._ddis = ddis
        self._suspension_logs = suspension_logs
        self._default_ttl = default_ttl
        self._logger = structlog.get_logger("inventory.state_machine")

    async def _load(self, ddi_id: str) -> Ddi:
        ddi = await self._ddis.get(ddi_id)
        if ddi is None:
            raise NotFoundError("DDI", ddi_id)
        return ddi

    async def reserve(
        self,
        ddi_id: str,
        company_id: str,
        now: datetime,
        ttl: Optional[timedelta] = None,
    ) -> Ddi:
        """
        Hold an available DID for one company.

        Raises:
            ConflictError: DID is not available (including a lost race)
        """
        ddi = await self._load(ddi_id)
        if not ddi.is_available:
            raise ConflictError(
                f"DDI {ddi.ddi} is not available",
                current_state=ddi.inventory_status.value,
            )

        reserved_until = now + (ttl or self._default_ttl)
        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={"inventory_status": InventoryStatus.AVAILABLE},
            changes={
                "inventory_status": InventoryStatus.RESERVED,
                "company_id": company_id,
                "reserved_for_company_id": company_id,
                "reserved_until": reserved_until,
            },
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} was reserved concurrently")

        self._logger.info(
            "ddi_reserved",
            ddi_id=ddi_id,
            company_id=company_id,
            reserved_until=reserved_until.isoformat(),
        )
        return updated

    async def confirm_assignment(
        self,
        ddi_id: str,
        company_id: str,
        now: datetime,
        next_renewal_at: Optional[date] = None,
    ) -> Ddi:
        """
        Assign a reserved (same company) or available DID.

        Raises:
            OwnershipMismatchError: DID is reserved for a different company
            ConflictError: DID is in neither reserved nor available state
        """
        ddi = await self._load(ddi_id)

        if ddi.is_reserved:
            if ddi.reserved_for_company_id != company_id:
                raise OwnershipMismatchError(
                    f"DDI {ddi.ddi} is reserved for another company",
                    ddi_id=ddi_id,
                    company_id=company_id,
                )
            expected = {
                "inventory_status": InventoryStatus.RESERVED,
                "reserved_for_company_id": company_id,
            }
        elif ddi.is_available:
            expected = {"inventory_status": InventoryStatus.AVAILABLE}
        else:
            raise ConflictError(
                f"DDI {ddi.ddi} cannot be assigned from {ddi.inventory_status.value}",
                current_state=ddi.inventory_status.value,
            )

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected=expected,
            changes={
                "inventory_status": InventoryStatus.ASSIGNED,
                "company_id": company_id,
                "reserved_for_company_id": None,
                "reserved_until": None,
                "assigned_at": now,
                "next_renewal_at": next_renewal_at,
            },
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} changed state during assignment")

        self._logger.info("ddi_assigned", ddi_id=ddi_id, company_id=company_id)
        return updated

    async def release(self, ddi_id: str) -> Ddi:
        """
        Return an assigned or reserved DID to the available pool.

        Raises:
            ConflictError: DID is not assigned or reserved, or changed concurrently
        """
        ddi = await self._load(ddi_id)
        if ddi.inventory_status not in (InventoryStatus.ASSIGNED, InventoryStatus.RESERVED):
            raise ConflictError(
                f"DDI {ddi.ddi} cannot be released from {ddi.inventory_status.value}",
                current_state=ddi.inventory_status.value,
            )

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={
                "inventory_status": ddi.inventory_status,
                "company_id": ddi.company_id,
            },
            changes=dict(RELEASED_FIELDS),
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} changed state during release")

        self._logger.info(
            "ddi_released",
            ddi_id=ddi_id,
            previous_company_id=ddi.company_id,
            previous_status=ddi.inventory_status.value,
        )
        return updated

    async def expire_reservation(self, ddi_id: str, now: datetime) -> bool:
        """
        Release a reservation whose window has lapsed.

        Returns False without error when the reservation was already
        consumed (approved or released) by another actor.

        Raises:
            ConflictError: reservation is still inside its window
        """
        ddi = await self._load(ddi_id)
        if not ddi.is_reserved:
            self._logger.info(
                "reservation_already_consumed",
                ddi_id=ddi_id,
                status=ddi.inventory_status.value,
            )
            return False

        if not ddi.reservation_expired(now):
            raise ConflictError(f"Reservation on DDI {ddi.ddi} has not expired yet")

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={
                "inventory_status": InventoryStatus.RESERVED,
                "reserved_for_company_id": ddi.reserved_for_company_id,
                "reserved_until": ddi.reserved_until,
            },
            changes=dict(RELEASED_FIELDS),
        )
        if updated is None:
            self._logger.info("reservation_consumed_concurrently", ddi_id=ddi_id)
            return False

        self._logger.info(
            "reservation_expired",
            ddi_id=ddi_id,
            company_id=ddi.reserved_for_company_id,
        )
        return True

    async def set_next_renewal(self, ddi_id: str, company_id: str, next_renewal_at: date) -> Ddi:
        """
        Move the renewal date of a DID the company still holds.

        Suspended DIDs keep billing, so their date moves too.

        Raises:
            OwnershipMismatchError: DID is not held by the company
            ConflictError: DID is neither assigned nor suspended, or changed concurrently
        """
        ddi = await self._load(ddi_id)
        if ddi.company_id != company_id:
            raise OwnershipMismatchError(
                f"DDI {ddi.ddi} does not belong to company {company_id}",
                ddi_id=ddi_id,
                company_id=company_id,
            )
        if ddi.inventory_status not in RENEWABLE:
            raise ConflictError(
                f"DDI {ddi.ddi} cannot renew from {ddi.inventory_status.value}",
                current_state=ddi.inventory_status.value,
            )

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={"inventory_status": ddi.inventory_status, "company_id": company_id},
            changes={"next_renewal_at": next_renewal_at},
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} changed state before its renewal date moved")

        self._logger.info(
            "renewal_date_moved",
            ddi_id=ddi_id,
            company_id=company_id,
            next_renewal_at=next_renewal_at.isoformat(),
        )
        return updated

    async def advance_renewals(
        self,
        company_id: str,
        targets: List[Tuple[Ddi, date]],
    ) -> List[Ddi]:
        """
        Move several renewal dates as one unit.

        ``targets`` pairs each DID, as last read, with its new date. When
        any move fails the dates already moved are put back and the error
        is re-raised.
        """
        moved: List[Ddi] = []
        try:
            for ddi, next_renewal_at in targets:
                moved.append(await self.set_next_renewal(ddi.id, company_id, next_renewal_at))
        except Exception:
            await self.restore_renewals(company_id, [ddi for ddi, _ in targets[:len(moved)]])
            raise
        return moved

    async def restore_renewals(self, company_id: str, snapshots: List[Ddi]) -> None:
        """Put renewal dates back to the values held in ``snapshots``."""
        for ddi in snapshots:
            restored = await self._ddis.compare_and_set(
                ddi.id,
                expected={"company_id": company_id},
                changes={"next_renewal_at": ddi.next_renewal_at},
            )
            if restored is None:
                self._logger.error("renewal_date_not_restored", ddi_id=ddi.id, company_id=company_id)

    # -------------------------------------------------------------------------
    # Suspension
    # -------------------------------------------------------------------------

    async def suspend_ddi(
        self,
        ddi_id: str,
        company_id: str,
        now: datetime,
        reason: str = "",
    ) -> Ddi:
        """Suspend one assigned DID of a company."""
        return await self._toggle_suspension(
            ddi_id, company_id, now, reason,
            source=InventoryStatus.ASSIGNED,
            target=InventoryStatus.SUSPENDED,
            action=SuspensionAction.SUSPEND_DDI,
        )

    async def unsuspend_ddi(
        self,
        ddi_id: str,
        company_id: str,
        now: datetime,
        reason: str = "",
    ) -> Ddi:
        """Restore one suspended DID of a company."""
        return await self._toggle_suspension(
            ddi_id, company_id, now, reason,
            source=InventoryStatus.SUSPENDED,
            target=InventoryStatus.ASSIGNED,
            action=SuspensionAction.UNSUSPEND_DDI,
        )

    async def _toggle_suspension(
        self,
        ddi_id: str,
        company_id: str,
        now: datetime,
        reason: str,
        source: InventoryStatus,
        target: InventoryStatus,
        action: SuspensionAction,
    ) -> Ddi:
        ddi = await self._load(ddi_id)
        if ddi.company_id != company_id:
            raise OwnershipMismatchError(
                f"DDI {ddi.ddi} does not belong to company {company_id}",
                ddi_id=ddi_id,
                company_id=company_id,
            )
        if ddi.inventory_status != source:
            raise ConflictError(
                f"DDI {ddi.ddi} is {ddi.inventory_status.value}, expected {source.value}",
                current_state=ddi.inventory_status.value,
            )

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={"inventory_status": source, "company_id": company_id},
            changes={"inventory_status": target},
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} changed state concurrently")

        await self._log_suspension(action, company_id, now, reason, ddi_id=ddi_id)
        return updated

    async def suspend_company(self, company_id: str, now: datetime, reason: str = "") -> int:
        """Suspend every assigned DID of a company. Returns the number suspended."""
        ddis = await self._ddis.list_for_company(company_id, [InventoryStatus.ASSIGNED])
        count = await self._bulk_status(ddis, company_id, InventoryStatus.ASSIGNED, InventoryStatus.SUSPENDED)
        await self._log_suspension(SuspensionAction.SUSPEND, company_id, now, reason)
        return count

    async def unsuspend_company(self, company_id: str, now: datetime, reason: str = "") -> int:
        """Restore every suspended DID of a company. Returns the number restored."""
        ddis = await self._ddis.list_for_company(company_id, [InventoryStatus.SUSPENDED])
        count = await self._bulk_status(ddis, company_id, InventoryStatus.SUSPENDED, InventoryStatus.ASSIGNED)
        await self._log_suspension(SuspensionAction.UNSUSPEND, company_id, now, reason)
        return count

    async def _bulk_status(
        self,
        ddis: List[Ddi],
        company_id: str,
        source: InventoryStatus,
        target: InventoryStatus,
    ) -> int:
        count = 0
        for ddi in ddis:
            updated = await self._ddis.compare_and_set(
                ddi.id,
                expected={"inventory_status": source, "company_id": company_id},
                changes={"inventory_status": target},
            )
            if updated is not None:
                count += 1
        return count

    async def _log_suspension(
        self,
        action: SuspensionAction,
        company_id: str,
        now: datetime,
        reason: str,
        ddi_id: Optional[str] = None,
    ) -> None:
        self._logger.info(
            "suspension_recorded",
            action=action.value,
            company_id=company_id,
            ddi_id=ddi_id,
        )
        if self._suspension_logs is None:
            return
        await self._suspension_logs.append(
            SuspensionLog(
                action=action,
                company_id=company_id,
                ddi_id=ddi_id,
                reason=reason,
                created_at=now,
            )
        )

    async def disable(self, ddi_id: str) -> Ddi:
        """Administratively take a DID out of circulation."""
        ddi = await self._load(ddi_id)
        if not can_transition(ddi.inventory_status, InventoryStatus.DISABLED):
            raise ConflictError(f"DDI {ddi.ddi} is already disabled")

        updated = await self._ddis.compare_and_set(
            ddi_id,
            expected={"inventory_status": ddi.inventory_status},
            changes={
                "inventory_status": InventoryStatus.DISABLED,
                "company_id": None,
                "reserved_for_company_id": None,
                "reserved_until": None,
            },
        )
        if updated is None:
            raise ConflictError(f"DDI {ddi.ddi} changed state concurrently")
        self._logger.info("ddi_disabled", ddi_id=ddi_id)
        return updated


__all__ = [
    "TRANSITIONS",
    "RENEWABLE",
    "can_transition",
    "InventoryStateMachine",
]
