"""Unit tests for the DID inventory state machine."""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from did_core.errors import ConflictError, NotFoundError, OwnershipMismatchError, ValidationError
from did_core.inventory.base import Ddi, InventoryStatus, SuspensionAction
from did_core.inventory.memory import InMemoryDdiStore, InMemorySuspensionLogStore
from did_core.inventory.state_machine import InventoryStateMachine, can_transition


NOW = datetime(2026, 1, 15, 10, 0, 0)


@pytest.fixture
def store():
    return InMemoryDdiStore()


@pytest.fixture
def logs():
    return InMemorySuspensionLogStore()


@pytest.fixture
def machine(store, logs):
    return InventoryStateMachine(store, logs)


async def _stored(store, **kwargs) -> Ddi:
    ddi = Ddi(ddi=kwargs.pop("ddi", "+34910000001"), brand_id="brand-1", **kwargs)
    await store.create(ddi)
    return ddi


class TestDdiRecord:
    """Tests for DID record validation."""

    def test_rejects_malformed_number(self):
        """Numbers must be E.164."""
        with pytest.raises(ValidationError):
            Ddi(ddi="0034910000001", brand_id="brand-1")

    def test_rejects_negative_price(self):
        """Prices cannot be negative."""
        with pytest.raises(ValidationError):
            Ddi(ddi="+34910000001", brand_id="brand-1", monthly_price=Decimal("-1"))

    def test_transition_table(self):
        """Only the documented transitions are legal."""
        assert can_transition(InventoryStatus.AVAILABLE, InventoryStatus.RESERVED)
        assert can_transition(InventoryStatus.SUSPENDED, InventoryStatus.ASSIGNED)
        assert can_transition(InventoryStatus.ASSIGNED, InventoryStatus.DISABLED)
        assert not can_transition(InventoryStatus.SUSPENDED, InventoryStatus.AVAILABLE)
        assert not can_transition(InventoryStatus.DISABLED, InventoryStatus.AVAILABLE)


class TestReservation:
    """Tests for reserving and expiring DIDs."""

    @pytest.mark.asyncio
    async def test_reserve_available(self, store, machine):
        """Reserving sets the holder and the window."""
        ddi = await _stored(store)

        reserved = await machine.reserve(ddi.id, "company-a", NOW)

        assert reserved.inventory_status == InventoryStatus.RESERVED
        assert reserved.reserved_for_company_id == "company-a"
        assert reserved.reserved_until == NOW + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_reserve_not_available(self, store, machine):
        """A reserved DID cannot be reserved again."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW)

        with pytest.raises(ConflictError):
            await machine.reserve(ddi.id, "company-b", NOW)

    @pytest.mark.asyncio
    async def test_concurrent_reserve_single_winner(self, store, machine):
        """Of many concurrent reservations exactly one succeeds."""
        ddi = await _stored(store)

        results = await asyncio.gather(
            *(machine.reserve(ddi.id, f"company-{i}", NOW) for i in range(8)),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Ddi)]
        losers = [r for r in results if isinstance(r, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 7

        stored = await store.get(ddi.id)
        assert stored.reserved_for_company_id == winners[0].reserved_for_company_id

    @pytest.mark.asyncio
    async def test_reserve_unknown(self, machine):
        """Unknown DIDs raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await machine.reserve("missing", "company-a", NOW)

    @pytest.mark.asyncio
    async def test_expire_lapsed_reservation(self, store, machine):
        """A lapsed reservation returns the DID to the pool."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW, ttl=timedelta(hours=1))

        assert await machine.expire_reservation(ddi.id, NOW + timedelta(hours=2)) is True

        stored = await store.get(ddi.id)
        assert stored.inventory_status == InventoryStatus.AVAILABLE
        assert stored.company_id is None
        assert stored.reserved_until is None

    @pytest.mark.asyncio
    async def test_expire_inside_window(self, store, machine):
        """A live reservation cannot be expired."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW)

        with pytest.raises(ConflictError):
            await machine.expire_reservation(ddi.id, NOW + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_expire_already_assigned(self, store, machine):
        """Expiry after approval is a no-op."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW, ttl=timedelta(hours=1))
        await machine.confirm_assignment(ddi.id, "company-a", NOW)

        assert await machine.expire_reservation(ddi.id, NOW + timedelta(hours=2)) is False
        assert (await store.get(ddi.id)).inventory_status == InventoryStatus.ASSIGNED


class TestAssignmentAndRelease:
    """Tests for assignment and release."""

    @pytest.mark.asyncio
    async def test_confirm_reserved_same_company(self, store, machine):
        """The reservation holder can be assigned."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW)

        assigned = await machine.confirm_assignment(
            ddi.id, "company-a", NOW, next_renewal_at=date(2026, 2, 15)
        )

        assert assigned.inventory_status == InventoryStatus.ASSIGNED
        assert assigned.company_id == "company-a"
        assert assigned.reserved_for_company_id is None
        assert assigned.next_renewal_at == date(2026, 2, 15)
        assert assigned.assigned_at == NOW

    @pytest.mark.asyncio
    async def test_confirm_reserved_other_company(self, store, machine):
        """Another company cannot take a reserved DID."""
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW)

        with pytest.raises(OwnershipMismatchError):
            await machine.confirm_assignment(ddi.id, "company-b", NOW)

    @pytest.mark.asyncio
    async def test_confirm_available_directly(self, store, machine):
        """Available DIDs can be assigned without a reservation."""
        ddi = await _stored(store)

        assigned = await machine.confirm_assignment(ddi.id, "company-a", NOW)

        assert assigned.inventory_status == InventoryStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_release_keeps_prices(self, store, machine):
        """Released DIDs are recycled with their catalog prices."""
        ddi = await _stored(store, monthly_price=Decimal("12.50"), setup_price=Decimal("5.00"))
        await machine.confirm_assignment(ddi.id, "company-a", NOW, next_renewal_at=date(2026, 2, 15))

        released = await machine.release(ddi.id)

        assert released.id == ddi.id
        assert released.inventory_status == InventoryStatus.AVAILABLE
        assert released.company_id is None
        assert released.next_renewal_at is None
        assert released.monthly_price == Decimal("12.50")
        assert released.setup_price == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_release_available_rejected(self, store, machine):
        """Only assigned or reserved DIDs can be released."""
        ddi = await _stored(store)

        with pytest.raises(ConflictError):
            await machine.release(ddi.id)

    @pytest.mark.asyncio
    async def test_disable(self, store, machine):
        """Disabled DIDs cannot be disabled twice."""
        ddi = await _stored(store)

        disabled = await machine.disable(ddi.id)
        assert disabled.inventory_status == InventoryStatus.DISABLED

        with pytest.raises(ConflictError):
            await machine.disable(ddi.id)


class TestSuspension:
    """Tests for suspension and its audit log."""

    @pytest.mark.asyncio
    async def test_suspend_and_restore_company(self, store, machine, logs):
        """Company suspension touches only its assigned DIDs."""
        first = await _stored(store, ddi="+34910000001")
        second = await _stored(store, ddi="+34910000002")
        other = await _stored(store, ddi="+34910000003")
        await machine.confirm_assignment(first.id, "company-a", NOW)
        await machine.confirm_assignment(second.id, "company-a", NOW)
        await machine.confirm_assignment(other.id, "company-b", NOW)

        assert await machine.suspend_company("company-a", NOW, reason="unpaid") == 2
        assert (await store.get(first.id)).inventory_status == InventoryStatus.SUSPENDED
        assert (await store.get(other.id)).inventory_status == InventoryStatus.ASSIGNED

        assert await machine.unsuspend_company("company-a", NOW) == 2
        assert (await store.get(second.id)).inventory_status == InventoryStatus.ASSIGNED

        entries = await logs.list_for_company("company-a")
        assert [e.action for e in entries] == [SuspensionAction.SUSPEND, SuspensionAction.UNSUSPEND]
        assert entries[0].reason == "unpaid"

    @pytest.mark.asyncio
    async def test_suspend_ddi_wrong_owner(self, store, machine):
        """Single-DID suspension checks ownership."""
        ddi = await _stored(store)
        await machine.confirm_assignment(ddi.id, "company-a", NOW)

        with pytest.raises(OwnershipMismatchError):
            await machine.suspend_ddi(ddi.id, "company-b", NOW)

    @pytest.mark.asyncio
    async def test_suspend_ddi_logged(self, store, machine, logs):
        """Single-DID suspension is logged with the DID."""
        ddi = await _stored(store)
        await machine.confirm_assignment(ddi.id, "company-a", NOW)

        await machine.suspend_ddi(ddi.id, "company-a", NOW)
        await machine.unsuspend_ddi(ddi.id, "company-a", NOW)

        entries = await logs.list_for_company("company-a")
        assert [e.action for e in entries] == [
            SuspensionAction.SUSPEND_DDI,
            SuspensionAction.UNSUSPEND_DDI,
        ]
        assert all(e.ddi_id == ddi.id for e in entries)


class TestRenewalDates:
    """Tests for moving renewal dates."""

    @pytest.mark.asyncio
    async def test_suspended_did_keeps_billing(self, store, machine):
        ddi = await _stored(store)
        await machine.confirm_assignment(ddi.id, "company-a", NOW, next_renewal_at=date(2026, 2, 15))
        await machine.suspend_ddi(ddi.id, "company-a", NOW)

        updated = await machine.set_next_renewal(ddi.id, "company-a", date(2026, 3, 15))

        assert updated.next_renewal_at == date(2026, 3, 15)
        assert updated.inventory_status == InventoryStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_other_owner_rejected(self, store, machine):
        ddi = await _stored(store)
        await machine.confirm_assignment(ddi.id, "company-a", NOW, next_renewal_at=date(2026, 2, 15))

        with pytest.raises(OwnershipMismatchError):
            await machine.set_next_renewal(ddi.id, "company-b", date(2026, 3, 15))

        assert (await store.get(ddi.id)).next_renewal_at == date(2026, 2, 15)

    @pytest.mark.asyncio
    async def test_reserved_did_not_renewable(self, store, machine):
        ddi = await _stored(store)
        await machine.reserve(ddi.id, "company-a", NOW)

        with pytest.raises(ConflictError):
            await machine.set_next_renewal(ddi.id, "company-a", date(2026, 3, 15))

    @pytest.mark.asyncio
    async def test_advance_is_all_or_nothing(self, store, machine):
        """A failed move puts back the dates already moved."""
        first = await _stored(store)
        second = await _stored(store, ddi="+34910000002")
        await machine.confirm_assignment(first.id, "company-a", NOW, next_renewal_at=date(2026, 1, 15))
        await machine.confirm_assignment(second.id, "company-b", NOW, next_renewal_at=date(2026, 1, 15))
        first = await store.get(first.id)
        second = await store.get(second.id)

        with pytest.raises(OwnershipMismatchError):
            await machine.advance_renewals(
                "company-a",
                [(first, date(2026, 2, 15)), (second, date(2026, 2, 15))],
            )

        assert (await store.get(first.id)).next_renewal_at == date(2026, 1, 15)
        assert (await store.get(second.id)).next_renewal_at == date(2026, 1, 15)
