"""
Database Repositories

SQLAlchemy implementations of the engine's store interfaces. Each
operation runs in its own session. Conditional writes are a single
``UPDATE ... WHERE`` with the expected values in the predicate, and
succeed only when exactly one row matched.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type

from sqlalchemy import and_, asc, desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from did_core.billing.base import (
    BalanceMovement,
    BillingMethod,
    Company,
    CompanyStore,
    Invoice,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    RenewalMode,
    SyncStatus,
    quantize_money,
)
from did_core.inventory.base import (
    Ddi,
    DdiStore,
    DidOrder,
    DidOrderStore,
    InventoryStatus,
    OrderStatus,
    SuspensionAction,
    SuspensionLog,
    SuspensionLogStore,
)
from did_core.sync.tasks import SyncTask, SyncTaskStore

from .base import Base, DatabaseManager
from .models import (
    BalanceMovementModel,
    CompanyModel,
    DdiModel,
    DidOrderModel,
    InvoiceModel,
    SuspensionLogModel,
    SyncTaskModel,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Helpers
# =============================================================================


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _money(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return quantize_money(Decimal(value))


async def _conditional_update(
    session: AsyncSession,
    model: Type[Base],
    row_id: str,
    expected: Dict[str, Any],
    changes: Dict[str, Any],
) -> bool:
    """Run one guarded UPDATE. Returns True when exactly one row changed."""
    conditions = [model.id == row_id]
    for key, value in expected.items():
        column = getattr(model, key)
        value = _column_value(value)
        conditions.append(column.is_(None) if value is None else column == value)

    stmt = (
        update(model)
        .where(and_(*conditions))
        .values(**{key: _column_value(value) for key, value in changes.items()})
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        logger.debug("Conditional update on %s %s matched no row", model.__tablename__, row_id)
        return False
    return True


# =============================================================================
# Row Conversion
# =============================================================================


def _to_ddi(row: DdiModel) -> Ddi:
    return Ddi(
        id=row.id,
        ddi=row.ddi,
        brand_id=row.brand_id,
        inventory_status=InventoryStatus(row.inventory_status),
        company_id=row.company_id,
        reserved_for_company_id=row.reserved_for_company_id,
        reserved_until=row.reserved_until,
        monthly_price=_money(row.monthly_price),
        setup_price=_money(row.setup_price),
        assigned_at=row.assigned_at,
        next_renewal_at=row.next_renewal_at,
        is_byon=bool(row.is_byon),
    )


def _to_order(row: DidOrderModel) -> DidOrder:
    return DidOrder(
        id=row.id,
        ddi_id=row.ddi_id,
        company_id=row.company_id,
        requested_at=row.requested_at,
        status=OrderStatus(row.status),
        setup_fee=_money(row.setup_fee),
        monthly_fee=_money(row.monthly_fee),
        approved_at=row.approved_at,
        approved_by_admin_id=row.approved_by_admin_id,
        rejected_at=row.rejected_at,
        rejected_by_admin_id=row.rejected_by_admin_id,
        rejection_reason=row.rejection_reason,
        expired_at=row.expired_at,
    )


def _to_company(row: CompanyModel) -> Company:
    return Company(
        id=row.id,
        name=row.name,
        brand_id=row.brand_id,
        billing_method=BillingMethod(row.billing_method),
        balance=_money(row.balance),
        billing_client_id=row.billing_client_id,
        did_renewal_mode=RenewalMode(row.did_renewal_mode),
        did_renewal_anchor=row.did_renewal_anchor,
    )


def _to_invoice(row: InvoiceModel) -> Invoice:
    return Invoice(
        id=row.id,
        number=row.number,
        company_id=row.company_id,
        brand_id=row.brand_id,
        invoice_type=InvoiceType(row.invoice_type),
        created_at=row.created_at,
        status=InvoiceStatus(row.status),
        total=_money(row.total),
        total_with_tax=_money(row.total_with_tax),
        ddi_id=row.ddi_id,
        renewal_ddi_ids=list(row.renewal_ddi_ids or []),
        period_end=row.period_end,
        notes=row.notes or "",
        sync_status=SyncStatus(row.sync_status),
        external_invoice_id=row.external_invoice_id,
        sync_attempts=row.sync_attempts or 0,
        sync_error=row.sync_error,
        sync_locked_until=row.sync_locked_until,
        paid_at=row.paid_at,
    )


def _to_task(row: SyncTaskModel) -> SyncTask:
    return SyncTask(
        invoice_id=row.id,
        run_at=row.run_at,
        attempt=row.attempt or 0,
        locked_until=row.locked_until,
    )


# =============================================================================
# Inventory Stores
# =============================================================================


class SqlDdiStore(DdiStore):
    """DID store backed by the ``ddis`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def create(self, ddi: Ddi) -> None:
        try:
            async with self._db.session() as session:
                session.add(DdiModel(
                    id=ddi.id,
                    ddi=ddi.ddi,
                    brand_id=ddi.brand_id,
                    inventory_status=ddi.inventory_status.value,
                    company_id=ddi.company_id,
                    reserved_for_company_id=ddi.reserved_for_company_id,
                    reserved_until=ddi.reserved_until,
                    monthly_price=ddi.monthly_price,
                    setup_price=ddi.setup_price,
                    assigned_at=ddi.assigned_at,
                    next_renewal_at=ddi.next_renewal_at,
                    is_byon=ddi.is_byon,
                ))
        except IntegrityError as e:
            logger.warning(f"Duplicate DID rejected: {ddi.ddi}")
            raise ValueError(f"DID {ddi.ddi} already exists") from e

    async def get(self, ddi_id: str) -> Optional[Ddi]:
        async with self._db.session() as session:
            row = await session.get(DdiModel, ddi_id)
            return _to_ddi(row) if row else None

    async def get_by_number(self, number: str) -> Optional[Ddi]:
        async with self._db.session() as session:
            result = await session.execute(select(DdiModel).where(DdiModel.ddi == number))
            row = result.scalar_one_or_none()
            return _to_ddi(row) if row else None

    async def compare_and_set(
        self,
        ddi_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Ddi]:
        async with self._db.session() as session:
            if not await _conditional_update(session, DdiModel, ddi_id, expected, changes):
                return None
            row = await session.get(DdiModel, ddi_id, populate_existing=True)
            return _to_ddi(row)

    async def list_due_for_renewal(self, on_date: date) -> List[Ddi]:
        async with self._db.session() as session:
            result = await session.execute(
                select(DdiModel)
                .where(
                    and_(
                        DdiModel.inventory_status == InventoryStatus.ASSIGNED.value,
                        DdiModel.next_renewal_at.is_not(None),
                        DdiModel.next_renewal_at <= on_date,
                        DdiModel.monthly_price > 0,
                    )
                )
                .order_by(asc(DdiModel.company_id), asc(DdiModel.next_renewal_at), asc(DdiModel.ddi))
            )
            return [_to_ddi(row) for row in result.scalars().all()]

    async def list_for_company(
        self,
        company_id: str,
        statuses: Optional[Iterable[InventoryStatus]] = None,
    ) -> List[Ddi]:
        query = select(DdiModel).where(DdiModel.company_id == company_id)
        if statuses is not None:
            query = query.where(DdiModel.inventory_status.in_([s.value for s in statuses]))
        async with self._db.session() as session:
            result = await session.execute(query.order_by(asc(DdiModel.ddi)))
            return [_to_ddi(row) for row in result.scalars().all()]

    async def list_lapsed_reservations(
        self,
        now: datetime,
        company_id: Optional[str] = None,
    ) -> List[Ddi]:
        query = select(DdiModel).where(
            and_(
                DdiModel.inventory_status == InventoryStatus.RESERVED.value,
                DdiModel.reserved_until.is_not(None),
                DdiModel.reserved_until < now,
            )
        )
        if company_id is not None:
            query = query.where(DdiModel.reserved_for_company_id == company_id)
        async with self._db.session() as session:
            result = await session.execute(query.order_by(asc(DdiModel.reserved_until)))
            return [_to_ddi(row) for row in result.scalars().all()]


class SqlDidOrderStore(DidOrderStore):
    """Order store backed by the ``did_orders`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def create(self, order: DidOrder) -> None:
        async with self._db.session() as session:
            session.add(DidOrderModel(
                id=order.id,
                ddi_id=order.ddi_id,
                company_id=order.company_id,
                requested_at=order.requested_at,
                status=order.status.value,
                setup_fee=order.setup_fee,
                monthly_fee=order.monthly_fee,
                approved_at=order.approved_at,
                approved_by_admin_id=order.approved_by_admin_id,
                rejected_at=order.rejected_at,
                rejected_by_admin_id=order.rejected_by_admin_id,
                rejection_reason=order.rejection_reason,
                expired_at=order.expired_at,
            ))

    async def get(self, order_id: str) -> Optional[DidOrder]:
        async with self._db.session() as session:
            row = await session.get(DidOrderModel, order_id)
            return _to_order(row) if row else None

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[DidOrder]:
        values = dict(changes or {})
        values["status"] = new_status
        async with self._db.session() as session:
            if not await _conditional_update(
                session, DidOrderModel, order_id, {"status": expected}, values
            ):
                return None
            row = await session.get(DidOrderModel, order_id, populate_existing=True)
            return _to_order(row)

    async def find_pending_by_ddi(self, ddi_id: str) -> Optional[DidOrder]:
        async with self._db.session() as session:
            result = await session.execute(
                select(DidOrderModel)
                .where(
                    and_(
                        DidOrderModel.ddi_id == ddi_id,
                        DidOrderModel.status == OrderStatus.PENDING_APPROVAL.value,
                    )
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_order(row) if row else None

    async def list_pending(self, company_id: Optional[str] = None) -> List[DidOrder]:
        query = select(DidOrderModel).where(
            DidOrderModel.status == OrderStatus.PENDING_APPROVAL.value
        )
        if company_id is not None:
            query = query.where(DidOrderModel.company_id == company_id)
        async with self._db.session() as session:
            result = await session.execute(query.order_by(asc(DidOrderModel.requested_at)))
            return [_to_order(row) for row in result.scalars().all()]

    async def list_expired(self, now: datetime, company_id: Optional[str] = None) -> List[DidOrder]:
        query = (
            select(DidOrderModel)
            .join(DdiModel, DdiModel.id == DidOrderModel.ddi_id)
            .where(
                and_(
                    DidOrderModel.status == OrderStatus.PENDING_APPROVAL.value,
                    DdiModel.reserved_until.is_not(None),
                    DdiModel.reserved_until < now,
                )
            )
        )
        if company_id is not None:
            query = query.where(DidOrderModel.company_id == company_id)
        async with self._db.session() as session:
            result = await session.execute(query.order_by(asc(DidOrderModel.requested_at)))
            return [_to_order(row) for row in result.scalars().all()]


class SqlSuspensionLogStore(SuspensionLogStore):
    """Suspension log backed by the ``suspension_logs`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def append(self, entry: SuspensionLog) -> None:
        async with self._db.session() as session:
            session.add(SuspensionLogModel(
                id=entry.id,
                action=entry.action.value,
                company_id=entry.company_id,
                ddi_id=entry.ddi_id,
                reason=entry.reason,
                created_at=entry.created_at,
            ))

    async def list_for_company(self, company_id: str) -> List[SuspensionLog]:
        async with self._db.session() as session:
            result = await session.execute(
                select(SuspensionLogModel)
                .where(SuspensionLogModel.company_id == company_id)
                .order_by(asc(SuspensionLogModel.created_at))
            )
            return [
                SuspensionLog(
                    id=row.id,
                    action=SuspensionAction(row.action),
                    company_id=row.company_id,
                    ddi_id=row.ddi_id,
                    reason=row.reason or "",
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]


# =============================================================================
# Billing Stores
# =============================================================================


class SqlCompanyStore(CompanyStore):
    """Company store backed by the ``companies`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def create(self, company: Company) -> None:
        async with self._db.session() as session:
            session.add(CompanyModel(
                id=company.id,
                name=company.name,
                brand_id=company.brand_id,
                billing_method=company.billing_method.value,
                balance=company.balance,
                billing_client_id=company.billing_client_id,
                did_renewal_mode=company.did_renewal_mode.value,
                did_renewal_anchor=company.did_renewal_anchor,
            ))

    async def get(self, company_id: str) -> Optional[Company]:
        async with self._db.session() as session:
            row = await session.get(CompanyModel, company_id)
            return _to_company(row) if row else None

    async def adjust_balance(
        self,
        company_id: str,
        delta: Decimal,
        minimum: Optional[Decimal] = None,
    ) -> Optional[Decimal]:
        stmt = update(CompanyModel).where(CompanyModel.id == company_id)
        if minimum is not None:
            stmt = stmt.where(CompanyModel.balance + delta >= minimum)
        stmt = stmt.values(balance=CompanyModel.balance + delta).execution_options(
            synchronize_session=False
        )

        async with self._db.session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            balance = await session.scalar(
                select(CompanyModel.balance).where(CompanyModel.id == company_id)
            )
            return _money(balance)

    async def set_renewal_anchor(self, company_id: str, anchor: Optional[date]) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(CompanyModel)
                .where(CompanyModel.id == company_id)
                .values(did_renewal_anchor=anchor)
                .execution_options(synchronize_session=False)
            )

    async def add_balance_movement(self, movement: BalanceMovement) -> None:
        async with self._db.session() as session:
            session.add(BalanceMovementModel(
                id=movement.id,
                company_id=movement.company_id,
                amount=movement.amount,
                balance_after=movement.balance_after,
                reason=movement.reason,
                created_at=movement.created_at,
            ))

    async def list_balance_movements(self, company_id: str) -> List[BalanceMovement]:
        async with self._db.session() as session:
            result = await session.execute(
                select(BalanceMovementModel)
                .where(BalanceMovementModel.company_id == company_id)
                .order_by(asc(BalanceMovementModel.created_at))
            )
            return [
                BalanceMovement(
                    id=row.id,
                    company_id=row.company_id,
                    amount=_money(row.amount),
                    balance_after=_money(row.balance_after),
                    reason=row.reason or "",
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]


class SqlInvoiceStore(InvoiceStore):
    """Invoice store backed by the ``invoices`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def create(self, invoice: Invoice) -> None:
        async with self._db.session() as session:
            session.add(InvoiceModel(
                id=invoice.id,
                number=invoice.number,
                company_id=invoice.company_id,
                brand_id=invoice.brand_id,
                invoice_type=invoice.invoice_type.value,
                status=invoice.status.value,
                total=invoice.total,
                total_with_tax=invoice.total_with_tax,
                ddi_id=invoice.ddi_id,
                renewal_ddi_ids=list(invoice.renewal_ddi_ids),
                period_end=invoice.period_end,
                notes=invoice.notes,
                sync_status=invoice.sync_status.value,
                external_invoice_id=invoice.external_invoice_id,
                sync_attempts=invoice.sync_attempts,
                sync_error=invoice.sync_error,
                sync_locked_until=invoice.sync_locked_until,
                created_at=invoice.created_at,
                paid_at=invoice.paid_at,
            ))

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        async with self._db.session() as session:
            row = await session.get(InvoiceModel, invoice_id)
            return _to_invoice(row) if row else None

    async def compare_and_set(
        self,
        invoice_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> Optional[Invoice]:
        async with self._db.session() as session:
            if not await _conditional_update(session, InvoiceModel, invoice_id, expected, changes):
                return None
            row = await session.get(InvoiceModel, invoice_id, populate_existing=True)
            return _to_invoice(row)

    async def claim_sync(
        self,
        invoice_id: str,
        now: datetime,
        lease: timedelta,
    ) -> Optional[Invoice]:
        stmt = (
            update(InvoiceModel)
            .where(
                and_(
                    InvoiceModel.id == invoice_id,
                    InvoiceModel.sync_status == SyncStatus.PENDING.value,
                    or_(
                        InvoiceModel.sync_locked_until.is_(None),
                        InvoiceModel.sync_locked_until <= now,
                    ),
                )
            )
            .values(sync_locked_until=now + lease)
            .execution_options(synchronize_session=False)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await session.get(InvoiceModel, invoice_id, populate_existing=True)
            return _to_invoice(row)

    async def list_for_company(self, company_id: str) -> List[Invoice]:
        async with self._db.session() as session:
            result = await session.execute(
                select(InvoiceModel)
                .where(InvoiceModel.company_id == company_id)
                .order_by(desc(InvoiceModel.created_at))
            )
            return [_to_invoice(row) for row in result.scalars().all()]

    async def list_by_sync_status(self, sync_status: SyncStatus) -> List[Invoice]:
        async with self._db.session() as session:
            result = await session.execute(
                select(InvoiceModel)
                .where(InvoiceModel.sync_status == sync_status.value)
                .order_by(asc(InvoiceModel.created_at))
            )
            return [_to_invoice(row) for row in result.scalars().all()]


# =============================================================================
# Sync Task Store
# =============================================================================


class SqlSyncTaskStore(SyncTaskStore):
    """Durable task store backed by the ``sync_tasks`` table."""

    def __init__(self, db: DatabaseManager):
        self._db = db

    async def schedule(self, task: SyncTask) -> None:
        async with self._db.session() as session:
            row = await session.get(SyncTaskModel, task.invoice_id)
            if row is None:
                session.add(SyncTaskModel(
                    id=task.invoice_id,
                    run_at=task.run_at,
                    attempt=task.attempt,
                    locked_until=None,
                ))
            else:
                row.run_at = task.run_at
                row.attempt = task.attempt
                row.locked_until = None

    async def get(self, invoice_id: str) -> Optional[SyncTask]:
        async with self._db.session() as session:
            row = await session.get(SyncTaskModel, invoice_id)
            return _to_task(row) if row else None

    async def claim_due(
        self,
        now: datetime,
        lease: timedelta,
        limit: int = 50,
    ) -> List[SyncTask]:
        unlocked = or_(SyncTaskModel.locked_until.is_(None), SyncTaskModel.locked_until <= now)
        claimed: List[SyncTask] = []

        async with self._db.session() as session:
            result = await session.execute(
                select(SyncTaskModel.id)
                .where(and_(SyncTaskModel.run_at <= now, unlocked))
                .order_by(asc(SyncTaskModel.run_at))
                .limit(limit)
            )
            for task_id in result.scalars().all():
                leased = await session.execute(
                    update(SyncTaskModel)
                    .where(and_(SyncTaskModel.id == task_id, unlocked))
                    .values(locked_until=now + lease)
                    .execution_options(synchronize_session=False)
                )
                if leased.rowcount != 1:
                    continue
                row = await session.get(SyncTaskModel, task_id, populate_existing=True)
                claimed.append(_to_task(row))

        return claimed

    async def complete(self, invoice_id: str) -> None:
        async with self._db.session() as session:
            row = await session.get(SyncTaskModel, invoice_id)
            if row is not None:
                await session.delete(row)

    async def list_all(self) -> List[SyncTask]:
        async with self._db.session() as session:
            result = await session.execute(
                select(SyncTaskModel).order_by(asc(SyncTaskModel.run_at))
            )
            return [_to_task(row) for row in result.scalars().all()]


__all__ = [
    "SqlDdiStore",
    "SqlDidOrderStore",
    "SqlSuspensionLogStore",
    "SqlCompanyStore",
    "SqlInvoiceStore",
    "SqlSyncTaskStore",
]
