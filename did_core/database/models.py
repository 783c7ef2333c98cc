"""
Database Models

SQLAlchemy ORM models for inventory, billing and sync entities.
Enum columns hold the enum value as a plain string.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


# =============================================================================
# Inventory Models
# =============================================================================


class DdiModel(Base, TimestampMixin):
    """Phone number inventory row."""

    __tablename__ = "ddis"

    ddi: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    brand_id: Mapped[str] = mapped_column(String(36), nullable=False)

    inventory_status: Mapped[str] = mapped_column(String(20), default="available", nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reserved_for_company_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reserved_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Pricing
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    setup_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))

    # Lifecycle
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_renewal_at: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_byon: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        Index("ix_ddis_company_id", "company_id"),
        Index("ix_ddis_inventory_status", "inventory_status"),
        Index("ix_ddis_next_renewal_at", "next_renewal_at"),
    )


class DidOrderModel(Base, TimestampMixin):
    """Postpaid DID order row."""

    __tablename__ = "did_orders"

    ddi_id: Mapped[str] = mapped_column(String(36), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending_approval", nullable=False)

    setup_fee: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    monthly_fee: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_by_admin_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rejected_by_admin_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_did_orders_status", "status"),
        Index("ix_did_orders_ddi_id", "ddi_id"),
    )


class SuspensionLogModel(Base):
    """Suspension audit row."""

    __tablename__ = "suspension_logs"

    action: Mapped[str] = mapped_column(String(20), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    ddi_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_suspension_logs_company_id", "company_id"),
    )


# =============================================================================
# Billing Models
# =============================================================================


class CompanyModel(Base, TimestampMixin):
    """Company billing fields."""

    __tablename__ = "companies"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand_id: Mapped[str] = mapped_column(String(36), nullable=False)
    billing_method: Mapped[str] = mapped_column(String(20), default="prepaid", nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    billing_client_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    did_renewal_mode: Mapped[str] = mapped_column(String(20), default="per_did", nullable=False)
    did_renewal_anchor: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


class BalanceMovementModel(Base):
    """Append-only balance movement."""

    __tablename__ = "balance_movements"

    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_balance_movements_company_id", "company_id"),
    )


class InvoiceModel(Base):
    """Locally created invoice."""

    __tablename__ = "invoices"

    number: Mapped[str] = mapped_column(String(100), nullable=False)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    brand_id: Mapped[str] = mapped_column(String(36), nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="created", nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    total_with_tax: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)

    # Linked inventory
    ddi_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    renewal_ddi_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")

    # External sync
    sync_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    external_invoice_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    sync_attempts: Mapped[int] = mapped_column(Integer, default=0)
    sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sync_locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_invoices_company_id", "company_id"),
        Index("ix_invoices_sync_status", "sync_status"),
    )


# =============================================================================
# Sync Models
# =============================================================================


class SyncTaskModel(Base):
    """Durable sync task; the primary key is the invoice id."""

    __tablename__ = "sync_tasks"

    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sync_tasks_run_at", "run_at"),
    )


__all__ = [
    "DdiModel",
    "DidOrderModel",
    "SuspensionLogModel",
    "CompanyModel",
    "BalanceMovementModel",
    "InvoiceModel",
    "SyncTaskModel",
]
