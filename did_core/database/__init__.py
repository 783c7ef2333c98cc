"""
Database Package

SQLAlchemy persistence for the engine's stores.
"""

from .base import Base, DatabaseManager, TimestampMixin
from .repositories import (
    SqlCompanyStore,
    SqlDdiStore,
    SqlDidOrderStore,
    SqlInvoiceStore,
    SqlSuspensionLogStore,
    SqlSyncTaskStore,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "TimestampMixin",
    "SqlCompanyStore",
    "SqlDdiStore",
    "SqlDidOrderStore",
    "SqlInvoiceStore",
    "SqlSuspensionLogStore",
    "SqlSyncTaskStore",
]
