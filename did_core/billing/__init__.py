# Billing records, decisions and renewal

from did_core.billing.balance import BalanceService, StoreBalanceService
from did_core.billing.base import (
    BillingMethod,
    Company,
    CompanyStore,
    Invoice,
    InvoiceListener,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    RenewalMode,
    SyncStatus,
    is_syncable,
)
from did_core.billing.periods import FirstPeriodCalculator, add_months
from did_core.billing.policy import BillingDecision, BillingDecisionPolicy
from did_core.billing.renewal import RenewalRunResult, RenewalScheduler
from did_core.billing.topup import BalanceTopUpService

__all__ = [
    "BalanceService",
    "StoreBalanceService",
    "BillingMethod",
    "Company",
    "CompanyStore",
    "Invoice",
    "InvoiceListener",
    "InvoiceStatus",
    "InvoiceStore",
    "InvoiceType",
    "RenewalMode",
    "SyncStatus",
    "is_syncable",
    "FirstPeriodCalculator",
    "add_months",
    "BillingDecision",
    "BillingDecisionPolicy",
    "RenewalRunResult",
    "RenewalScheduler",
    "BalanceTopUpService",
]
