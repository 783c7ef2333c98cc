# Payment reconciliation

from did_core.reconciliation.dispatcher import (
    PaymentReconciliationDispatcher,
    ReconciliationResult,
    should_trigger,
)
from did_core.reconciliation.handlers import (
    BalanceTopUpHandler,
    DidPurchaseHandler,
    DidRenewalHandler,
    DidRenewalOverdueHandler,
    HandlerOutcome,
    InvoiceTypeHandler,
    StandardInvoiceHandler,
)

__all__ = [
    "PaymentReconciliationDispatcher",
    "ReconciliationResult",
    "should_trigger",
    "BalanceTopUpHandler",
    "DidPurchaseHandler",
    "DidRenewalHandler",
    "DidRenewalOverdueHandler",
    "HandlerOutcome",
    "InvoiceTypeHandler",
    "StandardInvoiceHandler",
]
