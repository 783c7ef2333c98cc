# External billing synchronization

from did_core.sync.client import BillingApiClient, FakeBillingApiClient, HttpBillingApiClient
from did_core.sync.engine import (
    BACKOFF_DELAYS,
    MAX_ATTEMPTS,
    BillingSyncEngine,
    SyncResult,
    can_retry,
    get_backoff_delay,
)
from did_core.sync.tasks import InMemorySyncTaskStore, SyncTask, SyncTaskStore
from did_core.sync.worker import SyncRunResult, SyncTaskWorker

__all__ = [
    "BillingApiClient",
    "FakeBillingApiClient",
    "HttpBillingApiClient",
    "BACKOFF_DELAYS",
    "MAX_ATTEMPTS",
    "BillingSyncEngine",
    "SyncResult",
    "can_retry",
    "get_backoff_delay",
    "InMemorySyncTaskStore",
    "SyncTask",
    "SyncTaskStore",
    "SyncRunResult",
    "SyncTaskWorker",
]
