"""
Engine Assembly

Wires stores, collaborators and services into one object. The in-memory
build serves tests and local runs; the database build backs the CLI.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from did_core.billing.balance import BalanceService, StoreBalanceService
from did_core.billing.base import CompanyStore, InvoiceStore
from did_core.billing.memory import InMemoryCompanyStore, InMemoryInvoiceStore
from did_core.billing.policy import BillingDecisionPolicy
from did_core.billing.renewal import RenewalScheduler
from did_core.billing.topup import BalanceTopUpService
from did_core.config import Settings
from did_core.database.base import DatabaseManager
from did_core.database.repositories import (
    SqlCompanyStore,
    SqlDdiStore,
    SqlDidOrderStore,
    SqlInvoiceStore,
    SqlSuspensionLogStore,
    SqlSyncTaskStore,
)
from did_core.inventory.base import DdiStore, DidOrderStore, SuspensionLogStore
from did_core.inventory.memory import (
    InMemoryDdiStore,
    InMemoryDidOrderStore,
    InMemorySuspensionLogStore,
)
from did_core.inventory.orders import DidOrderApprovalService, DidOrderService
from did_core.inventory.purchase import DidPurchaseService
from did_core.inventory.reaper import ReservationExpiryReaper
from did_core.inventory.release import DidReleaseService
from did_core.inventory.state_machine import InventoryStateMachine
from did_core.notifications import LoggingNotificationSender, NotificationSender
from did_core.reconciliation.dispatcher import PaymentReconciliationDispatcher
from did_core.sync.client import BillingApiClient, HttpBillingApiClient
from did_core.sync.engine import BillingSyncEngine
from did_core.sync.tasks import InMemorySyncTaskStore, SyncTaskStore
from did_core.sync.worker import SyncTaskWorker


@dataclass
class DidEngine:
    """All engine services built over one set of stores."""

    ddis: DdiStore
    orders: DidOrderStore
    suspension_logs: SuspensionLogStore
    companies: CompanyStore
    invoices: InvoiceStore
    tasks: SyncTaskStore
    settings: Settings
    client: Optional[BillingApiClient] = None
    notifier: Optional[NotificationSender] = None
    db: Optional[DatabaseManager] = None

    state_machine: InventoryStateMachine = field(init=False)
    balance: BalanceService = field(init=False)
    policy: BillingDecisionPolicy = field(init=False)
    sync_engine: Optional[BillingSyncEngine] = field(init=False, default=None)
    sync_worker: Optional[SyncTaskWorker] = field(init=False, default=None)
    dispatcher: PaymentReconciliationDispatcher = field(init=False)
    renewals: RenewalScheduler = field(init=False)
    reaper: ReservationExpiryReaper = field(init=False)
    order_service: DidOrderService = field(init=False)
    approvals: DidOrderApprovalService = field(init=False)
    purchases: DidPurchaseService = field(init=False)
    releases: DidReleaseService = field(init=False)
    topups: BalanceTopUpService = field(init=False)

    def __post_init__(self) -> None:
        settings = self.settings
        ttl = timedelta(hours=settings.reservation_ttl_hours)
        lease = timedelta(seconds=settings.sync_lease_seconds)

        self.state_machine = InventoryStateMachine(self.ddis, self.suspension_logs, default_ttl=ttl)
        self.balance = StoreBalanceService(self.companies)
        self.policy = BillingDecisionPolicy()

        if self.client is not None:
            self.sync_engine = BillingSyncEngine(
                self.invoices,
                self.companies,
                self.client,
                self.tasks,
                ddis=self.ddis,
                due_days=settings.invoice_due_days,
                lease=lease,
            )
            self.sync_worker = SyncTaskWorker(
                self.sync_engine,
                self.tasks,
                invoices=self.invoices,
                lease=lease,
                batch_size=settings.sync_batch_size,
            )

        self.dispatcher = PaymentReconciliationDispatcher.create(
            self.invoices,
            self.ddis,
            self.companies,
            self.state_machine,
            self.balance,
            sync_engine=self.sync_engine,
            notifier=self.notifier,
            sync_inline=settings.sync_on_create,
        )

        self.renewals = RenewalScheduler(
            self.ddis,
            self.companies,
            self.invoices,
            self.state_machine,
            self.balance,
            policy=self.policy,
            listener=self.dispatcher,
        )
        self.reaper = ReservationExpiryReaper(
            self.ddis, self.orders, self.state_machine, notifier=self.notifier
        )
        self.order_service = DidOrderService(
            self.ddis,
            self.orders,
            self.companies,
            self.state_machine,
            notifier=self.notifier,
            reservation_ttl=ttl,
        )
        self.approvals = DidOrderApprovalService(
            self.ddis,
            self.orders,
            self.companies,
            self.invoices,
            self.state_machine,
            listener=self.dispatcher,
            notifier=self.notifier,
        )
        self.purchases = DidPurchaseService(
            self.ddis,
            self.companies,
            self.invoices,
            self.state_machine,
            self.balance,
            policy=self.policy,
        )
        self.releases = DidReleaseService(self.ddis, self.state_machine)
        self.topups = BalanceTopUpService(
            self.companies,
            self.invoices,
            listener=self.dispatcher,
            minimum=settings.topup_min_amount,
            maximum=settings.topup_max_amount,
        )

    @classmethod
    def in_memory(
        cls,
        settings: Optional[Settings] = None,
        client: Optional[BillingApiClient] = None,
        notifier: Optional[NotificationSender] = None,
    ) -> "DidEngine":
        """Build an engine over in-memory stores."""
        ddis = InMemoryDdiStore()
        return cls(
            ddis=ddis,
            orders=InMemoryDidOrderStore(ddis),
            suspension_logs=InMemorySuspensionLogStore(),
            companies=InMemoryCompanyStore(),
            invoices=InMemoryInvoiceStore(),
            tasks=InMemorySyncTaskStore(),
            settings=settings or Settings(),
            client=client,
            notifier=notifier,
        )

    @classmethod
    def from_database(
        cls,
        db: DatabaseManager,
        settings: Settings,
        client: Optional[BillingApiClient] = None,
        notifier: Optional[NotificationSender] = None,
    ) -> "DidEngine":
        """
        Build an engine over the SQL stores.

        Without an explicit client, an HTTP client is created when the
        billing API credentials are configured; otherwise sync is disabled.
        """
        if client is None and settings.billing_api_configured:
            client = HttpBillingApiClient(
                api_url=settings.billing_api_url,
                identifier=settings.billing_api_identifier,
                secret=settings.billing_api_secret,
                timeout=settings.billing_api_timeout,
                payment_method=settings.billing_payment_method,
            )

        return cls(
            ddis=SqlDdiStore(db),
            orders=SqlDidOrderStore(db),
            suspension_logs=SqlSuspensionLogStore(db),
            companies=SqlCompanyStore(db),
            invoices=SqlInvoiceStore(db),
            tasks=SqlSyncTaskStore(db),
            settings=settings,
            client=client,
            notifier=notifier or LoggingNotificationSender(),
            db=db,
        )

    async def close(self) -> None:
        """Release the HTTP client and database connections."""
        if isinstance(self.client, HttpBillingApiClient):
            await self.client.close()
        if self.db is not None:
            await self.db.close()


__all__ = ["DidEngine"]
