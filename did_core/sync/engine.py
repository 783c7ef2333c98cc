"""
Billing Sync Engine

Pushes locally created invoices to the external billing system.

The engine is idempotent: settled invoices (synced or not applicable)
never reach the external API again, and the sync lease taken on a pending
invoice guarantees that two concurrent attempts cannot both create the
external invoice. Retryable failures are rescheduled as durable delayed
tasks following BACKOFF_DELAYS; the engine itself never sleeps.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog

from did_core.billing.base import (
    Company,
    CompanyStore,
    Invoice,
    InvoiceStore,
    InvoiceType,
    SyncStatus,
    is_syncable,
)
from did_core.errors import BillingApiError, ConflictError, NotFoundError
from did_core.inventory.base import DdiStore
from did_core.sync.client import BillingApiClient
from did_core.sync.tasks import SyncTask, SyncTaskStore

logger = structlog.get_logger(__name__)


# Backoff schedule in seconds, indexed by attempts - 1
BACKOFF_DELAYS = [30, 60, 300, 900, 3600]
MAX_ATTEMPTS = 5

NOTE_PREFIX = "DidEngine"


def get_backoff_delay(attempts: int) -> int:
    """Seconds to wait before the next attempt after ``attempts`` failures."""
    if attempts <= 0:
        return 0
    return BACKOFF_DELAYS[min(attempts, len(BACKOFF_DELAYS)) - 1]


def can_retry(invoice: Invoice) -> bool:
    """Check whether an invoice may still be synced automatically."""
    return invoice.sync_status == SyncStatus.PENDING and invoice.sync_attempts < MAX_ATTEMPTS


@dataclass
class SyncResult:
    """Outcome of one sync attempt."""

    invoice_id: str
    success: bool
    sync_status: Optional[SyncStatus] = None
    external_invoice_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    retry_at: Optional[datetime] = None

    @property
    def retry_scheduled(self) -> bool:
        return self.retry_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "invoice_id": self.invoice_id,
            "success": self.success,
            "sync_status": self.sync_status.value if self.sync_status else None,
            "external_invoice_id": self.external_invoice_id,
            "error": self.error,
            "skipped": self.skipped,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
        }


class BillingSyncEngine:
    """Synchronizes invoices with the external billing system."""

    def __init__(
        self,
        invoices: InvoiceStore,
        companies: CompanyStore,
        client: BillingApiClient,
        tasks: SyncTaskStore,
        ddis: Optional[DdiStore] = None,
        due_days: int = 30,
        lease: timedelta = timedelta(minutes=5),
    ):
        self._invoices = invoices
        self._companies = companies
        self._client = client
        self._tasks = tasks
        self._ddis = ddis
        self._due_days = due_days
        self._lease = lease

    async def enqueue(self, invoice: Invoice, now: datetime) -> None:
        """Schedule an immediate durable sync of an invoice."""
        await self._tasks.schedule(
            SyncTask(invoice_id=invoice.id, run_at=now, attempt=invoice.sync_attempts)
        )
        logger.debug("sync_enqueued", invoice_id=invoice.id)

    async def sync(self, invoice_id: str, now: datetime) -> SyncResult:
        """Run one sync attempt for an invoice."""
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)

        if invoice.sync_status.is_settled:
            await self._tasks.complete(invoice_id)
            return SyncResult(
                invoice_id=invoice_id,
                success=True,
                sync_status=invoice.sync_status,
                external_invoice_id=invoice.external_invoice_id,
            )

        if invoice.sync_status == SyncStatus.FAILED:
            await self._tasks.complete(invoice_id)
            return SyncResult(
                invoice_id=invoice_id,
                success=False,
                sync_status=SyncStatus.FAILED,
                error=invoice.sync_error or "Sync failed permanently; manual retry required",
            )

        company = await self._companies.get(invoice.company_id)
        reason = self._not_applicable_reason(invoice, company)
        if reason:
            return await self._mark_not_applicable(invoice, reason)

        claimed = await self._invoices.claim_sync(invoice_id, now, self._lease)
        if claimed is None:
            logger.info("sync_already_in_progress", invoice_id=invoice_id)
            return SyncResult(
                invoice_id=invoice_id,
                success=False,
                sync_status=invoice.sync_status,
                skipped=True,
                error="Sync already in progress",
            )

        description = await self._describe(claimed, company)
        try:
            external_id = await self._client.create_invoice(
                client_id=company.billing_client_id,
                description=description,
                amount=claimed.amount,
                due_date=(now + timedelta(days=self._due_days)).date(),
                note=f"{NOTE_PREFIX}:{claimed.id}",
                invoice_date=now.date(),
            )
        except BillingApiError as e:
            return await self._record_failure(claimed, e, now)

        await self._invoices.compare_and_set(
            invoice_id,
            expected={"sync_status": SyncStatus.PENDING},
            changes={
                "sync_status": SyncStatus.SYNCED,
                "external_invoice_id": external_id,
                "sync_error": None,
                "sync_locked_until": None,
            },
        )
        await self._tasks.complete(invoice_id)

        logger.info(
            "invoice_synced",
            invoice_id=invoice_id,
            external_invoice_id=external_id,
            attempts=claimed.sync_attempts + 1,
        )
        return SyncResult(
            invoice_id=invoice_id,
            success=True,
            sync_status=SyncStatus.SYNCED,
            external_invoice_id=external_id,
        )

    async def retry_failed(self, invoice_id: str, now: datetime) -> SyncResult:
        """
        Manually re-arm a permanently failed invoice and sync it.

        Raises:
            ConflictError: invoice is not in failed status
        """
        reset = await self._invoices.compare_and_set(
            invoice_id,
            expected={"sync_status": SyncStatus.FAILED},
            changes={
                "sync_status": SyncStatus.PENDING,
                "sync_attempts": 0,
                "sync_error": None,
                "sync_locked_until": None,
            },
        )
        if reset is None:
            raise ConflictError(f"Invoice {invoice_id} is not in failed sync status")

        logger.info("sync_manual_retry", invoice_id=invoice_id)
        return await self.sync(invoice_id, now)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _not_applicable_reason(invoice: Invoice, company: Optional[Company]) -> Optional[str]:
        if company is None or not company.has_billing_link:
            return "company_not_linked"
        if not is_syncable(company.billing_method, invoice.invoice_type):
            return "type_not_syncable"
        return None

    async def _mark_not_applicable(self, invoice: Invoice, reason: str) -> SyncResult:
        updated = await self._invoices.compare_and_set(
            invoice.id,
            expected={"sync_status": SyncStatus.PENDING},
            changes={"sync_status": SyncStatus.NOT_APPLICABLE, "sync_locked_until": None},
        )
        await self._tasks.complete(invoice.id)
        if updated is None:
            current = await self._invoices.get(invoice.id)
            status = current.sync_status if current else None
            return SyncResult(invoice_id=invoice.id, success=bool(status and status.is_settled), sync_status=status)

        logger.info("sync_not_applicable", invoice_id=invoice.id, reason=reason)
        return SyncResult(
            invoice_id=invoice.id,
            success=True,
            sync_status=SyncStatus.NOT_APPLICABLE,
        )

    async def _record_failure(
        self,
        invoice: Invoice,
        error: BillingApiError,
        now: datetime,
    ) -> SyncResult:
        attempts = invoice.sync_attempts + 1

        if error.is_retryable and attempts < MAX_ATTEMPTS:
            retry_at = now + timedelta(seconds=get_backoff_delay(attempts))
            await self._tasks.schedule(
                SyncTask(invoice_id=invoice.id, run_at=retry_at, attempt=attempts)
            )
            await self._invoices.compare_and_set(
                invoice.id,
                expected={"sync_status": SyncStatus.PENDING},
                changes={
                    "sync_attempts": attempts,
                    "sync_error": error.message,
                    "sync_locked_until": None,
                },
            )
            logger.warning(
                "sync_retry_scheduled",
                invoice_id=invoice.id,
                attempts=attempts,
                retry_at=retry_at.isoformat(),
                error=error.message,
            )
            return SyncResult(
                invoice_id=invoice.id,
                success=False,
                sync_status=SyncStatus.PENDING,
                error=error.message,
                retry_at=retry_at,
            )

        await self._invoices.compare_and_set(
            invoice.id,
            expected={"sync_status": SyncStatus.PENDING},
            changes={
                "sync_status": SyncStatus.FAILED,
                "sync_attempts": attempts,
                "sync_error": error.message,
                "sync_locked_until": None,
            },
        )
        await self._tasks.complete(invoice.id)
        logger.error(
            "sync_failed_permanently",
            invoice_id=invoice.id,
            attempts=attempts,
            retryable=error.is_retryable,
            error=error.message,
        )
        return SyncResult(
            invoice_id=invoice.id,
            success=False,
            sync_status=SyncStatus.FAILED,
            error=error.message,
        )

    async def _describe(self, invoice: Invoice, company: Company) -> str:
        number = await self._ddi_number(invoice.ddi_id)

        if invoice.invoice_type == InvoiceType.DID_PURCHASE:
            return f"DID Purchase - {number}" if number else "DID Purchase"
        if invoice.invoice_type == InvoiceType.DID_RENEWAL:
            if number:
                return f"DID Monthly Rental - {number}"
            if invoice.renewal_ddi_ids:
                return f"DID Monthly Rental ({len(invoice.renewal_ddi_ids)} numbers)"
            return "DID Monthly Rental"
        if invoice.invoice_type == InvoiceType.BALANCE_TOPUP:
            return f"Balance Top-Up - {company.name}"
        return f"Monthly Invoice #{invoice.number or invoice.id}"

    async def _ddi_number(self, ddi_id: Optional[str]) -> Optional[str]:
        if not ddi_id or self._ddis is None:
            return None
        ddi = await self._ddis.get(ddi_id)
        return ddi.ddi if ddi else None


__all__ = [
    "BACKOFF_DELAYS",
    "MAX_ATTEMPTS",
    "get_backoff_delay",
    "can_retry",
    "SyncResult",
    "BillingSyncEngine",
]
