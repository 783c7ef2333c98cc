"""
Sync Task Worker

Polls the durable task store and runs due invoice syncs. The loop waits
with ``asyncio.sleep`` between polls, so a long backoff chain only ever
occupies a row in the task store.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from did_core.billing.base import InvoiceStore, SyncStatus
from did_core.sync.engine import BillingSyncEngine, can_retry
from did_core.sync.tasks import SyncTask, SyncTaskStore


@dataclass
class SyncRunResult:
    """Counters for one pass over due tasks."""

    processed: int = 0
    synced: int = 0
    retries_scheduled: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def success(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "processed": self.processed,
            "synced": self.synced,
            "retries_scheduled": self.retries_scheduled,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "success": self.success,
        }


class SyncTaskWorker:
    """Runs due sync tasks."""

    def __init__(
        self,
        engine: BillingSyncEngine,
        tasks: SyncTaskStore,
        invoices: Optional[InvoiceStore] = None,
        lease: timedelta = timedelta(minutes=5),
        batch_size: int = 50,
    ):
        self._engine = engine
        self._tasks = tasks
        self._invoices = invoices
        self._lease = lease
        self._batch_size = batch_size
        self._running = False
        self._logger = structlog.get_logger("sync.worker")

    async def run_due(self, now: datetime) -> SyncRunResult:
        """Claim and run every task due at ``now``."""
        result = SyncRunResult()
        tasks = await self._tasks.claim_due(now, self._lease, self._batch_size)

        for task in tasks:
            result.processed += 1
            try:
                outcome = await self._engine.sync(task.invoice_id, now)
            except Exception:
                result.errors += 1
                self._logger.exception("sync_task_error", invoice_id=task.invoice_id)
                continue

            if outcome.skipped:
                result.skipped += 1
            elif outcome.success:
                result.synced += 1
            elif outcome.retry_scheduled:
                result.retries_scheduled += 1
            else:
                result.failed += 1

        if tasks:
            self._logger.info("sync_pass_completed", **result.to_dict())
        return result

    async def requeue_orphans(self, now: datetime) -> int:
        """
        Schedule pending invoices that have no task.

        Covers invoices created while no trigger was delivered, or a crash
        between recording a failure and scheduling its retry.
        """
        if self._invoices is None:
            return 0

        count = 0
        for invoice in await self._invoices.list_by_sync_status(SyncStatus.PENDING):
            if not can_retry(invoice):
                continue
            if await self._tasks.get(invoice.id) is not None:
                continue
            await self._tasks.schedule(
                SyncTask(invoice_id=invoice.id, run_at=now, attempt=invoice.sync_attempts)
            )
            count += 1

        if count:
            self._logger.info("sync_orphans_requeued", count=count)
        return count

    async def run_forever(
        self,
        poll_interval: float = 5.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """Poll until ``stop`` is called."""
        self._running = True
        self._logger.info("sync_worker_started", poll_interval=poll_interval)

        while self._running:
            await self.run_due(clock())
            await asyncio.sleep(poll_interval)

        self._logger.info("sync_worker_stopped")

    def stop(self) -> None:
        """Stop the polling loop after the current pass."""
        self._running = False


__all__ = [
    "SyncRunResult",
    "SyncTaskWorker",
]
