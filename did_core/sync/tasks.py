"""
Durable Sync Tasks

Delayed sync work keyed by invoice id. A task survives process restarts
when backed by the database store; a worker claims due tasks under a
lease so two workers never run the same invoice at once.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional


@dataclass
class SyncTask:
    """Scheduled sync of one invoice."""

    invoice_id: str
    run_at: datetime
    attempt: int = 0
    locked_until: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        if self.run_at > now:
            return False
        return self.locked_until is None or self.locked_until <= now


class SyncTaskStore(ABC):
    """Abstract durable task storage interface."""

    @abstractmethod
    async def schedule(self, task: SyncTask) -> None:
        """Insert or replace the task for an invoice, clearing any lease."""
        pass

    @abstractmethod
    async def get(self, invoice_id: str) -> Optional[SyncTask]:
        """Get task by invoice ID."""
        pass

    @abstractmethod
    async def claim_due(
        self,
        now: datetime,
        lease: timedelta,
        limit: int = 50,
    ) -> List[SyncTask]:
        """Lease and return tasks whose run time has come."""
        pass

    @abstractmethod
    async def complete(self, invoice_id: str) -> None:
        """Remove the task for an invoice."""
        pass

    @abstractmethod
    async def list_all(self) -> List[SyncTask]:
        """List all scheduled tasks ordered by run time."""
        pass


class InMemorySyncTaskStore(SyncTaskStore):
    """In-memory task store."""

    def __init__(self):
        self._tasks: Dict[str, SyncTask] = {}
        self._lock = asyncio.Lock()

    async def schedule(self, task: SyncTask) -> None:
        async with self._lock:
            self._tasks[task.invoice_id] = replace(task, locked_until=None)

    async def get(self, invoice_id: str) -> Optional[SyncTask]:
        task = self._tasks.get(invoice_id)
        return replace(task) if task else None

    async def claim_due(
        self,
        now: datetime,
        lease: timedelta,
        limit: int = 50,
    ) -> List[SyncTask]:
        async with self._lock:
            due = sorted(
                (t for t in self._tasks.values() if t.is_due(now)),
                key=lambda t: t.run_at,
            )[:limit]
            claimed = []
            for task in due:
                leased = replace(task, locked_until=now + lease)
                self._tasks[task.invoice_id] = leased
                claimed.append(replace(leased))
            return claimed

    async def complete(self, invoice_id: str) -> None:
        async with self._lock:
            self._tasks.pop(invoice_id, None)

    async def list_all(self) -> List[SyncTask]:
        return sorted((replace(t) for t in self._tasks.values()), key=lambda t: t.run_at)


__all__ = [
    "SyncTask",
    "SyncTaskStore",
    "InMemorySyncTaskStore",
]
