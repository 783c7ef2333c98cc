"""
Customer DID Release

Lets a company give back a DID it owns. The result is reported as a typed
outcome rather than an exception so API callers can map codes directly.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from did_core.errors import DidEngineError
from did_core.inventory.base import DdiStore
from did_core.inventory.state_machine import InventoryStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class ReleaseResult:
    """Outcome of a release request."""

    success: bool
    ddi_id: str
    error_code: Optional[str] = None
    message: str = ""

    DDI_NOT_OWNED = "ddi_not_owned"
    DDI_NOT_ASSIGNED = "ddi_not_assigned"
    BYON_CANNOT_RELEASE = "byon_cannot_release"
    RELEASE_FAILED = "release_failed"

    @classmethod
    def failure(cls, ddi_id: str, code: str, message: str) -> "ReleaseResult":
        return cls(success=False, ddi_id=ddi_id, error_code=code, message=message)


class DidReleaseService:
    """Customer-initiated DID release."""

    def __init__(self, ddis: DdiStore, state_machine: InventoryStateMachine):
        self._ddis = ddis
        self._state_machine = state_machine

    async def release(self, company_id: str, ddi_id: str) -> ReleaseResult:
        ddi = await self._ddis.get(ddi_id)
        if ddi is None or ddi.company_id != company_id:
            return ReleaseResult.failure(
                ddi_id, ReleaseResult.DDI_NOT_OWNED, "DDI does not belong to this company"
            )
        if ddi.is_byon:
            return ReleaseResult.failure(
                ddi_id,
                ReleaseResult.BYON_CANNOT_RELEASE,
                "Verified own numbers must be removed by support",
            )
        if not ddi.is_assigned:
            return ReleaseResult.failure(
                ddi_id,
                ReleaseResult.DDI_NOT_ASSIGNED,
                f"DDI is {ddi.inventory_status.value}",
            )

        try:
            await self._state_machine.release(ddi_id)
        except DidEngineError as e:
            logger.warning("ddi_release_failed", ddi_id=ddi_id, company_id=company_id, error=e.message)
            return ReleaseResult.failure(ddi_id, ReleaseResult.RELEASE_FAILED, e.message)

        logger.info("ddi_released_by_customer", ddi_id=ddi_id, company_id=company_id)
        return ReleaseResult(success=True, ddi_id=ddi_id, message=f"{ddi.ddi} released")


__all__ = [
    "ReleaseResult",
    "DidReleaseService",
]
