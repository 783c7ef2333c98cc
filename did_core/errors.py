"""
Engine Errors

Error taxonomy shared by the inventory, billing, sync and reconciliation
modules. Every error carries a human readable message and a stable code
that callers can branch on.
"""

from typing import Optional


class DidEngineError(Exception):
    """Base engine error."""

    def __init__(self, message: str, code: str = "engine_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(DidEngineError):
    """Input rejected before any state change."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, "validation_error")


class NotFoundError(DidEngineError):
    """Referenced record does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", "not_found")


class ConflictError(DidEngineError):
    """Resource is no longer in the state the operation requires."""

    def __init__(self, message: str, current_state: Optional[str] = None):
        self.current_state = current_state
        super().__init__(message, "conflict")


class OwnershipMismatchError(DidEngineError):
    """DID and company cross-reference is inconsistent."""

    def __init__(
        self,
        message: str,
        ddi_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ):
        self.ddi_id = ddi_id
        self.company_id = company_id
        super().__init__(message, "ownership_mismatch")


class DomainError(DidEngineError):
    """Business rule violation raised while applying a domain operation."""

    NO_DDI_LINKED = "NO_DDI_LINKED"
    DDI_NOT_FOUND = "DDI_NOT_FOUND"
    COMPANY_MISMATCH = "COMPANY_MISMATCH"
    RENEWAL_NOT_APPLIED = "RENEWAL_NOT_APPLIED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    BALANCE_UPDATE_FAILED = "BALANCE_UPDATE_FAILED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BILLING_NOT_LINKED = "BILLING_NOT_LINKED"
    BILLING_METHOD_NOT_ALLOWED = "BILLING_METHOD_NOT_ALLOWED"

    def __init__(self, message: str, code: str):
        super().__init__(message, code)


class BillingApiError(DidEngineError):
    """Failure reported by, or while reaching, the external billing system."""

    NON_RETRYABLE_PATTERNS = (
        "client id not found",
        "invalid client",
        "authentication failed",
        "invalid api credentials",
        "access denied",
    )

    def __init__(
        self,
        message: str,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ):
        self.status_code = status_code
        if retryable is None:
            retryable = self.classify(message, status_code)
        self.retryable = retryable
        super().__init__(message, "billing_api_error")

    @property
    def is_retryable(self) -> bool:
        return self.retryable

    @classmethod
    def classify(cls, message: str, status_code: Optional[int] = None) -> bool:
        """Return True when the failure may succeed on a later attempt."""
        if status_code in (401, 403):
            return False
        lowered = message.lower()
        return not any(pattern in lowered for pattern in cls.NON_RETRYABLE_PATTERNS)


__all__ = [
    "DidEngineError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "OwnershipMismatchError",
    "DomainError",
    "BillingApiError",
]
