"""
External Billing API Client

Client for the external billing system's form-encoded JSON API
(WHMCS-style ``CreateInvoice`` action). Every failure surfaces as a
BillingApiError classified as retryable or not.
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import structlog

from did_core.errors import BillingApiError

logger = structlog.get_logger(__name__)


class BillingApiClient(ABC):
    """External billing system operations used by the sync engine."""

    @abstractmethod
    async def create_invoice(
        self,
        client_id: str,
        description: str,
        amount: Decimal,
        due_date: date,
        note: str,
        invoice_date: Optional[date] = None,
    ) -> str:
        """
        Create an unpaid invoice for a client.

        Returns:
            External invoice identifier

        Raises:
            BillingApiError: classified retryable or non-retryable
        """
        pass


class HttpBillingApiClient(BillingApiClient):
    """httpx implementation of the billing API client."""

    def __init__(
        self,
        api_url: str,
        identifier: str,
        secret: str,
        timeout: float = 30.0,
        payment_method: str = "banktransfer",
        send_invoice: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize billing API client.

        Args:
            api_url: Full URL of the API endpoint
            identifier: API credential identifier
            secret: API credential secret
            timeout: Per-call timeout in seconds
            payment_method: Payment gateway assigned to created invoices
            send_invoice: Ask the billing system to email the invoice
            transport: Optional httpx transport (tests)
        """
        self._api_url = api_url
        self._identifier = identifier
        self._secret = secret
        self._payment_method = payment_method
        self._send_invoice = send_invoice
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def __aenter__(self) -> "HttpBillingApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def create_invoice(
        self,
        client_id: str,
        description: str,
        amount: Decimal,
        due_date: date,
        note: str,
        invoice_date: Optional[date] = None,
    ) -> str:
        payload = {
            "action": "CreateInvoice",
            "userid": client_id,
            "status": "Unpaid",
            "sendinvoice": "1" if self._send_invoice else "0",
            "paymentmethod": self._payment_method,
            "date": (invoice_date or date.today()).isoformat(),
            "duedate": due_date.isoformat(),
            "itemdescription1": description,
            "itemamount1": f"{Decimal(amount):.2f}",
            "itemtaxed1": "0",
            "notes": note,
        }
        data = await self._call(payload)

        invoice_id = data.get("invoiceid")
        if invoice_id is None:
            raise BillingApiError("Billing API response did not include an invoice id")

        logger.info("external_invoice_created", client_id=client_id, external_invoice_id=str(invoice_id))
        return str(invoice_id)

    async def _call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        form = {
            "identifier": self._identifier,
            "secret": self._secret,
            "responsetype": "json",
            **params,
        }
        try:
            response = await self._client.post(self._api_url, data=form)
        except httpx.HTTPError as e:
            raise BillingApiError(
                f"Billing API transport error: {e}",
                retryable=True,
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise BillingApiError(
                f"Billing API returned invalid JSON (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        if response.status_code >= 400 or data.get("result") != "success":
            message = data.get("message") or f"HTTP {response.status_code}"
            raise BillingApiError(
                f"Billing API error: {message}",
                status_code=response.status_code,
            )

        return data


class FakeBillingApiClient(BillingApiClient):
    """
    Scriptable client for local runs and tests.

    Queued errors are raised in order before any invoice is created.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self._errors: List[BillingApiError] = []
        self._next_id = 1000

    def fail_with(self, *errors: BillingApiError) -> None:
        self._errors.extend(errors)

    async def create_invoice(
        self,
        client_id: str,
        description: str,
        amount: Decimal,
        due_date: date,
        note: str,
        invoice_date: Optional[date] = None,
    ) -> str:
        self.calls.append({
            "client_id": client_id,
            "description": description,
            "amount": amount,
            "due_date": due_date,
            "note": note,
        })
        if self._errors:
            raise self._errors.pop(0)
        self._next_id += 1
        return str(self._next_id)


__all__ = [
    "BillingApiClient",
    "HttpBillingApiClient",
    "FakeBillingApiClient",
]
