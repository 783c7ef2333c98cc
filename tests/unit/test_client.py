"""Unit tests for the HTTP billing API client."""

from datetime import date
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from did_core.errors import BillingApiError
from did_core.sync.client import HttpBillingApiClient


API_URL = "https://billing.example.com/includes/api.php"


def _client(handler) -> HttpBillingApiClient:
    return HttpBillingApiClient(
        api_url=API_URL,
        identifier="ident",
        secret="s3cret",
        transport=httpx.MockTransport(handler),
    )


async def _create(client: HttpBillingApiClient) -> str:
    return await client.create_invoice(
        client_id="42",
        description="DID Purchase - +34910000001",
        amount=Decimal("15.5"),
        due_date=date(2026, 2, 14),
        note="DidEngine:inv-1",
        invoice_date=date(2026, 1, 15),
    )


class TestHttpBillingApiClient:
    """Tests for request building and error classification."""

    @pytest.mark.asyncio
    async def test_create_invoice_form(self):
        """The request carries credentials and the single line item."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            return httpx.Response(200, json={"result": "success", "invoiceid": 5001})

        async with _client(handler) as client:
            external_id = await _create(client)

        assert external_id == "5001"
        assert seen["url"] == API_URL
        form = seen["form"]
        assert form["action"] == "CreateInvoice"
        assert form["identifier"] == "ident"
        assert form["secret"] == "s3cret"
        assert form["responsetype"] == "json"
        assert form["userid"] == "42"
        assert form["status"] == "Unpaid"
        assert form["paymentmethod"] == "banktransfer"
        assert form["date"] == "2026-01-15"
        assert form["duedate"] == "2026-02-14"
        assert form["itemdescription1"] == "DID Purchase - +34910000001"
        assert form["itemamount1"] == "15.50"
        assert form["itemtaxed1"] == "0"
        assert form["notes"] == "DidEngine:inv-1"

    @pytest.mark.asyncio
    async def test_error_result_non_retryable(self):
        def handler(request):
            return httpx.Response(200, json={"result": "error", "message": "Client ID Not Found"})

        async with _client(handler) as client:
            with pytest.raises(BillingApiError) as exc_info:
                await _create(client)

        assert not exc_info.value.is_retryable
        assert "Client ID Not Found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_error_retryable(self):
        def handler(request):
            return httpx.Response(503, json={"result": "error", "message": "Maintenance"})

        async with _client(handler) as client:
            with pytest.raises(BillingApiError) as exc_info:
                await _create(client)

        assert exc_info.value.is_retryable
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_forbidden_non_retryable(self):
        def handler(request):
            return httpx.Response(403, json={"result": "error", "message": "Forbidden"})

        async with _client(handler) as client:
            with pytest.raises(BillingApiError) as exc_info:
                await _create(client)

        assert not exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_transport_error_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(BillingApiError) as exc_info:
                await _create(client)

        assert exc_info.value.is_retryable
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request):
            return httpx.Response(502, text="<html>Bad gateway</html>")

        async with _client(handler) as client:
            with pytest.raises(BillingApiError) as exc_info:
                await _create(client)

        assert exc_info.value.status_code == 502
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_missing_invoice_id(self):
        def handler(request):
            return httpx.Response(200, json={"result": "success"})

        async with _client(handler) as client:
            with pytest.raises(BillingApiError):
                await _create(client)
