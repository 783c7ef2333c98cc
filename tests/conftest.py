"""Shared pytest fixtures for testing."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from did_core.billing.base import BillingMethod, Company, RenewalMode
from did_core.config import Settings
from did_core.engine import DidEngine
from did_core.inventory.base import Ddi, InventoryStatus
from did_core.notifications import RecordingNotificationSender
from did_core.sync.client import FakeBillingApiClient


BRAND_ID = "brand-1"


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return datetime(2026, 1, 15, 10, 0, 0)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, log_format="simple")


@pytest.fixture
def fake_client() -> FakeBillingApiClient:
    return FakeBillingApiClient()


@pytest.fixture
def notifier() -> RecordingNotificationSender:
    return RecordingNotificationSender()


@pytest.fixture
def engine(settings, fake_client, notifier) -> DidEngine:
    """In-memory engine with a scriptable billing client."""
    return DidEngine.in_memory(settings=settings, client=fake_client, notifier=notifier)


# =============================================================================
# Record Factories
# =============================================================================


@pytest.fixture
def make_company(engine):
    """Create and store a company."""

    async def factory(
        billing_method: BillingMethod = BillingMethod.PREPAID,
        balance: str = "0.00",
        billing_client_id: Optional[str] = "42",
        mode: RenewalMode = RenewalMode.PER_DID,
        anchor: Optional[date] = None,
        name: str = "Acme Telecom",
    ) -> Company:
        company = Company(
            name=name,
            brand_id=BRAND_ID,
            billing_method=billing_method,
            balance=Decimal(balance),
            billing_client_id=billing_client_id,
            did_renewal_mode=mode,
            did_renewal_anchor=anchor,
        )
        await engine.companies.create(company)
        return company

    return factory


@pytest.fixture
def make_ddi(engine):
    """Create and store a DID."""
    counter = {"n": 0}

    async def factory(
        monthly_price: str = "10.00",
        setup_price: str = "0.00",
        status: InventoryStatus = InventoryStatus.AVAILABLE,
        company_id: Optional[str] = None,
        next_renewal_at: Optional[date] = None,
        is_byon: bool = False,
    ) -> Ddi:
        counter["n"] += 1
        ddi = Ddi(
            ddi=f"+3491000{counter['n']:04d}",
            brand_id=BRAND_ID,
            inventory_status=status,
            company_id=company_id,
            monthly_price=Decimal(monthly_price),
            setup_price=Decimal(setup_price),
            next_renewal_at=next_renewal_at,
            is_byon=is_byon,
        )
        await engine.ddis.create(ddi)
        return ddi

    return factory


@pytest_asyncio.fixture
async def prepaid_company(make_company) -> Company:
    return await make_company(balance="100.00")


@pytest_asyncio.fixture
async def postpaid_company(make_company) -> Company:
    return await make_company(billing_method=BillingMethod.POSTPAID, name="Postpaid Ltd")
