"""Tests for engine settings."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from did_core.config import Settings


class TestSettings:
    """Tests for defaults, validation and environment overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("DID_BILLING_API_URL", "DID_BILLING_API_IDENTIFIER", "DID_BILLING_API_SECRET"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings(_env_file=None)

        assert settings.reservation_ttl_hours == 24
        assert settings.invoice_due_days == 30
        assert settings.topup_min_amount == Decimal("5.00")
        assert settings.topup_max_amount == Decimal("1000.00")
        assert not settings.sync_on_create
        assert not settings.billing_api_configured

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="chatty")

    def test_invalid_log_format(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_reservation_ttl_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, reservation_ttl_hours=0)

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("DID_INVOICE_DUE_DAYS", "14")
        monkeypatch.setenv("DID_SYNC_ON_CREATE", "true")

        settings = Settings(_env_file=None)

        assert settings.invoice_due_days == 14
        assert settings.sync_on_create

    def test_billing_api_configured(self):
        settings = Settings(
            _env_file=None,
            billing_api_url="https://billing.example.com/includes/api.php",
            billing_api_identifier="ident",
            billing_api_secret="secret",
        )

        assert settings.billing_api_configured

    def test_production_flag(self):
        assert Settings(_env_file=None, environment="production").is_production
        assert not Settings(_env_file=None).is_production
