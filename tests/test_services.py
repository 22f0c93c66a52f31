"""
Tests for configuration and service wiring
"""

from meter_rail.billing import StripeBillingProvider
from meter_rail.config import Settings
from meter_rail.metering import ThreadPoolDispatcher
from meter_rail.services import build_services


class TestSettings:
    """Test environment configuration."""

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_URL", "ENFORCEMENT_FAIL_OPEN", "STRIPE_API_KEY", "PORT"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.database_url == "sqlite:///meter_rail.db"
        assert settings.enforcement_fail_closed is True
        assert settings.stripe_api_key is None
        assert settings.port == 8000

    def test_fail_open_from_env(self, monkeypatch):
        monkeypatch.setenv("ENFORCEMENT_FAIL_OPEN", "true")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example,https://b.example")

        settings = Settings.from_env()

        assert settings.enforcement_fail_closed is False
        assert settings.cors_origins == ["https://a.example", "https://b.example"]


class TestBuildServices:
    """Test default component assembly."""

    def test_defaults_from_settings(self, settings, temp_db):
        services = build_services(settings=settings, db=temp_db)
        try:
            assert isinstance(services.provider, StripeBillingProvider)
            assert services.provider.is_available is False
            assert isinstance(services.dispatcher, ThreadPoolDispatcher)
            assert services.enforcement.config.fail_closed is True
            assert services.billing_sync.timeout_seconds == settings.provider_timeout_seconds
        finally:
            services.dispatcher.shutdown()
