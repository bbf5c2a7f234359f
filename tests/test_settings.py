"""
Tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from urbain.transit.settings import Environment, QRSettings, Settings


@pytest.mark.unit
class TestSettings:
    """Test defaults and environment overrides."""

    def test_defaults(self):
        config = Settings(_env_file=None)

        assert config.subscriptions.grace_period_days == 3
        assert config.subscriptions.max_transient_retries == 3
        assert config.subscriptions.pending_takeover_seconds == 30.0
        assert config.scheduler.renewal_interval_seconds == 86400.0
        assert config.gateway.provider == "mock"
        assert config.qr.algorithm == "HS256"

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("SUBSCRIPTIONS__GRACE_PERIOD_DAYS", "5")
        monkeypatch.setenv("SCHEDULER__MAX_WORKERS", "8")
        monkeypatch.setenv("DATABASE__URL", "sqlite+aiosqlite:///./other.sqlite")

        config = Settings(_env_file=None)

        assert config.subscriptions.grace_period_days == 5
        assert config.scheduler.max_workers == 8
        assert config.database.url == "sqlite+aiosqlite:///./other.sqlite"

    def test_environment_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "STAGING")

        assert Settings(_env_file=None).environment == Environment.STAGING

    def test_negative_grace_rejected(self, monkeypatch):
        monkeypatch.setenv("SUBSCRIPTIONS__GRACE_PERIOD_DAYS", "-1")

        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_sweep_must_run_at_least_daily(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, scheduler={"renewal_interval_seconds": 90000})

    def test_placeholder_qr_secret_refused_in_production(self):
        with pytest.raises(ValidationError, match="QR secret"):
            Settings(_env_file=None, environment="production")

    def test_production_with_real_secret(self):
        config = Settings(
            _env_file=None,
            environment="production",
            qr=QRSettings(secret_key="a-real-production-signing-secret-value"),
        )

        assert config.is_production

    def test_unsupported_algorithm(self):
        with pytest.raises(ValidationError):
            QRSettings(algorithm="none")
