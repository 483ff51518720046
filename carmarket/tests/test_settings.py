"""Tests for environment-driven settings."""

import pytest

from carmarket.config.settings import Settings


class TestHistoryCredentials:

    def test_test_environment_uses_test_key(self):
        settings = Settings(
            api_environment="test",
            history_api_test_key="tk",
            history_api_live_key="lk",
            history_api_test_base_url="https://test.example",
        )
        assert settings.history_test_mode is True
        assert settings.active_history_api_key == "tk"
        assert settings.active_history_base_url == "https://test.example"

    def test_production_environment_uses_live_key(self):
        settings = Settings(api_environment="production", history_api_test_key="tk", history_api_live_key="lk")
        assert settings.history_test_mode is False
        assert settings.active_history_api_key == "lk"


class TestValidateProduction:

    def test_development_skips_checks(self):
        Settings(environment="development").validate_production()

    def test_production_requires_live_mode(self):
        settings = Settings(environment="production", api_environment="test")
        with pytest.raises(ValueError, match="API_ENVIRONMENT"):
            settings.validate_production()

    def test_production_requires_live_key(self):
        settings = Settings(environment="production", api_environment="production", history_api_live_key="")
        with pytest.raises(ValueError, match="HISTORY_API_LIVE_KEY"):
            settings.validate_production()

    def test_production_ok(self):
        Settings(
            environment="production",
            api_environment="production",
            history_api_live_key="lk",
            mot_fallback_api_key="gk",
            redis_url="redis://localhost:6379/0",
        ).validate_production()


def test_celery_fallbacks():
    settings = Settings(redis_url="", celery_broker_url="", celery_result_backend="")
    assert settings.effective_celery_broker == "memory://"
    assert settings.effective_celery_backend == "cache+memory://"
