"""Tests for settings and logging configuration."""

from unittest.mock import patch

import pytest
import structlog

from vilo.platform import get_version
from vilo.platform.logging import get_logger, setup_logging
from vilo.platform.settings import Environment, Settings, get_settings, reset_settings

pytestmark = pytest.mark.unit


class TestSettings:
    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION__GRACE_PERIOD_DAYS", "10")
        monkeypatch.setenv("AUTOMATION__PAYMENT_RETRY_INTERVALS", "[2, 4]")

        settings = Settings()

        assert settings.automation.grace_period_days == 10
        assert settings.automation.payment_retry_intervals == [2, 4]
        assert settings.automation.renewal_reminder_days == 7

    def test_environment_case_insensitive(self):
        settings = Settings(environment="PRODUCTION")

        assert settings.environment == Environment.PRODUCTION
        assert settings.is_production
        assert not settings.is_development

    def test_testing_flag(self):
        assert Settings(testing=True).is_testing
        assert Settings(environment="test").is_testing

    def test_automation_defaults(self):
        automation = Settings.AutomationSettings()

        assert automation.trial_ending_notice_days == 3
        assert automation.payment_retry_intervals == [1, 3, 7]
        assert automation.limit_warning_threshold == 0.8
        assert automation.batch_size == 100
        assert automation.daily_jobs_hour == 2

    def test_singleton_reset(self):
        first = get_settings()
        assert get_settings() is first

        reset_settings()
        try:
            assert get_settings() is not first
        finally:
            reset_settings()

    def test_version(self):
        assert get_version() == "1.0.0"


class TestLogging:
    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_setup_logging(self, log_format):
        settings = Settings(observability={"log_format": log_format})

        with patch("vilo.platform.logging.settings", settings):
            setup_logging()

        renderer = structlog.get_config()["processors"][-1]
        if log_format == "json":
            assert isinstance(renderer, structlog.processors.JSONRenderer)
        else:
            assert isinstance(renderer, structlog.dev.ConsoleRenderer)

    def test_get_logger(self):
        logger = get_logger("vilo.test")

        assert logger is not None
        logger.info("Logger smoke test", job_name="process_renewals")
