"""
Tests for settings validation and period parsing.
"""

from datetime import datetime, timezone

import pytest

from helpdesk_sync.config import Period, SyncSettings
from helpdesk_sync.errors import ConfigurationError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestPeriod:
    """Tests for Period.parse."""

    def test_school_year(self):
        period = Period.parse("2024-2025")
        assert period.start == utc(2024, 7, 1)
        assert period.end == utc(2025, 7, 1)

    def test_calendar_year(self):
        period = Period.parse("2023")
        assert period.start == utc(2023, 1, 1)
        assert period.end == utc(2024, 1, 1)

    def test_explicit_range(self):
        period = Period.parse("2024-01-15..2024-03-01")
        assert period.start == utc(2024, 1, 15)
        assert period.end == utc(2024, 3, 1)

    @pytest.mark.parametrize("period_id", [
        "",
        "2024-2026",
        "24-25",
        "2024-03-01..2024-01-15",
        "2024-02-30..2024-03-01",
        "fall semester",
    ])
    def test_malformed(self, period_id):
        with pytest.raises(ConfigurationError):
            Period.parse(period_id)

    def test_contains_is_end_exclusive(self):
        period = Period.parse("2024-2025")
        assert period.contains(utc(2024, 7, 1))
        assert period.contains(utc(2025, 6, 30, 23, 59))
        assert not period.contains(utc(2025, 7, 1))
        assert not period.contains(utc(2024, 6, 30))

    def test_is_historical(self):
        period = Period.parse("2023-2024")
        assert period.is_historical(utc(2024, 7, 1))
        assert not period.is_historical(utc(2024, 6, 30))


class TestSyncSettings:
    """Tests for SyncSettings.from_settings."""

    def test_valid_settings(self, base_settings):
        settings = SyncSettings.from_settings(base_settings, env={})

        assert settings.base_url == "https://helpdesk.test/api/v1"
        assert settings.page_size == 2
        assert settings.batch_size == 2
        assert settings.period.period_id == "2023-2024"

    def test_defaults(self):
        settings = SyncSettings.from_settings(
            {"baseUrl": "https://h.test/", "authToken": "t", "periodId": "2024"}, env={},
        )
        assert settings.base_url == "https://h.test"
        assert settings.page_size == 100
        assert settings.batch_size == 100
        assert settings.throttle_ms == 1000
        assert settings.quantum_seconds == 270.0
        assert settings.site_id is None

    def test_numeric_strings_accepted(self, base_settings):
        base_settings["pageSize"] = "50"
        settings = SyncSettings.from_settings(base_settings, env={})
        assert settings.page_size == 50

    def test_missing_token_names_key(self, base_settings):
        del base_settings["authToken"]
        with pytest.raises(ConfigurationError) as exc_info:
            SyncSettings.from_settings(base_settings, env={})
        assert "authToken" in str(exc_info.value)

    def test_page_size_out_of_range(self, base_settings):
        base_settings["pageSize"] = 0
        with pytest.raises(ConfigurationError) as exc_info:
            SyncSettings.from_settings(base_settings, env={})
        assert "pageSize" in str(exc_info.value)

    def test_malformed_period(self, base_settings):
        base_settings["periodId"] = "someday"
        with pytest.raises(ConfigurationError):
            SyncSettings.from_settings(base_settings, env={})

    def test_environment_overrides(self, base_settings):
        """Connection settings from the environment win over stored values."""
        env = {
            "HDSYNC_BASE_URL": "https://other.test/api",
            "HDSYNC_AUTH_TOKEN": "env-token",
            "HDSYNC_SITE_ID": "site-9",
        }
        settings = SyncSettings.from_settings(base_settings, env=env)

        assert settings.base_url == "https://other.test/api"
        assert settings.api_token == "env-token"
        assert settings.site_id == "site-9"
        assert settings.page_size == 2
