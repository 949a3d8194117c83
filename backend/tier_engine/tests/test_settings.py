"""
Tests for engine settings parsed from the environment.
"""

import pytest

from tier_engine.config.settings import TierEngineSettings


class TestDefaults:

    def test_empty_environment_uses_defaults(self):
        settings = TierEngineSettings.from_env({})

        assert settings.scheduler_enabled is True
        assert settings.downgrade_interval_seconds == 900
        assert settings.notification_interval_seconds == 86400
        assert settings.downgrade_batch_size == 200
        assert settings.notification_batch_size == 500
        assert settings.grace_period_days == 7
        assert settings.warning_threshold == 0.8
        assert settings.expiration_warning_days == 7
        assert settings.fail_open is False

    def test_blank_values_fall_back_to_defaults(self):
        settings = TierEngineSettings.from_env({"TIER_DOWNGRADE_BATCH_SIZE": "  "})

        assert settings.downgrade_batch_size == 200


class TestOverrides:

    def test_scheduler_can_be_disabled(self):
        settings = TierEngineSettings.from_env({"ENABLE_TIER_SCHEDULER": "false"})

        assert settings.scheduler_enabled is False

    def test_numeric_overrides(self):
        settings = TierEngineSettings.from_env({
            "TIER_DOWNGRADE_INTERVAL_SECONDS": "60",
            "TIER_NOTIFICATION_INTERVAL_SECONDS": "3600",
            "TIER_DOWNGRADE_BATCH_SIZE": "10",
            "TIER_GRACE_PERIOD_DAYS": "3",
            "TIER_WARNING_THRESHOLD": "0.9",
        })

        assert settings.downgrade_interval_seconds == 60
        assert settings.notification_interval_seconds == 3600
        assert settings.downgrade_batch_size == 10
        assert settings.grace_period_days == 3
        assert settings.warning_threshold == 0.9

    def test_fail_open_opt_in(self):
        settings = TierEngineSettings.from_env({"TIER_VALIDATION_FAIL_OPEN": "yes"})

        assert settings.fail_open is True


class TestInvalidValues:

    @pytest.mark.parametrize("name,value", [
        ("TIER_DOWNGRADE_BATCH_SIZE", "abc"),
        ("TIER_DOWNGRADE_INTERVAL_SECONDS", "0"),
        ("TIER_GRACE_PERIOD_DAYS", "-1"),
        ("TIER_WARNING_THRESHOLD", "1.5"),
        ("TIER_WARNING_THRESHOLD", "often"),
        ("ENABLE_TIER_SCHEDULER", "maybe"),
    ])
    def test_invalid_value_raises(self, name, value):
        with pytest.raises(ValueError):
            TierEngineSettings.from_env({name: value})
