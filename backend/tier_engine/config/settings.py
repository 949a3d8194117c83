"""
Runtime settings for the tier engine.

Read once at process start from environment variables. The grace period and
warning threshold live here, isolated from the algorithms that use them, so
they can later be promoted to per-tier data without touching the resolver
or the validator.

Environment variables:
- ENABLE_TIER_SCHEDULER: "false" disables the lifecycle scheduler (default: true)
- TIER_DOWNGRADE_INTERVAL_SECONDS: downgrade sweep period (default: 900)
- TIER_NOTIFICATION_INTERVAL_SECONDS: notification sweep period (default: 86400)
- TIER_DOWNGRADE_BATCH_SIZE: accounts per downgrade sweep (default: 200)
- TIER_NOTIFICATION_BATCH_SIZE: accounts per notification query (default: 500)
- TIER_GRACE_PERIOD_DAYS: days of premium access after expiry (default: 7)
- TIER_WARNING_THRESHOLD: fraction of a limit that triggers a warning (default: 0.8)
- TIER_EXPIRATION_WARNING_DAYS: look-ahead for expiration warnings (default: 7)
- TIER_VALIDATION_FAIL_OPEN: allow creation when tier lookup fails (default: false)
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_GRACE_PERIOD_DAYS = 7
DEFAULT_WARNING_THRESHOLD = 0.8
DEFAULT_DOWNGRADE_INTERVAL_SECONDS = 15 * 60
DEFAULT_NOTIFICATION_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_DOWNGRADE_BATCH_SIZE = 200
DEFAULT_NOTIFICATION_BATCH_SIZE = 500
DEFAULT_EXPIRATION_WARNING_DAYS = 7

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(name: str, raw: Optional[str], default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_positive_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _parse_fraction(name: str, raw: Optional[str], default: float) -> float:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if not 0 < value <= 1:
        raise ValueError(f"{name} must be in (0, 1], got {value}")
    return value


@dataclass(frozen=True)
class TierEngineSettings:
    """Process-wide engine configuration."""

    scheduler_enabled: bool = True
    downgrade_interval_seconds: int = DEFAULT_DOWNGRADE_INTERVAL_SECONDS
    notification_interval_seconds: int = DEFAULT_NOTIFICATION_INTERVAL_SECONDS
    downgrade_batch_size: int = DEFAULT_DOWNGRADE_BATCH_SIZE
    notification_batch_size: int = DEFAULT_NOTIFICATION_BATCH_SIZE
    grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    expiration_warning_days: int = DEFAULT_EXPIRATION_WARNING_DAYS
    fail_open: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TierEngineSettings":
        env = os.environ if environ is None else environ
        return cls(
            scheduler_enabled=_parse_bool(
                "ENABLE_TIER_SCHEDULER", env.get("ENABLE_TIER_SCHEDULER"), True
            ),
            downgrade_interval_seconds=_parse_positive_int(
                "TIER_DOWNGRADE_INTERVAL_SECONDS",
                env.get("TIER_DOWNGRADE_INTERVAL_SECONDS"),
                DEFAULT_DOWNGRADE_INTERVAL_SECONDS,
            ),
            notification_interval_seconds=_parse_positive_int(
                "TIER_NOTIFICATION_INTERVAL_SECONDS",
                env.get("TIER_NOTIFICATION_INTERVAL_SECONDS"),
                DEFAULT_NOTIFICATION_INTERVAL_SECONDS,
            ),
            downgrade_batch_size=_parse_positive_int(
                "TIER_DOWNGRADE_BATCH_SIZE",
                env.get("TIER_DOWNGRADE_BATCH_SIZE"),
                DEFAULT_DOWNGRADE_BATCH_SIZE,
            ),
            notification_batch_size=_parse_positive_int(
                "TIER_NOTIFICATION_BATCH_SIZE",
                env.get("TIER_NOTIFICATION_BATCH_SIZE"),
                DEFAULT_NOTIFICATION_BATCH_SIZE,
            ),
            grace_period_days=_parse_positive_int(
                "TIER_GRACE_PERIOD_DAYS",
                env.get("TIER_GRACE_PERIOD_DAYS"),
                DEFAULT_GRACE_PERIOD_DAYS,
            ),
            warning_threshold=_parse_fraction(
                "TIER_WARNING_THRESHOLD",
                env.get("TIER_WARNING_THRESHOLD"),
                DEFAULT_WARNING_THRESHOLD,
            ),
            expiration_warning_days=_parse_positive_int(
                "TIER_EXPIRATION_WARNING_DAYS",
                env.get("TIER_EXPIRATION_WARNING_DAYS"),
                DEFAULT_EXPIRATION_WARNING_DAYS,
            ),
            fail_open=_parse_bool(
                "TIER_VALIDATION_FAIL_OPEN", env.get("TIER_VALIDATION_FAIL_OPEN"), False
            ),
        )


_settings: Optional[TierEngineSettings] = None


def get_settings() -> TierEngineSettings:
    """Get or create the settings singleton."""
    global _settings
    if _settings is None:
        _settings = TierEngineSettings.from_env()
    return _settings
