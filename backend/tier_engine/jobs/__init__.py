"""
Background jobs.
"""

from tier_engine.jobs.tier_scheduler import (
    DowngradeJobStats,
    NotificationJobStats,
    TierScheduler,
)

__all__ = [
    "DowngradeJobStats",
    "NotificationJobStats",
    "TierScheduler",
]
