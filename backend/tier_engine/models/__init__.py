"""
Database models for the tier engine.
"""

from tier_engine.models.base import TimestampMixin, generate_uuid, as_utc, utcnow
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan
from tier_engine.models.tier_feature import TierFeatureDefinition, UserTierFeature
from tier_engine.models.tier_history import TierHistory, TierChangeReason
from tier_engine.models.audit_log import AuditLog

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "as_utc",
    "utcnow",
    "SubscriptionAccount",
    "SubscriptionPlan",
    "TierFeatureDefinition",
    "UserTierFeature",
    "TierHistory",
    "TierChangeReason",
    "AuditLog",
]
