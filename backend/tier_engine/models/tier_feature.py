"""
Feature definition and usage models.

TierFeatureDefinition: immutable reference data, one row per (tier, feature).
UserTierFeature: per-user running counter for a limited feature.
"""

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime,
    UniqueConstraint, CheckConstraint, Index, func
)

from tier_engine.db_base import Base
from tier_engine.models.base import TimestampMixin, generate_uuid


class TierFeatureDefinition(Base, TimestampMixin):
    """
    Defines a feature's availability and limit for a tier.

    feature_limit NULL means unlimited.
    """

    __tablename__ = "tier_feature_definitions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        String(20),
        nullable=False,
        index=True,
        comment="Subscription plan (free, premium)"
    )
    feature_name = Column(
        String(100),
        nullable=False,
        comment="Machine-readable feature identifier (e.g., max_products)"
    )
    feature_limit = Column(
        Integer,
        nullable=True,
        comment="Numerical limit (NULL = unlimited)"
    )
    feature_enabled = Column(
        Boolean,
        nullable=False,
        default=True,
    )
    description = Column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("tier", "feature_name", name="uq_tier_feature"),
        CheckConstraint(
            "feature_limit IS NULL OR feature_limit >= 0",
            name="ck_tier_feature_limit_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TierFeatureDefinition(tier={self.tier}, feature={self.feature_name}, "
            f"limit={self.feature_limit}, enabled={self.feature_enabled})>"
        )


class UserTierFeature(Base, TimestampMixin):
    """
    Usage counter for one (user, feature) pair.

    Written on every successful create/delete of a limited resource.
    current_usage is only ever changed with a single UPDATE statement so
    concurrent requests cannot lose updates.
    """

    __tablename__ = "user_tier_features"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(36),
        nullable=False,
        index=True,
    )
    feature_name = Column(
        String(100),
        nullable=False,
    )
    current_usage = Column(
        Integer,
        nullable=False,
        default=0,
    )
    usage_limit = Column(
        Integer,
        nullable=True,
        comment="Snapshot of the tier limit (NULL = unlimited)"
    )
    last_reset_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("user_id", "feature_name", name="uq_user_tier_feature"),
        CheckConstraint("current_usage >= 0", name="ck_user_tier_feature_usage_non_negative"),
        Index("ix_user_tier_features_user_feature", "user_id", "feature_name"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserTierFeature(user_id={self.user_id}, feature={self.feature_name}, "
            f"usage={self.current_usage}/{self.usage_limit})>"
        )
