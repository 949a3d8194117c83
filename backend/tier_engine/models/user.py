"""
Subscription account model.

The account row is owned by the user-identity subsystem; this engine reads
it to resolve tier status and writes subscription_plan /
subscription_expires_at on automatic downgrade.

Lifecycle (derived, not stored):
    PREMIUM_ACTIVE -> (expires_at passed) -> PREMIUM_GRACE -> (grace passed) -> FREE
"""

from enum import Enum as PyEnum

from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index

from tier_engine.db_base import Base
from tier_engine.models.base import TimestampMixin, generate_uuid


class SubscriptionPlan(str, PyEnum):
    """Subscription plan values."""
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionAccount(Base, TimestampMixin):
    """
    A user's subscription state.

    subscription_expires_at is only meaningful for premium accounts; it is
    cleared when the account is downgraded to free.
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Delivery address for tier notifications"
    )
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)

    subscription_plan = Column(
        Enum(*[plan.value for plan in SubscriptionPlan], name="subscription_plan"),
        nullable=False,
        default=SubscriptionPlan.FREE.value,
        comment="Current tier"
    )
    subscription_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Premium expiry; NULL for free accounts"
    )
    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    __table_args__ = (
        Index(
            "ix_users_plan_active_expires",
            "subscription_plan", "is_active", "subscription_expires_at",
        ),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionAccount(id={self.id}, plan={self.subscription_plan})>"

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.email

    @property
    def is_premium(self) -> bool:
        return self.subscription_plan == SubscriptionPlan.PREMIUM.value
