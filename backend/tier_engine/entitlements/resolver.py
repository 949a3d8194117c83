"""
Tier Status Resolver - authoritative point-in-time view of a user's tier.

resolve(user_id) reads the subscription account, the feature definitions
for the account's current plan and the usage counters, and composes a
TierStatus. It performs no writes, so it is safe on hot request paths and
from the lifecycle scheduler alike.

Grace period rule:
    grace_period_active = plan == premium
                          AND expires_at is set
                          AND expires_at < now <= expires_at + grace_period_days
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tier_engine.config.settings import TierEngineSettings, get_settings
from tier_engine.entitlements.catalog import FeatureCatalog
from tier_engine.entitlements.errors import DatastoreUnavailableError, UserNotFoundError
from tier_engine.entitlements.models import TierStatus
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.models.base import as_utc, utcnow
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_until(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days until expiry, rounded up. Negative once expired."""
    if expires_at is None:
        return None
    return math.ceil((expires_at - now).total_seconds() / SECONDS_PER_DAY)


def grace_window(
    plan: SubscriptionPlan,
    expires_at: Optional[datetime],
    now: datetime,
    grace_period_days: int,
) -> Tuple[bool, Optional[datetime]]:
    """
    Return (grace_period_active, grace_period_expires_at).

    The deadline is reported for any expired premium account, even after the
    window has closed, so callers can tell how long ago grace ended.
    """
    if plan != SubscriptionPlan.PREMIUM or expires_at is None or now <= expires_at:
        return False, None
    deadline = expires_at + timedelta(days=grace_period_days)
    return now <= deadline, deadline


class TierStatusResolver:
    """Composes TierStatus from account, catalog and usage rows."""

    def __init__(
        self,
        catalog: Optional[FeatureCatalog] = None,
        usage_tracker: Optional[UsageTracker] = None,
        settings: Optional[TierEngineSettings] = None,
    ):
        self._catalog = catalog or FeatureCatalog()
        self._usage = usage_tracker or UsageTracker(self._catalog)
        self._settings = settings or get_settings()

    @property
    def grace_period_days(self) -> int:
        return self._settings.grace_period_days

    def resolve(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> TierStatus:
        """
        Resolve the current tier status for a user.

        Raises:
            UserNotFoundError: no account with this id
            DatastoreUnavailableError: any datastore failure
        """
        now = as_utc(now) if now else utcnow()

        try:
            account = db.get(SubscriptionAccount, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load subscription account", extra={
                "user_id": user_id,
                "error": str(e),
            })
            raise DatastoreUnavailableError("load_account", e) from e

        if account is None:
            raise UserNotFoundError(user_id)

        return self.resolve_account(db, account, now)

    def resolve_account(
        self,
        db: Session,
        account: SubscriptionAccount,
        now: Optional[datetime] = None,
    ) -> TierStatus:
        """Resolve status for an already-loaded account row."""
        now = as_utc(now) if now else utcnow()
        plan = SubscriptionPlan(account.subscription_plan)
        expires_at = as_utc(account.subscription_expires_at)

        grace_active, grace_deadline = grace_window(
            plan, expires_at, now, self._settings.grace_period_days
        )

        tier_features = self._catalog.get_tier_features(db, plan)
        counters = self._usage.get_usage(db, account.id)

        # Every known feature gets a count; missing rows mean zero usage
        current_usage = {feature: 0 for feature in tier_features}
        for feature, usage in counters.items():
            current_usage[feature] = max(0, usage.current)

        return TierStatus(
            user_id=account.id,
            subscription_plan=plan,
            subscription_expires_at=expires_at,
            is_active=bool(account.is_active),
            days_until_expiration=days_until(expires_at, now),
            grace_period_active=grace_active,
            grace_period_expires_at=grace_deadline,
            tier_features=tier_features,
            current_usage=current_usage,
        )
