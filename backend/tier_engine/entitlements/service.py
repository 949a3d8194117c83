"""
Tier Service - plan transitions and tier history.

All plan writes go through here so that every change:
1. updates the subscription account
2. refreshes the usage_limit snapshots on the user's counters
3. appends a TierHistory row

Upgrades and renewals are supplied by an external billing collaborator via
change_tier(); the lifecycle scheduler uses perform_automatic_downgrade().
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tier_engine.config.settings import TierEngineSettings, get_settings
from tier_engine.entitlements.audit import AuditAction, AuditResource, AuditSink, LoggingAuditSink
from tier_engine.entitlements.catalog import FeatureCatalog
from tier_engine.entitlements.errors import DatastoreUnavailableError, UserNotFoundError
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.models.base import as_utc, utcnow
from tier_engine.models.tier_history import TierChangeReason, TierHistory
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)


class TierService:
    """Writes plan changes and reads tier history."""

    def __init__(
        self,
        catalog: Optional[FeatureCatalog] = None,
        usage_tracker: Optional[UsageTracker] = None,
        settings: Optional[TierEngineSettings] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self._catalog = catalog or FeatureCatalog()
        self._usage = usage_tracker or UsageTracker(self._catalog)
        self._settings = settings or get_settings()
        self._audit = audit_sink or LoggingAuditSink()

    def change_tier(
        self,
        db: Session,
        user_id: str,
        new_plan: Union[str, SubscriptionPlan],
        reason: str,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> TierHistory:
        """
        Apply an externally initiated plan change.

        Free accounts never carry an expiry, so expires_at is ignored when
        moving to free.

        Raises:
            UserNotFoundError: no account with this id
            ValueError: the change would leave plan and expiry unchanged
            DatastoreUnavailableError: the write failed
        """
        plan = SubscriptionPlan(new_plan)
        if plan == SubscriptionPlan.FREE:
            expires_at = None
        expires_at = as_utc(expires_at)

        try:
            account = db.get(SubscriptionAccount, user_id)
            if account is None:
                raise UserNotFoundError(user_id)

            previous = SubscriptionPlan(account.subscription_plan)
            if previous == plan and as_utc(account.subscription_expires_at) == expires_at:
                raise ValueError(
                    f"User {user_id} is already on {plan.value} with the same expiry"
                )

            account.subscription_plan = plan.value
            account.subscription_expires_at = expires_at
            db.flush()

            self._usage.sync_usage_limits(db, user_id, plan)
            history = self._record_change(
                db,
                user_id=user_id,
                previous_plan=previous,
                new_plan=plan,
                reason=reason,
                changed_by=changed_by,
                notes=notes,
            )
            if commit:
                db.commit()
        except (UserNotFoundError, ValueError):
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to change tier", extra={
                "user_id": user_id,
                "new_plan": plan.value,
                "error": str(e),
            })
            raise DatastoreUnavailableError("change_tier", e) from e

        logger.info("Subscription tier changed", extra={
            "user_id": user_id,
            "previous_plan": previous.value,
            "new_plan": plan.value,
            "reason": reason,
            "changed_by": changed_by,
        })
        self._audit.log(
            user_id=user_id,
            action=AuditAction.TIER_CHANGED,
            resource=AuditResource.TIER_SERVICE,
            details={
                "previous_plan": previous.value,
                "new_plan": plan.value,
                "reason": reason,
                "changed_by": changed_by,
                "expires_at": expires_at,
            },
        )
        return history

    def perform_automatic_downgrade(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> bool:
        """
        Downgrade a premium account whose grace period has ended.

        The account write is a conditional UPDATE on the same predicate the
        scheduler selects by, so running it twice (or from two processes)
        changes the account and appends history at most once.

        Returns:
            True if this call downgraded the account, False if it was not
            eligible (missing, free, not expired, or still in grace).

        Raises:
            DatastoreUnavailableError: the write failed
        """
        now = as_utc(now) if now else utcnow()
        cutoff = now - timedelta(days=self._settings.grace_period_days)

        try:
            result = db.execute(
                update(SubscriptionAccount)
                .where(and_(
                    SubscriptionAccount.id == user_id,
                    SubscriptionAccount.subscription_plan == SubscriptionPlan.PREMIUM.value,
                    SubscriptionAccount.subscription_expires_at.isnot(None),
                    SubscriptionAccount.subscription_expires_at < cutoff,
                ))
                .values(
                    subscription_plan=SubscriptionPlan.FREE.value,
                    subscription_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug("Account not eligible for automatic downgrade", extra={
                    "user_id": user_id,
                })
                return False
            # Loaded instances of the account are stale after the bulk UPDATE
            db.expire_all()

            self._usage.sync_usage_limits(db, user_id, SubscriptionPlan.FREE)
            self._record_change(
                db,
                user_id=user_id,
                previous_plan=SubscriptionPlan.PREMIUM,
                new_plan=SubscriptionPlan.FREE,
                reason=TierChangeReason.EXPIRATION,
                effective_date=now,
            )
            if commit:
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to downgrade account", extra={
                "user_id": user_id,
                "error": str(e),
            })
            raise DatastoreUnavailableError("automatic_downgrade", e) from e

        logger.info("Account automatically downgraded to free", extra={
            "user_id": user_id,
            "grace_period_days": self._settings.grace_period_days,
        })
        return True

    def get_tier_history(self, db: Session, user_id: str, limit: int = 50) -> List[TierHistory]:
        """Most recent tier changes first."""
        try:
            return (
                db.query(TierHistory)
                .filter(TierHistory.user_id == user_id)
                .order_by(TierHistory.effective_date.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise DatastoreUnavailableError("load_tier_history", e) from e

    def _record_change(
        self,
        db: Session,
        user_id: str,
        previous_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        reason: str,
        changed_by: Optional[str] = None,
        notes: Optional[str] = None,
        effective_date: Optional[datetime] = None,
    ) -> TierHistory:
        history = TierHistory(
            user_id=user_id,
            previous_plan=previous_plan.value,
            new_plan=new_plan.value,
            change_reason=reason,
            changed_by=changed_by,
            effective_date=effective_date or utcnow(),
            notes=notes,
        )
        db.add(history)
        db.flush()
        return history
