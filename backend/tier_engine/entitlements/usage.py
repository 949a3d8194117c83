"""
Usage Tracker - per-user, per-feature running counters.

Every counter change is a single conditional UPDATE:

    UPDATE user_tier_features
       SET current_usage = CASE WHEN current_usage + :delta < 0 THEN 0
                                ELSE current_usage + :delta END
     WHERE user_id = :user_id AND feature_name = :feature
       AND (:delta <= 0 OR usage_limit IS NULL
            OR current_usage + :delta <= usage_limit)

so two concurrent requests can never both take the last free slot, and
decrements clamp at zero. Counters are never reset by a timer; reset_usage
is an explicit administrative operation.
"""

import logging
from datetime import datetime
from typing import Dict, Optional, Union

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tier_engine.entitlements.catalog import FeatureCatalog
from tier_engine.entitlements.errors import (
    DatastoreUnavailableError,
    UnknownFeatureError,
    UsageLimitExceededError,
    UserNotFoundError,
)
from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.models import FeatureUsage, UsageThresholdResult
from tier_engine.models.base import utcnow
from tier_engine.models.tier_feature import UserTierFeature
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)


class UsageTracker:
    """Atomic usage counters backed by user_tier_features."""

    def __init__(self, catalog: Optional[FeatureCatalog] = None):
        self._catalog = catalog or FeatureCatalog()

    # ------------------------------------------------------------------
    # Counter updates
    # ------------------------------------------------------------------

    def track(
        self,
        db: Session,
        user_id: str,
        feature: Union[str, FeatureName],
        delta: int,
        commit: bool = True,
    ) -> int:
        """
        Apply delta to a user's counter and return the new usage.

        Raises:
            UnknownFeatureError: feature is not in the catalog enumeration
            UsageLimitExceededError: an increment would pass the limit
            DatastoreUnavailableError: the datastore call failed
        """
        parsed = FeatureName.parse(feature)
        if parsed is None:
            raise UnknownFeatureError(str(feature))

        try:
            new_usage = self._apply_delta(db, user_id, parsed, delta)
            if commit:
                db.commit()
        except (UsageLimitExceededError, UserNotFoundError):
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to track feature usage", extra={
                "user_id": user_id,
                "feature": parsed.value,
                "delta": delta,
                "error": str(e),
            })
            raise DatastoreUnavailableError("track_usage", e) from e

        logger.debug("Feature usage tracked", extra={
            "user_id": user_id,
            "feature": parsed.value,
            "delta": delta,
            "current_usage": new_usage,
        })
        return new_usage

    def _conditional_update(self, db: Session, user_id: str, feature: FeatureName, delta: int) -> int:
        incremented = UserTierFeature.current_usage + delta
        stmt = (
            update(UserTierFeature)
            .where(
                UserTierFeature.user_id == user_id,
                UserTierFeature.feature_name == feature.value,
            )
            .values(current_usage=case((incremented < 0, 0), else_=incremented))
            .execution_options(synchronize_session=False)
        )
        if delta > 0:
            stmt = stmt.where(
                or_(
                    UserTierFeature.usage_limit.is_(None),
                    incremented <= UserTierFeature.usage_limit,
                )
            )
        return db.execute(stmt).rowcount

    def _read_counter(self, db: Session, user_id: str, feature: FeatureName):
        return db.execute(
            select(UserTierFeature.current_usage, UserTierFeature.usage_limit).where(
                UserTierFeature.user_id == user_id,
                UserTierFeature.feature_name == feature.value,
            )
        ).first()

    def _apply_delta(self, db: Session, user_id: str, feature: FeatureName, delta: int) -> int:
        if delta != 0 and self._conditional_update(db, user_id, feature, delta) == 1:
            return self._read_counter(db, user_id, feature).current_usage

        row = self._read_counter(db, user_id, feature)
        if row is not None:
            if delta == 0:
                return row.current_usage
            raise UsageLimitExceededError(user_id, feature.value, row.current_usage, row.usage_limit)

        # No counter yet: create it at zero with the tier's limit snapshot
        if delta <= 0:
            return 0

        self._create_counter(db, user_id, feature)
        if self._conditional_update(db, user_id, feature, delta) == 1:
            return self._read_counter(db, user_id, feature).current_usage

        row = self._read_counter(db, user_id, feature)
        raise UsageLimitExceededError(user_id, feature.value, row.current_usage, row.usage_limit)

    def _create_counter(self, db: Session, user_id: str, feature: FeatureName) -> None:
        plan = db.execute(
            select(SubscriptionAccount.subscription_plan).where(SubscriptionAccount.id == user_id)
        ).scalar_one_or_none()
        if plan is None:
            raise UserNotFoundError(user_id)

        limit = self._limit_snapshot(db, plan, feature)
        savepoint = db.begin_nested()
        try:
            db.add(UserTierFeature(
                user_id=user_id,
                feature_name=feature.value,
                current_usage=0,
                usage_limit=limit,
                last_reset_at=utcnow(),
            ))
            db.flush()
            savepoint.commit()
        except IntegrityError:
            # A concurrent request created the row first
            savepoint.rollback()
            logger.debug("Usage counter created concurrently", extra={
                "user_id": user_id,
                "feature": feature.value,
            })

    def _limit_snapshot(self, db: Session, plan: str, feature: FeatureName) -> Optional[int]:
        definition = self._catalog.get_feature(db, plan, feature)
        if definition is None or not definition.enabled:
            return 0
        return definition.limit

    # ------------------------------------------------------------------
    # Limit snapshots and resets
    # ------------------------------------------------------------------

    def sync_usage_limits(
        self,
        db: Session,
        user_id: str,
        plan: Union[str, SubscriptionPlan],
    ) -> int:
        """
        Refresh usage_limit snapshots after a plan change.

        Only the limit column is written, so concurrent counter updates are
        not lost. Does not commit.
        """
        tier_features = self._catalog.get_tier_features(db, plan)
        rows = db.execute(
            select(UserTierFeature.feature_name).where(UserTierFeature.user_id == user_id)
        ).scalars().all()

        updated = 0
        for feature_name in rows:
            feature = FeatureName.parse(feature_name)
            definition = tier_features.get(feature) if feature else None
            limit = definition.limit if definition and definition.enabled else 0
            db.execute(
                update(UserTierFeature)
                .where(
                    UserTierFeature.user_id == user_id,
                    UserTierFeature.feature_name == feature_name,
                )
                .values(usage_limit=limit)
                .execution_options(synchronize_session=False)
            )
            updated += 1
        return updated

    def reset_usage(
        self,
        db: Session,
        feature: Optional[Union[str, FeatureName]] = None,
        user_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> int:
        """
        Zero counters. Explicit administrative action only.

        Returns the number of counters reset.
        """
        stmt = update(UserTierFeature).values(
            current_usage=0,
            last_reset_at=at or utcnow(),
        ).execution_options(synchronize_session=False)

        if feature is not None:
            parsed = FeatureName.parse(feature)
            if parsed is None:
                raise UnknownFeatureError(str(feature))
            stmt = stmt.where(UserTierFeature.feature_name == parsed.value)
        if user_id is not None:
            stmt = stmt.where(UserTierFeature.user_id == user_id)

        try:
            affected = db.execute(stmt).rowcount
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DatastoreUnavailableError("reset_usage", e) from e

        logger.info("Usage counters reset", extra={
            "feature": getattr(feature, "value", feature),
            "user_id": user_id,
            "affected_rows": affected,
        })
        return affected

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_usage(self, db: Session, user_id: str) -> Dict[FeatureName, FeatureUsage]:
        """All counters for a user, keyed by feature."""
        try:
            rows = db.execute(
                select(
                    UserTierFeature.feature_name,
                    UserTierFeature.current_usage,
                    UserTierFeature.usage_limit,
                ).where(UserTierFeature.user_id == user_id)
            ).all()
        except SQLAlchemyError as e:
            raise DatastoreUnavailableError("load_usage", e) from e

        usage: Dict[FeatureName, FeatureUsage] = {}
        for row in rows:
            feature = FeatureName.parse(row.feature_name)
            if feature is None:
                continue
            usage[feature] = FeatureUsage(
                current=max(0, row.current_usage or 0),
                limit=row.usage_limit,
            )
        return usage

    def check_usage_threshold(
        self,
        db: Session,
        user_id: str,
        feature: Union[str, FeatureName],
        threshold: float,
    ) -> UsageThresholdResult:
        """Report whether a counter has reached threshold (0-1) of its limit."""
        parsed = FeatureName.parse(feature)
        usage = self.get_usage(db, user_id).get(parsed) if parsed else None

        if usage is None:
            return UsageThresholdResult(
                threshold_exceeded=False,
                current_usage=0,
                limit=None,
                percentage=0.0,
            )

        percentage = usage.current / usage.limit if usage.limit else 0.0
        exceeded = usage.limit is not None and percentage >= threshold
        warning = None
        if exceeded:
            warning = (
                f"You are approaching your {parsed.display_name} limit "
                f"({round(percentage * 100)}% used)"
            )

        return UsageThresholdResult(
            threshold_exceeded=exceeded,
            current_usage=usage.current,
            limit=usage.limit,
            percentage=percentage,
            warning_message=warning,
        )
