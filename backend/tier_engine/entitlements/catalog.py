"""
Feature Catalog - per-tier feature definitions.

Reads tier_feature_definitions rows for a tier and exposes them as a
FeatureName -> FeatureLimit map. Rows whose feature_name is not part of the
closed FeatureName enumeration are skipped with a warning, so an unknown
feature always resolves to "not available".

An optional in-process cache can be enabled; correctness never depends on
it because invalidate() must be called whenever definitions change.
"""

import logging
from threading import Lock
from typing import Dict, Iterable, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tier_engine.entitlements.errors import DatastoreUnavailableError
from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.models import FeatureLimit
from tier_engine.models.tier_feature import TierFeatureDefinition, UserTierFeature
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)

TierFeatures = Dict[FeatureName, FeatureLimit]


def _tier_value(tier: Union[str, SubscriptionPlan]) -> str:
    return tier.value if isinstance(tier, SubscriptionPlan) else str(tier)


class FeatureCatalog:
    """Read access to feature definitions, optionally cached per tier."""

    def __init__(self, cache_enabled: bool = False):
        self._cache_enabled = cache_enabled
        self._cache: Dict[str, TierFeatures] = {}
        self._lock = Lock()

    def get_tier_features(
        self,
        db: Session,
        tier: Union[str, SubscriptionPlan],
    ) -> TierFeatures:
        """Return every known feature definition for a tier."""
        key = _tier_value(tier)

        if self._cache_enabled:
            with self._lock:
                cached = self._cache.get(key)
            if cached is not None:
                return dict(cached)

        try:
            rows = db.query(TierFeatureDefinition).filter(
                TierFeatureDefinition.tier == key
            ).all()
        except SQLAlchemyError as e:
            raise DatastoreUnavailableError("load_feature_definitions", e) from e

        features: TierFeatures = {}
        for row in rows:
            feature = FeatureName.parse(row.feature_name)
            if feature is None or feature.value != row.feature_name:
                logger.warning("Skipping unknown feature definition", extra={
                    "tier": key,
                    "feature_name": row.feature_name,
                })
                continue
            features[feature] = FeatureLimit(
                limit=row.feature_limit,
                enabled=bool(row.feature_enabled),
                description=row.description,
            )

        if self._cache_enabled:
            with self._lock:
                self._cache[key] = dict(features)

        return features

    def get_feature(
        self,
        db: Session,
        tier: Union[str, SubscriptionPlan],
        feature: Union[str, FeatureName],
    ) -> Optional[FeatureLimit]:
        parsed = FeatureName.parse(feature)
        if parsed is None:
            return None
        return self.get_tier_features(db, tier).get(parsed)

    def invalidate(self, tier: Optional[Union[str, SubscriptionPlan]] = None) -> None:
        """Drop cached definitions for one tier, or for all tiers."""
        with self._lock:
            if tier is None:
                self._cache.clear()
            else:
                self._cache.pop(_tier_value(tier), None)


def seed_feature_definitions(db: Session, definitions: Iterable) -> Dict[str, int]:
    """
    Upsert feature definitions.

    Idempotent: existing (tier, feature) rows are updated in place, new ones
    inserted. Whenever a definition is created or changed, the usage_limit
    snapshots of users currently on that tier are rewritten to match, so the
    counters enforce the same limit the validator reads. Does not commit; the
    caller owns the transaction.

    Args:
        db: Database session
        definitions: FeatureDefinitionSpec items (tier, feature, limit,
            enabled, description)

    Returns:
        Counts of created and updated rows
    """
    created = 0
    updated = 0
    snapshots = 0

    for spec in definitions:
        tier = _tier_value(spec.tier)
        feature_name = spec.feature.value
        row = db.query(TierFeatureDefinition).filter(
            TierFeatureDefinition.tier == tier,
            TierFeatureDefinition.feature_name == feature_name,
        ).first()

        if row is None:
            db.add(TierFeatureDefinition(
                tier=tier,
                feature_name=feature_name,
                feature_limit=spec.limit,
                feature_enabled=spec.enabled,
                description=spec.description,
            ))
            created += 1
            snapshots += refresh_usage_limit_snapshots(
                db, tier, feature_name, spec.limit if spec.enabled else 0
            )
            continue

        limit_changed = (
            row.feature_limit != spec.limit
            or bool(row.feature_enabled) != spec.enabled
        )
        if limit_changed or row.description != spec.description:
            row.feature_limit = spec.limit
            row.feature_enabled = spec.enabled
            row.description = spec.description
            updated += 1
        if limit_changed:
            snapshots += refresh_usage_limit_snapshots(
                db, tier, feature_name, spec.limit if spec.enabled else 0
            )

    db.flush()
    logger.info("Seeded tier feature definitions", extra={
        "created": created,
        "updated": updated,
        "usage_snapshots_refreshed": snapshots,
    })
    return {"created": created, "updated": updated}


def refresh_usage_limit_snapshots(
    db: Session,
    tier: Union[str, SubscriptionPlan],
    feature_name: str,
    limit: Optional[int],
) -> int:
    """
    Rewrite usage_limit on every counter for feature_name held by a user
    whose current plan is tier. Only the limit column is written.

    Returns the number of counters touched. Does not commit.
    """
    on_tier = select(SubscriptionAccount.id).where(
        SubscriptionAccount.subscription_plan == _tier_value(tier)
    )
    return db.execute(
        update(UserTierFeature)
        .where(
            UserTierFeature.feature_name == feature_name,
            UserTierFeature.user_id.in_(on_tier),
        )
        .values(usage_limit=limit)
        .execution_options(synchronize_session=False)
    ).rowcount
