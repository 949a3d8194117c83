"""
Tier entitlement engine.

Resolves a user's tier status, validates feature access against tier limits
and usage, and records plan changes.

Usage:
    from tier_engine.entitlements import FeatureAccessValidator

    validator = FeatureAccessValidator()
    result = validator.check_operation(db, user_id, "products")
    if not result.can_proceed:
        ...
"""

from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.models import (
    BulkValidationResult,
    FeatureLimit,
    FeatureUsage,
    FeatureValidationResult,
    ReasonCode,
    TierStatus,
    TierValidationResult,
    UsageThresholdResult,
)
from tier_engine.entitlements.errors import (
    DatastoreUnavailableError,
    NotificationDeliveryFailedError,
    TierEngineError,
    UnknownFeatureError,
    UsageLimitExceededError,
    UserNotFoundError,
)
from tier_engine.entitlements.catalog import FeatureCatalog, seed_feature_definitions
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.validator import FeatureAccessValidator
from tier_engine.entitlements.service import TierService
from tier_engine.entitlements.audit import AuditSink, DatabaseAuditSink, LoggingAuditSink
from tier_engine.entitlements.notifications import (
    EmailNotificationDispatcher,
    NotificationDispatcher,
)

__all__ = [
    "FeatureName",
    "BulkValidationResult",
    "FeatureLimit",
    "FeatureUsage",
    "FeatureValidationResult",
    "ReasonCode",
    "TierStatus",
    "TierValidationResult",
    "UsageThresholdResult",
    "DatastoreUnavailableError",
    "NotificationDeliveryFailedError",
    "TierEngineError",
    "UnknownFeatureError",
    "UsageLimitExceededError",
    "UserNotFoundError",
    "FeatureCatalog",
    "seed_feature_definitions",
    "UsageTracker",
    "TierStatusResolver",
    "FeatureAccessValidator",
    "TierService",
    "AuditSink",
    "DatabaseAuditSink",
    "LoggingAuditSink",
    "EmailNotificationDispatcher",
    "NotificationDispatcher",
]
