"""
Typed entitlement snapshots and decision results.

TierStatus is derived on every call and never persisted or cached across
requests. Validation results are plain values: a denial is a normal outcome
carrying a reason code and an upgrade prompt, not an exception.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from tier_engine.entitlements.features import FeatureName
from tier_engine.models.user import SubscriptionPlan


class ReasonCode:
    """Machine-readable reasons attached to negative decisions."""
    FEATURE_NOT_DEFINED = "feature_not_defined"
    FEATURE_NOT_AVAILABLE = "feature_not_available"
    USAGE_LIMIT_EXCEEDED = "usage_limit_exceeded"
    TIER_STATUS_UNAVAILABLE = "tier_status_unavailable"
    INSUFFICIENT_TIER = "insufficient_tier"
    ACCOUNT_INACTIVE = "account_inactive"


UNLIMITED = "unlimited"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class FeatureLimit:
    """A feature's entitlement for a tier. limit=None means unlimited."""

    limit: Optional[int]
    enabled: bool
    description: Optional[str] = None

    @property
    def unlimited(self) -> bool:
        return self.enabled and self.limit is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "enabled": self.enabled,
            "unlimited": self.unlimited,
        }


@dataclass(frozen=True)
class FeatureUsage:
    """Current counter value and the limit snapshot stored with it."""

    current: int
    limit: Optional[int]


@dataclass
class TierStatus:
    """Point-in-time view of a user's tier."""

    user_id: str
    subscription_plan: SubscriptionPlan
    subscription_expires_at: Optional[datetime]
    is_active: bool
    days_until_expiration: Optional[int]
    grace_period_active: bool
    grace_period_expires_at: Optional[datetime]
    tier_features: Dict[FeatureName, FeatureLimit] = field(default_factory=dict)
    current_usage: Dict[FeatureName, int] = field(default_factory=dict)

    def feature(self, name: Union[str, FeatureName]) -> Optional[FeatureLimit]:
        feature = FeatureName.parse(name)
        if feature is None:
            return None
        return self.tier_features.get(feature)

    def usage(self, name: Union[str, FeatureName]) -> int:
        feature = FeatureName.parse(name)
        if feature is None:
            return 0
        return self.current_usage.get(feature, 0)

    @property
    def is_premium(self) -> bool:
        return self.subscription_plan == SubscriptionPlan.PREMIUM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "subscription_plan": self.subscription_plan.value,
            "subscription_expires_at": _iso(self.subscription_expires_at),
            "is_active": self.is_active,
            "days_until_expiration": self.days_until_expiration,
            "grace_period_active": self.grace_period_active,
            "grace_period_expires_at": _iso(self.grace_period_expires_at),
            "tier_features": {
                name.value: limit.to_dict() for name, limit in self.tier_features.items()
            },
            "current_usage": {
                name.value: count for name, count in self.current_usage.items()
            },
        }


@dataclass
class FeatureValidationResult:
    """Hard allow/deny decision for one feature."""

    feature: str
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    current_usage: int
    limit: Optional[int]
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    upgrade_prompt: Optional[str] = None

    @property
    def denied(self) -> bool:
        return not self.access_granted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "access_granted": self.access_granted,
            "feature_available": self.feature_available,
            "usage_within_limits": self.usage_within_limits,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "upgrade_prompt": self.upgrade_prompt,
        }


@dataclass
class TierValidationResult:
    """
    Pre-write guard decision.

    can_proceed may be True together with a warning when usage is close to
    the limit.
    """

    can_proceed: bool
    current_tier: str
    feature: str
    current_usage: int
    limit: Optional[int]
    remaining: Union[int, str]
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    warning: Optional[str] = None
    upgrade_prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_proceed": self.can_proceed,
            "current_tier": self.current_tier,
            "feature": self.feature,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "remaining": self.remaining,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "warning": self.warning,
            "upgrade_prompt": self.upgrade_prompt,
        }


@dataclass
class BulkValidationResult:
    """AND-composition of several pre-write checks."""

    results: Dict[str, TierValidationResult]
    overall_access: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_access": self.overall_access,
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }


@dataclass
class UsageThresholdResult:
    """How much of a feature's limit is used."""

    threshold_exceeded: bool
    current_usage: int
    limit: Optional[int]
    percentage: float
    warning_message: Optional[str] = None


@dataclass(frozen=True)
class TierRequirementRequest:
    """One service-to-service check: may user_id use feature at required_tier?"""

    user_id: str
    feature: str
    required_tier: str
    action: Optional[str] = None


@dataclass
class TierRequirementResult:
    """
    Service-to-service decision.

    access_granted requires an active account, a tier at or above
    required_tier and a granted feature decision.
    """

    user_id: str
    feature: str
    current_tier: str
    required_tier: str
    access_granted: bool
    tier_sufficient: bool
    is_active: bool
    feature_available: bool
    usage_within_limits: bool
    subscription_expires_at: Optional[datetime] = None
    grace_period_active: bool = False
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    upgrade_prompt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "feature": self.feature,
            "current_tier": self.current_tier,
            "required_tier": self.required_tier,
            "access_granted": self.access_granted,
            "tier_sufficient": self.tier_sufficient,
            "is_active": self.is_active,
            "feature_available": self.feature_available,
            "usage_within_limits": self.usage_within_limits,
            "subscription_expires_at": _iso(self.subscription_expires_at),
            "grace_period_active": self.grace_period_active,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "upgrade_prompt": self.upgrade_prompt,
        }


@dataclass
class TierRequirementOutcome:
    """A bulk entry: either a result or the error that stopped it."""

    user_id: str
    feature: str
    result: Optional[TierRequirementResult] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "feature": self.feature,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


@dataclass
class BulkTierRequirementResult:
    outcomes: List[TierRequirementOutcome]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [o.to_dict() for o in self.outcomes],
            "total": self.total,
        }
