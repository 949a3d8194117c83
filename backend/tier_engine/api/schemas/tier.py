"""
Pydantic schemas for the tier status API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from tier_engine.entitlements.models import (
    BulkTierRequirementResult,
    FeatureValidationResult,
    TierRequirementRequest,
    TierStatus,
)
from tier_engine.entitlements.statistics import UsageStatistics
from tier_engine.entitlements.validator import MAX_BULK_REQUIREMENTS
from tier_engine.models.tier_history import TierHistory


class FeatureLimitResponse(BaseModel):
    """A feature's entitlement for the caller's tier."""

    limit: Optional[int] = Field(None, description="Numeric limit; null means unlimited")
    enabled: bool
    unlimited: bool


class TierStatusResponse(BaseModel):
    """Point-in-time tier status for the caller."""

    user_id: str
    subscription_plan: str = Field(..., description="free or premium")
    subscription_expires_at: Optional[datetime] = None
    is_active: bool
    days_until_expiration: Optional[int] = Field(
        None, description="Whole days until expiry, negative once expired"
    )
    grace_period_active: bool
    grace_period_expires_at: Optional[datetime] = None
    tier_features: Dict[str, FeatureLimitResponse]
    current_usage: Dict[str, int]

    @classmethod
    def from_status(cls, tier_status: TierStatus) -> "TierStatusResponse":
        return cls(
            user_id=tier_status.user_id,
            subscription_plan=tier_status.subscription_plan.value,
            subscription_expires_at=tier_status.subscription_expires_at,
            is_active=tier_status.is_active,
            days_until_expiration=tier_status.days_until_expiration,
            grace_period_active=tier_status.grace_period_active,
            grace_period_expires_at=tier_status.grace_period_expires_at,
            tier_features={
                name.value: FeatureLimitResponse(**limit.to_dict())
                for name, limit in tier_status.tier_features.items()
            },
            current_usage={
                name.value: count for name, count in tier_status.current_usage.items()
            },
        )


class FeatureCheckResponse(BaseModel):
    """Hard allow/deny decision for one feature."""

    feature: str
    access_granted: bool
    feature_available: bool
    usage_within_limits: bool
    current_usage: int
    limit: Optional[int] = None
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    upgrade_prompt: Optional[str] = None

    @classmethod
    def from_result(cls, result: FeatureValidationResult) -> "FeatureCheckResponse":
        return cls(**result.to_dict())


class OperationCheckResponse(BaseModel):
    """Pre-write guard decision, may carry a warning."""

    can_proceed: bool
    current_tier: str
    feature: str
    current_usage: int
    limit: Optional[int] = None
    remaining: Union[int, str]
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    warning: Optional[str] = None
    upgrade_prompt: Optional[str] = None


class TierHistoryEntry(BaseModel):
    """One plan change."""

    previous_plan: str
    new_plan: str
    change_reason: str
    changed_by: Optional[str] = None
    effective_date: datetime
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: TierHistory) -> "TierHistoryEntry":
        return cls(
            previous_plan=row.previous_plan,
            new_plan=row.new_plan,
            change_reason=row.change_reason,
            changed_by=row.changed_by,
            effective_date=row.effective_date,
            notes=row.notes,
        )


class UsageMetricResponse(BaseModel):
    feature: str
    current_usage: int
    limit: Optional[int] = None
    remaining: Union[int, str]
    percentage: int
    status: str = Field(..., description="within_limit, approaching_limit or limit_reached")


class DateRange(BaseModel):
    start: datetime
    end: datetime


class UsageStatisticsResponse(BaseModel):
    """Usage against limits for a reporting period."""

    user_id: str
    subscription_plan: str
    period: str
    date_range: DateRange
    metrics: Dict[str, UsageMetricResponse]

    @classmethod
    def from_statistics(cls, statistics: UsageStatistics) -> "UsageStatisticsResponse":
        return cls(
            user_id=statistics.user_id,
            subscription_plan=statistics.subscription_plan,
            period=statistics.period,
            date_range=DateRange(start=statistics.start, end=statistics.end),
            metrics={
                name: UsageMetricResponse(**metric.to_dict())
                for name, metric in statistics.metrics.items()
            },
        )


# =============================================================================
# Internal (service-to-service) validation
# =============================================================================


class TierRequirementBody(BaseModel):
    user_id: str = Field(..., min_length=1)
    feature: str = Field(..., min_length=1)
    required_tier: str = Field(..., min_length=1, description="free or premium")
    action: Optional[str] = None

    def to_request(self) -> TierRequirementRequest:
        return TierRequirementRequest(
            user_id=self.user_id,
            feature=self.feature,
            required_tier=self.required_tier,
            action=self.action,
        )


class BulkTierRequirementBody(BaseModel):
    requests: List[TierRequirementBody] = Field(
        ..., min_length=1, max_length=MAX_BULK_REQUIREMENTS
    )


class TierRequirementResponse(BaseModel):
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
    grace_period_active: bool
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    upgrade_prompt: Optional[str] = None


class TierRequirementOutcomeResponse(BaseModel):
    user_id: str
    feature: str
    result: Optional[TierRequirementResponse] = None
    error: Optional[Dict[str, Any]] = None


class BulkTierRequirementResponse(BaseModel):
    results: List[TierRequirementOutcomeResponse]
    total: int

    @classmethod
    def from_result(cls, bulk: BulkTierRequirementResult) -> "BulkTierRequirementResponse":
        return cls(**bulk.to_dict())
