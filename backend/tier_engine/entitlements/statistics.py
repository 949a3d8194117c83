"""
Usage statistics - per-feature usage against tier limits over a reporting
period.

Counters are running totals that no timer resets, so the period sets the
reported date range only; the figures are the counters as of now.

Metric status uses the same floor as the pre-write warning:
    limit is None                              -> within_limit
    current_usage >= limit                     -> limit_reached
    current_usage >= floor(limit * threshold)  -> approaching_limit
    otherwise                                  -> within_limit
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.orm import Session

from tier_engine.config.settings import TierEngineSettings, get_settings
from tier_engine.entitlements.audit import AuditAction, AuditResource, AuditSink, LoggingAuditSink
from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.models import UNLIMITED, TierStatus
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.validator import warning_floor
from tier_engine.models.base import as_utc, utcnow

logger = logging.getLogger(__name__)

# Always reported; other features appear once they have usage
DEFAULT_METRICS = (FeatureName.MAX_PRODUCTS, FeatureName.MAX_CATEGORIES)


class UsagePeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class MetricStatus:
    WITHIN_LIMIT = "within_limit"
    APPROACHING_LIMIT = "approaching_limit"
    LIMIT_REACHED = "limit_reached"


def _one_month_back(moment: datetime) -> datetime:
    year, month = (moment.year - 1, 12) if moment.month == 1 else (moment.year, moment.month - 1)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_range(period: Union[str, UsagePeriod], now: datetime) -> Tuple[datetime, datetime]:
    """
    Start and end of a reporting period ending at now.

    daily starts at midnight UTC today, weekly seven days back and monthly
    one calendar month back (clamped to the month's last day).
    """
    period = UsagePeriod(period)
    if period == UsagePeriod.WEEKLY:
        return now - timedelta(days=7), now
    if period == UsagePeriod.MONTHLY:
        return _one_month_back(now), now
    return now.replace(hour=0, minute=0, second=0, microsecond=0), now


@dataclass
class UsageMetric:
    feature: str
    current_usage: int
    limit: Optional[int]
    remaining: Union[int, str]
    percentage: int
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "current_usage": self.current_usage,
            "limit": self.limit,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "status": self.status,
        }


@dataclass
class UsageStatistics:
    user_id: str
    subscription_plan: str
    period: str
    start: datetime
    end: datetime
    metrics: Dict[str, UsageMetric]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "subscription_plan": self.subscription_plan,
            "period": self.period,
            "date_range": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "metrics": {name: metric.to_dict() for name, metric in self.metrics.items()},
        }


def build_metric(status: TierStatus, feature: FeatureName, threshold: float) -> UsageMetric:
    definition = status.feature(feature)
    current = status.usage(feature)

    if definition is not None and definition.enabled and definition.limit is None:
        return UsageMetric(
            feature=feature.value,
            current_usage=current,
            limit=None,
            remaining=UNLIMITED,
            percentage=0,
            status=MetricStatus.WITHIN_LIMIT,
        )

    limit = definition.limit if definition is not None and definition.enabled else 0
    percentage = round(current / limit * 100) if limit else 100

    if current >= limit:
        metric_status = MetricStatus.LIMIT_REACHED
    elif current >= warning_floor(limit, threshold):
        metric_status = MetricStatus.APPROACHING_LIMIT
    else:
        metric_status = MetricStatus.WITHIN_LIMIT

    return UsageMetric(
        feature=feature.value,
        current_usage=current,
        limit=limit,
        remaining=max(0, limit - current),
        percentage=percentage,
        status=metric_status,
    )


class UsageStatisticsService:
    """Builds usage reports from a resolved tier status."""

    def __init__(
        self,
        resolver: Optional[TierStatusResolver] = None,
        settings: Optional[TierEngineSettings] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self._settings = settings or get_settings()
        self._resolver = resolver or TierStatusResolver(settings=self._settings)
        self._audit = audit_sink or LoggingAuditSink()

    def get_usage_statistics(
        self,
        db: Session,
        user_id: str,
        period: Union[str, UsagePeriod] = UsagePeriod.DAILY,
        now: Optional[datetime] = None,
    ) -> UsageStatistics:
        """
        Usage against limits for every counted feature.

        Raises:
            ValueError: unknown period
            UserNotFoundError: no account with this id
            DatastoreUnavailableError: tier status could not be loaded
        """
        period = UsagePeriod(period)
        now = as_utc(now) if now else utcnow()
        status = self._resolver.resolve(db, user_id, now)
        start, end = period_range(period, now)

        features = list(DEFAULT_METRICS)
        features += [
            f for f, count in status.current_usage.items()
            if count > 0 and f not in features and status.feature(f) is not None
        ]
        metrics = {
            f.value: build_metric(status, f, self._settings.warning_threshold) for f in features
        }

        statistics = UsageStatistics(
            user_id=user_id,
            subscription_plan=status.subscription_plan.value,
            period=period.value,
            start=start,
            end=end,
            metrics=metrics,
        )
        self._audit.log(
            user_id=user_id,
            action=AuditAction.USAGE_STATISTICS_RETRIEVED,
            resource=AuditResource.TIER_SERVICE,
            details={
                "period": period.value,
                "date_range": {"start": start, "end": end},
                "metrics": sorted(metrics),
            },
        )
        logger.debug("Usage statistics built", extra={
            "user_id": user_id,
            "period": period.value,
            "metric_count": len(metrics),
        })
        return statistics
