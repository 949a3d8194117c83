"""
Feature Access Validator - allow / warn / deny decisions for tier-gated
features.

Entry points:
- validate(): hard decision for one feature (FeatureValidationResult)
- check_operation(): pre-write guard used before creating a limited resource;
  may allow with a warning when usage is close to the limit
- validate_tier_requirement(s)(): service-to-service checks that also
  require an active account and a minimum tier

Decision table (first match wins):
    feature undefined or disabled for tier -> deny, feature_available=False
    limit is None (unlimited)              -> allow
    current_usage >= limit                 -> deny, usage_within_limits=False
    otherwise                              -> allow

A denial is a normal result carrying reason_code, reason and upgrade_prompt.
"""

import logging
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from tier_engine.config.settings import TierEngineSettings, get_settings
from tier_engine.entitlements.audit import AuditAction, AuditResource, AuditSink, LoggingAuditSink
from tier_engine.entitlements.errors import (
    BulkRequestLimitError,
    DatastoreUnavailableError,
    TierEngineError,
)
from tier_engine.entitlements.features import UPGRADE_BENEFITS, FeatureName, display_name_for
from tier_engine.entitlements.models import (
    UNLIMITED,
    BulkTierRequirementResult,
    BulkValidationResult,
    FeatureValidationResult,
    ReasonCode,
    TierRequirementOutcome,
    TierRequirementRequest,
    TierRequirementResult,
    TierStatus,
    TierValidationResult,
)
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

logger = logging.getLogger(__name__)

DEFAULT_BULK_FEATURES = (FeatureName.MAX_PRODUCTS, FeatureName.MAX_CATEGORIES)
MAX_BULK_REQUIREMENTS = 100

TIER_RANK = {
    SubscriptionPlan.FREE.value: 0,
    SubscriptionPlan.PREMIUM.value: 1,
}


def upgrade_prompt_for(feature: Union[str, FeatureName], tier: SubscriptionPlan) -> str:
    """Upgrade message for a tier; empty for premium."""
    if tier == SubscriptionPlan.PREMIUM:
        return ""
    parsed = FeatureName.parse(feature)
    benefit = UPGRADE_BENEFITS.get(parsed) if parsed else None
    return f"Upgrade to Premium for {benefit or display_name_for(feature)} and advanced features."


def limit_reached_message(feature: Union[str, FeatureName], limit: int, tier: SubscriptionPlan) -> str:
    name = display_name_for(feature)
    return (
        f"{name[:1].upper()}{name[1:]} limit reached. "
        f"Maximum {limit} {name} allowed for {tier.value} tier."
    )


def warning_floor(limit: int, threshold: float) -> int:
    return math.floor(limit * threshold)


def evaluate_access(status: TierStatus, feature: Union[str, FeatureName]) -> FeatureValidationResult:
    """Apply the decision table to an already-resolved status."""
    name = str(getattr(feature, "value", feature))
    parsed = FeatureName.parse(feature)
    definition = status.feature(parsed) if parsed else None
    current_usage = status.usage(parsed) if parsed else 0
    tier = status.subscription_plan

    if definition is None or not definition.enabled:
        return FeatureValidationResult(
            feature=name,
            access_granted=False,
            feature_available=False,
            usage_within_limits=False,
            current_usage=current_usage,
            limit=definition.limit if definition else None,
            reason_code=(
                ReasonCode.FEATURE_NOT_DEFINED if definition is None
                else ReasonCode.FEATURE_NOT_AVAILABLE
            ),
            reason=f"Feature not available for your tier: {display_name_for(feature)}",
            upgrade_prompt=upgrade_prompt_for(feature, tier),
        )

    if definition.limit is None:
        return FeatureValidationResult(
            feature=name,
            access_granted=True,
            feature_available=True,
            usage_within_limits=True,
            current_usage=current_usage,
            limit=None,
        )

    if current_usage >= definition.limit:
        return FeatureValidationResult(
            feature=name,
            access_granted=False,
            feature_available=True,
            usage_within_limits=False,
            current_usage=current_usage,
            limit=definition.limit,
            reason_code=ReasonCode.USAGE_LIMIT_EXCEEDED,
            reason=limit_reached_message(feature, definition.limit, tier),
            upgrade_prompt=upgrade_prompt_for(feature, tier),
        )

    return FeatureValidationResult(
        feature=name,
        access_granted=True,
        feature_available=True,
        usage_within_limits=True,
        current_usage=current_usage,
        limit=definition.limit,
    )


def evaluate_operation(
    status: TierStatus,
    feature: Union[str, FeatureName],
    warning_threshold: float,
) -> TierValidationResult:
    """Pre-write guard decision, including the approaching-limit warning."""
    access = evaluate_access(status, feature)
    tier = status.subscription_plan

    result = TierValidationResult(
        can_proceed=access.access_granted,
        current_tier=tier.value,
        feature=access.feature,
        current_usage=access.current_usage,
        limit=access.limit,
        remaining=0,
        reason_code=access.reason_code,
        reason=access.reason,
        upgrade_prompt=access.upgrade_prompt,
    )

    if not access.access_granted:
        return result

    if access.limit is None:
        result.remaining = UNLIMITED
        return result

    remaining = access.limit - access.current_usage
    result.remaining = remaining
    if access.current_usage >= warning_floor(access.limit, warning_threshold):
        name = display_name_for(feature)
        result.warning = (
            f"You're approaching your {name} limit. Only {remaining} {name} remaining."
        )
        result.upgrade_prompt = upgrade_prompt_for(feature, tier)
    return result


def tier_satisfies(current: Union[str, SubscriptionPlan], required: str) -> bool:
    """True when current is at or above required. Unknown required tiers never match."""
    required_rank = TIER_RANK.get(str(required).strip().lower())
    if required_rank is None:
        return False
    return TIER_RANK.get(getattr(current, "value", current), -1) >= required_rank


def evaluate_tier_requirement(
    status: TierStatus,
    feature: Union[str, FeatureName],
    required_tier: str,
) -> TierRequirementResult:
    """Active account AND sufficient tier AND feature access, first failure named."""
    access = evaluate_access(status, feature)
    tier = status.subscription_plan
    sufficient = tier_satisfies(tier, required_tier)

    result = TierRequirementResult(
        user_id=status.user_id,
        feature=access.feature,
        current_tier=tier.value,
        required_tier=required_tier,
        access_granted=status.is_active and sufficient and access.access_granted,
        tier_sufficient=sufficient,
        is_active=status.is_active,
        feature_available=access.feature_available,
        usage_within_limits=access.usage_within_limits,
        subscription_expires_at=status.subscription_expires_at,
        grace_period_active=status.grace_period_active,
    )

    if not status.is_active:
        result.reason_code = ReasonCode.ACCOUNT_INACTIVE
        result.reason = "User account is inactive. Please reactivate your account to continue."
    elif not sufficient:
        result.reason_code = ReasonCode.INSUFFICIENT_TIER
        result.reason = f"Requires the {required_tier} tier; current tier is {tier.value}."
        result.upgrade_prompt = upgrade_prompt_for(feature, tier)
    elif not access.access_granted:
        result.reason_code = access.reason_code
        result.reason = access.reason
        result.upgrade_prompt = access.upgrade_prompt
    return result


class FeatureAccessValidator:
    """
    Validates feature access for a user.

    Resolves tier status through TierStatusResolver, records every decision
    on the audit sink and optionally sends an upgrade prompt on denial.
    """

    def __init__(
        self,
        resolver: Optional[TierStatusResolver] = None,
        settings: Optional[TierEngineSettings] = None,
        audit_sink: Optional[AuditSink] = None,
        dispatcher=None,
        notify_on_denial: bool = False,
    ):
        self._settings = settings or get_settings()
        self._resolver = resolver or TierStatusResolver(settings=self._settings)
        self._audit = audit_sink or LoggingAuditSink()
        self._dispatcher = dispatcher
        self._notify_on_denial = notify_on_denial

    def validate(
        self,
        db: Session,
        user_id: str,
        feature: Union[str, FeatureName],
        now: Optional[datetime] = None,
    ) -> FeatureValidationResult:
        """
        Hard allow/deny decision for one feature.

        Raises:
            UserNotFoundError: no account with this id
            DatastoreUnavailableError: tier status could not be loaded
        """
        status = self._resolver.resolve(db, user_id, now)
        result = evaluate_access(status, feature)
        self._record(db, user_id, result.feature, result.access_granted, result.reason_code, {
            "current_usage": result.current_usage,
            "limit": result.limit,
            "tier": status.subscription_plan.value,
        })
        return result

    def check_operation(
        self,
        db: Session,
        user_id: str,
        feature: Union[str, FeatureName],
        now: Optional[datetime] = None,
    ) -> TierValidationResult:
        """
        Pre-write guard for creating a limited resource.

        A datastore failure fails closed unless settings.fail_open is set.
        UserNotFoundError propagates.
        """
        try:
            status = self._resolver.resolve(db, user_id, now)
        except DatastoreUnavailableError as e:
            return self._unavailable_result(db, user_id, feature, e)

        result = evaluate_operation(status, feature, self._settings.warning_threshold)
        self._record(db, user_id, result.feature, result.can_proceed, result.reason_code, {
            "current_usage": result.current_usage,
            "limit": result.limit,
            "tier": result.current_tier,
            "warning": result.warning is not None,
        })
        return result

    def validate_product_creation(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> TierValidationResult:
        return self.check_operation(db, user_id, FeatureName.MAX_PRODUCTS, now)

    def validate_category_creation(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> TierValidationResult:
        return self.check_operation(db, user_id, FeatureName.MAX_CATEGORIES, now)

    def validate_bulk(
        self,
        db: Session,
        user_id: str,
        features: Iterable[Union[str, FeatureName]] = DEFAULT_BULK_FEATURES,
        now: Optional[datetime] = None,
    ) -> BulkValidationResult:
        """
        Check several features at once; overall_access is the AND of all.

        The status is resolved once and every feature is evaluated against it.
        """
        features = list(features)
        results: Dict[str, TierValidationResult] = {}

        try:
            status = self._resolver.resolve(db, user_id, now)
        except DatastoreUnavailableError as e:
            for feature in features:
                result = self._unavailable_result(db, user_id, feature, e)
                results[result.feature] = result
            return BulkValidationResult(
                results=results,
                overall_access=all(r.can_proceed for r in results.values()),
            )

        for feature in features:
            result = evaluate_operation(status, feature, self._settings.warning_threshold)
            self._record(db, user_id, result.feature, result.can_proceed, result.reason_code, {
                "current_usage": result.current_usage,
                "limit": result.limit,
                "tier": result.current_tier,
                "bulk": True,
            })
            results[result.feature] = result

        return BulkValidationResult(
            results=results,
            overall_access=all(r.can_proceed for r in results.values()),
        )

    # ------------------------------------------------------------------
    # Service-to-service tier requirements
    # ------------------------------------------------------------------

    def validate_tier_requirement(
        self,
        db: Session,
        request: TierRequirementRequest,
        now: Optional[datetime] = None,
    ) -> TierRequirementResult:
        """
        Decide whether request.user_id may use request.feature at
        request.required_tier.

        Raises:
            UserNotFoundError: no account with this id
            DatastoreUnavailableError: tier status could not be loaded
        """
        status = self._resolver.resolve(db, request.user_id, now)
        return self._requirement(status, request)

    def validate_tier_requirements(
        self,
        db: Session,
        requests: List[TierRequirementRequest],
        now: Optional[datetime] = None,
    ) -> BulkTierRequirementResult:
        """
        Evaluate up to MAX_BULK_REQUIREMENTS requests across any users.

        Each user's status is resolved once per call. A request whose user
        cannot be resolved carries the error instead of a result; the rest
        of the batch goes on.

        Raises:
            BulkRequestLimitError: requests is empty or too long
        """
        if not requests or len(requests) > MAX_BULK_REQUIREMENTS:
            raise BulkRequestLimitError(len(requests), MAX_BULK_REQUIREMENTS)

        statuses: Dict[str, Union[TierStatus, TierEngineError]] = {}
        outcomes: List[TierRequirementOutcome] = []

        for request in requests:
            if request.user_id not in statuses:
                try:
                    statuses[request.user_id] = self._resolver.resolve(db, request.user_id, now)
                except TierEngineError as e:
                    logger.warning("Bulk tier validation could not resolve user", extra={
                        "user_id": request.user_id,
                        "error_code": e.error_code,
                    })
                    statuses[request.user_id] = e

            status = statuses[request.user_id]
            if isinstance(status, TierEngineError):
                outcomes.append(TierRequirementOutcome(
                    user_id=request.user_id,
                    feature=request.feature,
                    error=status.to_dict(),
                ))
                continue

            outcomes.append(TierRequirementOutcome(
                user_id=request.user_id,
                feature=request.feature,
                result=self._requirement(status, request, bulk=True),
            ))

        logger.info("Bulk tier validation completed", extra={
            "total": len(outcomes),
            "granted": sum(1 for o in outcomes if o.result and o.result.access_granted),
        })
        return BulkTierRequirementResult(outcomes=outcomes)

    def _requirement(
        self,
        status: TierStatus,
        request: TierRequirementRequest,
        bulk: bool = False,
    ) -> TierRequirementResult:
        result = evaluate_tier_requirement(status, request.feature, request.required_tier)
        self._audit.log(
            user_id=request.user_id,
            action=AuditAction.TIER_REQUIREMENT_CHECK,
            resource=AuditResource.INTERNAL_TIER_VALIDATION,
            details={
                "feature": result.feature,
                "action": request.action,
                "access_granted": result.access_granted,
                "reason_code": result.reason_code,
                "current_tier": result.current_tier,
                "required_tier": result.required_tier,
                "bulk": bulk,
            },
        )
        return result

    def _unavailable_result(
        self,
        db: Session,
        user_id: str,
        feature: Union[str, FeatureName],
        error: DatastoreUnavailableError,
    ) -> TierValidationResult:
        name = str(getattr(feature, "value", feature))
        fail_open = self._settings.fail_open

        if fail_open:
            logger.warning("Tier status unavailable, allowing operation (fail open)", extra={
                "user_id": user_id,
                "feature": name,
                "error": str(error),
            })
        else:
            logger.error("Tier status unavailable, denying operation", extra={
                "user_id": user_id,
                "feature": name,
                "error": str(error),
            })

        self._audit.log(
            user_id=user_id,
            action=AuditAction.FEATURE_ACCESS_CHECK,
            resource=AuditResource.TIER_VALIDATION,
            details={
                "feature": name,
                "access_granted": fail_open,
                "reason_code": ReasonCode.TIER_STATUS_UNAVAILABLE,
                "error": str(error),
            },
            success=False,
        )

        return TierValidationResult(
            can_proceed=fail_open,
            current_tier="unknown",
            feature=name,
            current_usage=0,
            limit=None,
            remaining=0,
            reason_code=ReasonCode.TIER_STATUS_UNAVAILABLE,
            reason=None if fail_open else "Unable to verify your subscription tier. Please try again.",
            warning="Tier status could not be verified" if fail_open else None,
        )

    def _record(
        self,
        db: Session,
        user_id: str,
        feature: str,
        granted: bool,
        reason_code: Optional[str],
        details: dict,
    ) -> None:
        self._audit.log(
            user_id=user_id,
            action=AuditAction.FEATURE_ACCESS_CHECK,
            resource=AuditResource.TIER_VALIDATION,
            details={
                "feature": feature,
                "access_granted": granted,
                "reason_code": reason_code,
                **details,
            },
        )

        if granted or not self._notify_on_denial or self._dispatcher is None:
            return
        # Only denials the user can fix by upgrading
        if reason_code not in (ReasonCode.USAGE_LIMIT_EXCEEDED, ReasonCode.FEATURE_NOT_AVAILABLE):
            return

        account = db.get(SubscriptionAccount, user_id)
        if account is None or account.is_premium:
            return
        delivered = self._dispatcher.upgrade_prompt(account, feature)
        if not delivered:
            logger.warning("Upgrade prompt not delivered", extra={
                "user_id": user_id,
                "feature": feature,
            })
        self._audit.log(
            user_id=user_id,
            action=AuditAction.UPGRADE_PROMPT_SENT,
            resource=AuditResource.TIER_VALIDATION,
            details={"feature": feature, "reason_code": reason_code},
            success=delivered,
        )
