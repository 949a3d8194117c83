"""
Tier entitlement dependencies.

require_feature_access(feature) is the pre-write guard used on routes that
create a limited resource:

    @router.post("/products", dependencies=[Depends(require_feature_access("products"))])
    async def create_product(...):
        ...

A denial becomes HTTP 403 with the decision payload. An approaching-limit
warning is attached to request.state.tier_warning and the request goes on.
"""

import logging
from typing import Callable, Union

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from tier_engine.api.dependencies.identity import get_current_user_id
from tier_engine.database.session import get_db_session
from tier_engine.entitlements.errors import TierEngineError
from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.models import ReasonCode, TierValidationResult
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.statistics import UsageStatisticsService
from tier_engine.entitlements.validator import FeatureAccessValidator

logger = logging.getLogger(__name__)


def get_tier_resolver(request: Request) -> TierStatusResolver:
    """Resolver configured on app.state at start-up, or a default one."""
    resolver = getattr(request.app.state, "tier_resolver", None)
    return resolver or TierStatusResolver()


def get_feature_validator(request: Request) -> FeatureAccessValidator:
    """Validator configured on app.state at start-up, or a default one."""
    validator = getattr(request.app.state, "feature_validator", None)
    return validator or FeatureAccessValidator()


def get_usage_statistics_service(request: Request) -> UsageStatisticsService:
    """Statistics service configured on app.state at start-up, or one over the shared resolver."""
    service = getattr(request.app.state, "usage_statistics", None)
    return service or UsageStatisticsService(resolver=get_tier_resolver(request))


def require_feature_access(feature: Union[str, FeatureName]) -> Callable:
    """
    Factory for a pre-write guard dependency.

    Args:
        feature: Feature name or alias (e.g. "products", FeatureName.MAX_CATEGORIES)

    Returns:
        A FastAPI dependency returning the TierValidationResult when allowed
    """

    def check_feature_access(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        db: Session = Depends(get_db_session),
        validator: FeatureAccessValidator = Depends(get_feature_validator),
    ) -> TierValidationResult:
        try:
            result = validator.check_operation(db, user_id, feature)
        except TierEngineError as e:
            raise HTTPException(status_code=e.http_status, detail=e.to_dict()) from e

        if not result.can_proceed:
            logger.warning("Feature access denied", extra={
                "user_id": user_id,
                "feature": result.feature,
                "reason_code": result.reason_code,
                "current_tier": result.current_tier,
            })
            status_code = status.HTTP_403_FORBIDDEN
            if result.reason_code == ReasonCode.TIER_STATUS_UNAVAILABLE:
                status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            raise HTTPException(status_code=status_code, detail=result.to_dict())

        if result.warning:
            request.state.tier_warning = result.warning

        return result

    return check_feature_access


require_product_slot = require_feature_access(FeatureName.MAX_PRODUCTS)
require_category_slot = require_feature_access(FeatureName.MAX_CATEGORIES)
