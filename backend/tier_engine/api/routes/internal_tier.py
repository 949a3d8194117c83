"""
Internal tier validation routes for service-to-service calls.

These routes take the user id in the body rather than from the caller's
identity; network-level access control sits in front of them.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from tier_engine.api.dependencies.entitlements import get_feature_validator
from tier_engine.api.schemas.tier import (
    BulkTierRequirementBody,
    BulkTierRequirementResponse,
    TierRequirementBody,
    TierRequirementResponse,
)
from tier_engine.database.session import get_db_session
from tier_engine.entitlements.errors import TierEngineError
from tier_engine.entitlements.models import ReasonCode
from tier_engine.entitlements.validator import FeatureAccessValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internal/tier", tags=["internal"])


@router.post("/validate", response_model=TierRequirementResponse)
async def validate_tier(
    body: TierRequirementBody,
    db: Session = Depends(get_db_session),
    validator: FeatureAccessValidator = Depends(get_feature_validator),
):
    """Grant only for an active account on a sufficient tier with feature access. Denial is 403."""
    try:
        result = validator.validate_tier_requirement(db, body.to_request())
    except TierEngineError as e:
        logger.error("Internal tier validation failed", extra={
            "user_id": body.user_id,
            "feature": body.feature,
            "error_code": e.error_code,
        })
        raise HTTPException(status_code=e.http_status, detail=e.to_dict()) from e

    if not result.access_granted:
        error = (
            "USER_INACTIVE" if result.reason_code == ReasonCode.ACCOUNT_INACTIVE
            else "TIER_UPGRADE_REQUIRED"
        )
        logger.warning("Internal tier validation denied", extra={
            "user_id": body.user_id,
            "feature": result.feature,
            "reason_code": result.reason_code,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": error, **result.to_dict()},
        )

    return TierRequirementResponse(**result.to_dict())


@router.post("/validate-bulk", response_model=BulkTierRequirementResponse)
async def validate_tier_bulk(
    body: BulkTierRequirementBody,
    db: Session = Depends(get_db_session),
    validator: FeatureAccessValidator = Depends(get_feature_validator),
):
    """Up to 100 (user, feature, required tier) checks. Per-entry failures are reported inline."""
    try:
        bulk = validator.validate_tier_requirements(db, [r.to_request() for r in body.requests])
    except TierEngineError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict()) from e
    return BulkTierRequirementResponse.from_result(bulk)
