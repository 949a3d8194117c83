"""
Tier status API routes.

The caller is identified by request.state.user_id (set upstream).
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tier_engine.api.dependencies.entitlements import (
    get_feature_validator,
    get_tier_resolver,
    get_usage_statistics_service,
)
from tier_engine.api.dependencies.identity import get_current_user_id
from tier_engine.api.schemas.tier import (
    FeatureCheckResponse,
    OperationCheckResponse,
    TierHistoryEntry,
    TierStatusResponse,
    UsageStatisticsResponse,
)
from tier_engine.database.session import get_db_session
from tier_engine.entitlements.errors import TierEngineError
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.service import TierService
from tier_engine.entitlements.statistics import UsagePeriod, UsageStatisticsService
from tier_engine.entitlements.validator import FeatureAccessValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tier", tags=["tier"])


def _raise_http(error: TierEngineError) -> None:
    raise HTTPException(status_code=error.http_status, detail=error.to_dict())


@router.get("/status", response_model=TierStatusResponse)
async def get_tier_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
    resolver: TierStatusResolver = Depends(get_tier_resolver),
):
    """Current tier, expiry, grace period, limits and usage."""
    try:
        tier_status = resolver.resolve(db, user_id)
    except TierEngineError as e:
        logger.error("Failed to resolve tier status", extra={
            "user_id": user_id,
            "error_code": e.error_code,
        })
        _raise_http(e)
    return TierStatusResponse.from_status(tier_status)


@router.get("/features/{feature}/check", response_model=FeatureCheckResponse)
async def check_feature(
    feature: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
    validator: FeatureAccessValidator = Depends(get_feature_validator),
):
    """Hard allow/deny decision. A denial is a 200 with access_granted=false."""
    try:
        result = validator.validate(db, user_id, feature)
    except TierEngineError as e:
        _raise_http(e)
    return FeatureCheckResponse.from_result(result)


@router.get("/features/{feature}/can-create", response_model=OperationCheckResponse)
async def check_operation(
    feature: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
    validator: FeatureAccessValidator = Depends(get_feature_validator),
):
    """Pre-write check including the approaching-limit warning."""
    try:
        result = validator.check_operation(db, user_id, feature)
    except TierEngineError as e:
        _raise_http(e)
    return OperationCheckResponse(**result.to_dict())


@router.get("/history", response_model=List[TierHistoryEntry])
async def get_tier_history(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
):
    """The caller's plan changes, newest first."""
    try:
        rows = TierService().get_tier_history(db, user_id, limit=limit)
    except TierEngineError as e:
        _raise_http(e)
    return [TierHistoryEntry.from_row(row) for row in rows]


@router.get("/usage", response_model=UsageStatisticsResponse)
async def get_usage_statistics(
    period: UsagePeriod = Query(UsagePeriod.DAILY),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db_session),
    service: UsageStatisticsService = Depends(get_usage_statistics_service),
):
    """Usage against tier limits for a daily, weekly or monthly window."""
    try:
        statistics = service.get_usage_statistics(db, user_id, period)
    except TierEngineError as e:
        _raise_http(e)
    return UsageStatisticsResponse.from_statistics(statistics)
