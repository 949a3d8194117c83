"""
Shared FastAPI dependencies.
"""

from tier_engine.api.dependencies.identity import get_current_user_id
from tier_engine.api.dependencies.entitlements import (
    get_feature_validator,
    get_tier_resolver,
    require_feature_access,
)

__all__ = [
    "get_current_user_id",
    "get_feature_validator",
    "get_tier_resolver",
    "require_feature_access",
]
