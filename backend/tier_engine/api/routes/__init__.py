"""
API route modules.
"""

from tier_engine.api.routes.internal_tier import router as internal_tier_router
from tier_engine.api.routes.tier import router as tier_router

__all__ = ["internal_tier_router", "tier_router"]
