"""
FastAPI application entry point for the tier entitlement engine.

The upstream identity layer authenticates callers and sets
request.state.user_id; this service never authenticates itself.

The lifecycle scheduler runs inside the API process unless
ENABLE_TIER_SCHEDULER=false (run it as a standalone worker with
python -m tier_engine.jobs.tier_scheduler instead).
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tier_engine import __version__
from tier_engine.api.routes import internal_tier, tier
from tier_engine.config.settings import get_settings
from tier_engine.entitlements.audit import DatabaseAuditSink
from tier_engine.entitlements.errors import TierEngineError
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.statistics import UsageStatisticsService
from tier_engine.entitlements.validator import FeatureAccessValidator
from tier_engine.jobs.tier_scheduler import TierScheduler

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting tier engine API")
    settings = get_settings()
    app.state.scheduler = None

    if not os.getenv("DATABASE_URL"):
        logger.error(
            "DATABASE_URL is not set. Tier endpoints will return 503 and the "
            "lifecycle scheduler will not start."
        )
        app.state.database_configured = False
    else:
        from tier_engine.database.session import get_session_factory

        app.state.database_configured = True
        session_factory = get_session_factory()
        audit_sink = DatabaseAuditSink(session_factory)
        resolver = TierStatusResolver(settings=settings)

        app.state.tier_resolver = resolver
        app.state.feature_validator = FeatureAccessValidator(
            resolver=resolver,
            settings=settings,
            audit_sink=audit_sink,
        )
        app.state.usage_statistics = UsageStatisticsService(
            resolver=resolver,
            settings=settings,
            audit_sink=audit_sink,
        )

        scheduler = TierScheduler(session_factory, settings=settings, audit_sink=audit_sink)
        if scheduler.start():
            app.state.scheduler = scheduler

    yield

    logger.info("Shutting down tier engine API")
    if app.state.scheduler is not None:
        app.state.scheduler.stop(timeout=30)


app = FastAPI(
    title="Tier Entitlement Engine",
    description="Subscription tier status, feature access validation and lifecycle scheduling",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(TierEngineError)
async def tier_engine_error_handler(request: Request, exc: TierEngineError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.get("/health")
async def health(request: Request):
    """Liveness probe. Bypasses authentication."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "version": __version__,
        "database_configured": getattr(request.app.state, "database_configured", False),
        "scheduler_running": bool(scheduler and scheduler.is_running),
    }


app.include_router(tier.router)
app.include_router(internal_tier.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
