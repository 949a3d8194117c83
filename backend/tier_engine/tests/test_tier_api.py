"""
Tests for the tier status routes and the pre-write guard dependency.

The identity layer is replaced by a middleware that copies X-User-Id onto
request.state.user_id.
"""

from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from tier_engine.api.dependencies.entitlements import require_category_slot, require_product_slot
from tier_engine.api.routes import internal_tier, tier
from tier_engine.database.session import get_db_session
from tier_engine.entitlements.errors import DatastoreUnavailableError
from tier_engine.entitlements.models import ReasonCode
from tier_engine.entitlements.resolver import TierStatusResolver
from tier_engine.entitlements.service import TierService
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.entitlements.validator import FeatureAccessValidator
from tier_engine.models.base import utcnow
from tier_engine.models.tier_history import TierChangeReason


@pytest.fixture
def app(db_session, settings, recording_audit_sink):
    app = FastAPI()

    @app.middleware("http")
    async def identity(request: Request, call_next):
        user_id = request.headers.get("X-User-Id")
        if user_id:
            request.state.user_id = user_id
        return await call_next(request)

    @app.post("/api/products", dependencies=[Depends(require_product_slot)])
    async def create_product(request: Request):
        return {"created": True, "warning": getattr(request.state, "tier_warning", None)}

    @app.post("/api/categories")
    async def create_category(guard=Depends(require_category_slot)):
        return {"created": True, "remaining": guard.remaining}

    def override_db():
        yield db_session

    resolver = TierStatusResolver(settings=settings)
    app.state.tier_resolver = resolver
    app.state.feature_validator = FeatureAccessValidator(
        resolver=resolver,
        settings=settings,
        audit_sink=recording_audit_sink,
    )
    app.dependency_overrides[get_db_session] = override_db
    app.include_router(tier.router)
    app.include_router(internal_tier.router)
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _as(user_id: str) -> dict:
    return {"X-User-Id": user_id}


class TestTierStatusRoute:

    def test_free_status(self, client, make_account):
        account = make_account()

        response = client.get("/api/tier/status", headers=_as(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["subscription_plan"] == "free"
        assert body["grace_period_active"] is False
        assert body["tier_features"]["max_products"]["limit"] == 50
        assert body["current_usage"]["max_products"] == 0

    def test_premium_in_grace(self, client, make_account):
        account = make_account(plan="premium", expires_at=utcnow() - timedelta(days=2))

        body = client.get("/api/tier/status", headers=_as(account.id)).json()

        assert body["grace_period_active"] is True
        assert body["tier_features"]["max_products"]["unlimited"] is True

    def test_unknown_user_is_404(self, client):
        response = client.get("/api/tier/status", headers=_as("nobody"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "USER_NOT_FOUND"

    def test_missing_identity_is_401(self, client):
        assert client.get("/api/tier/status").status_code == 401


class TestFeatureRoutes:

    def test_check_denial_is_200(self, client, db_session, make_account):
        account = make_account()
        UsageTracker().track(db_session, account.id, "products", 50)

        response = client.get("/api/tier/features/products/check", headers=_as(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["access_granted"] is False
        assert body["reason_code"] == ReasonCode.USAGE_LIMIT_EXCEEDED

    def test_can_create_reports_remaining(self, client, db_session, make_account):
        account = make_account()
        UsageTracker().track(db_session, account.id, "categories", 17)

        body = client.get(
            "/api/tier/features/categories/can-create", headers=_as(account.id)
        ).json()

        assert body["can_proceed"] is True
        assert body["remaining"] == 3
        assert body["warning"]

    def test_unlimited_remaining_is_string(self, client, make_account):
        account = make_account(plan="premium", expires_at=utcnow() + timedelta(days=30))

        body = client.get(
            "/api/tier/features/products/can-create", headers=_as(account.id)
        ).json()

        assert body["remaining"] == "unlimited"

    def test_history(self, client, db_session, make_account, settings):
        account = make_account()
        TierService(settings=settings).change_tier(
            db_session, account.id, "premium", TierChangeReason.UPGRADE,
            expires_at=utcnow() + timedelta(days=30),
        )

        response = client.get("/api/tier/history", headers=_as(account.id))

        assert response.status_code == 200
        assert [e["change_reason"] for e in response.json()] == ["upgrade"]

    def test_history_limit_validated(self, client, make_account):
        account = make_account()

        response = client.get("/api/tier/history?limit=0", headers=_as(account.id))

        assert response.status_code == 422


class TestUsageRoute:

    def test_monthly_usage(self, client, db_session, make_account):
        account = make_account()
        UsageTracker().track(db_session, account.id, "products", 45)

        response = client.get("/api/tier/usage?period=monthly", headers=_as(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["period"] == "monthly"
        assert set(body["date_range"]) == {"start", "end"}
        assert body["metrics"]["max_products"]["status"] == "approaching_limit"
        assert body["metrics"]["max_products"]["remaining"] == 5

    def test_defaults_to_daily(self, client, make_account):
        account = make_account()

        body = client.get("/api/tier/usage", headers=_as(account.id)).json()

        assert body["period"] == "daily"

    def test_unknown_period_is_422(self, client, make_account):
        account = make_account()

        response = client.get("/api/tier/usage?period=hourly", headers=_as(account.id))

        assert response.status_code == 422

    def test_requires_identity(self, client):
        assert client.get("/api/tier/usage").status_code == 401


class TestInternalTierRoutes:

    def test_validate_granted(self, client, make_account):
        account = make_account()

        response = client.post("/api/internal/tier/validate", json={
            "user_id": account.id, "feature": "products", "required_tier": "free",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["access_granted"] is True
        assert body["current_tier"] == "free"

    def test_validate_insufficient_tier_is_403(self, client, make_account):
        account = make_account()

        response = client.post("/api/internal/tier/validate", json={
            "user_id": account.id, "feature": "analytics_access", "required_tier": "premium",
        })

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["error"] == "TIER_UPGRADE_REQUIRED"
        assert detail["reason_code"] == ReasonCode.INSUFFICIENT_TIER

    def test_validate_inactive_is_403(self, client, make_account):
        account = make_account(is_active=False)

        response = client.post("/api/internal/tier/validate", json={
            "user_id": account.id, "feature": "products", "required_tier": "free",
        })

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "USER_INACTIVE"

    def test_validate_unknown_user_is_404(self, client):
        response = client.post("/api/internal/tier/validate", json={
            "user_id": "nobody", "feature": "products", "required_tier": "free",
        })

        assert response.status_code == 404

    def test_validate_missing_field_is_422(self, client):
        response = client.post("/api/internal/tier/validate", json={"user_id": "u", "feature": "products"})

        assert response.status_code == 422

    def test_bulk(self, client, make_account):
        free = make_account()
        premium = make_account(plan="premium", expires_at=utcnow() + timedelta(days=30))

        response = client.post("/api/internal/tier/validate-bulk", json={"requests": [
            {"user_id": free.id, "feature": "analytics_access", "required_tier": "premium"},
            {"user_id": premium.id, "feature": "analytics_access", "required_tier": "premium"},
            {"user_id": "nobody", "feature": "products", "required_tier": "free"},
        ]})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        results = body["results"]
        assert results[0]["result"]["access_granted"] is False
        assert results[1]["result"]["access_granted"] is True
        assert results[2]["result"] is None
        assert results[2]["error"]["error"] == "USER_NOT_FOUND"

    @pytest.mark.parametrize("count", [0, 101])
    def test_bulk_size_bounds_are_422(self, client, count):
        requests = [
            {"user_id": f"u-{i}", "feature": "products", "required_tier": "free"}
            for i in range(count)
        ]

        response = client.post("/api/internal/tier/validate-bulk", json={"requests": requests})

        assert response.status_code == 422


class TestRequireFeatureAccess:

    def test_denied_at_limit(self, client, db_session, make_account):
        account = make_account()
        UsageTracker().track(db_session, account.id, "products", 50)

        response = client.post("/api/products", headers=_as(account.id))

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["can_proceed"] is False
        assert detail["reason_code"] == ReasonCode.USAGE_LIMIT_EXCEEDED
        assert detail["upgrade_prompt"]

    def test_allowed_with_warning(self, client, db_session, make_account):
        account = make_account()
        UsageTracker().track(db_session, account.id, "products", 45)

        response = client.post("/api/products", headers=_as(account.id))

        assert response.status_code == 200
        assert response.json()["warning"] == (
            "You're approaching your products limit. Only 5 products remaining."
        )

    def test_guard_result_is_injected(self, client, make_account):
        account = make_account()

        response = client.post("/api/categories", headers=_as(account.id))

        assert response.json() == {"created": True, "remaining": 20}

    def test_unknown_user_is_404(self, client):
        response = client.post("/api/products", headers=_as("nobody"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "USER_NOT_FOUND"

    def test_lookup_failure_fails_closed_with_503(self, app, client, make_account, monkeypatch):
        account = make_account()

        def unavailable(db, user_id, now=None):
            raise DatastoreUnavailableError("load_account")

        monkeypatch.setattr(app.state.tier_resolver, "resolve", unavailable)

        response = client.post("/api/products", headers=_as(account.id))

        assert response.status_code == 503
        assert response.json()["detail"]["reason_code"] == ReasonCode.TIER_STATUS_UNAVAILABLE


def test_health(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    from main import app as main_app

    with TestClient(main_app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["database_configured"] is False
    assert body["scheduler_running"] is False
