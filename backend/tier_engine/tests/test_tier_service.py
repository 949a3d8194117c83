"""
Tests for plan changes, automatic downgrade and tier history.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from tier_engine.entitlements.errors import DatastoreUnavailableError, UserNotFoundError
from tier_engine.entitlements.service import TierService
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.models.base import as_utc
from tier_engine.models.tier_feature import UserTierFeature
from tier_engine.models.tier_history import TierChangeReason, TierHistory
from tier_engine.models.user import SubscriptionAccount

from conftest import FIXED_NOW


@pytest.fixture
def service(settings):
    return TierService(settings=settings)


def _reload(db, user_id) -> SubscriptionAccount:
    db.expire_all()
    return db.get(SubscriptionAccount, user_id)


class TestChangeTier:

    def test_upgrade_sets_plan_expiry_and_history(self, db_session, make_account, service):
        account = make_account()
        expires_at = FIXED_NOW + timedelta(days=30)

        history = service.change_tier(
            db_session, account.id, "premium", TierChangeReason.UPGRADE,
            changed_by="billing", notes="Monthly plan", expires_at=expires_at,
        )

        reloaded = _reload(db_session, account.id)
        assert reloaded.subscription_plan == "premium"
        assert as_utc(reloaded.subscription_expires_at) == expires_at
        assert history.previous_plan == "free"
        assert history.new_plan == "premium"
        assert history.change_reason == "upgrade"
        assert history.changed_by == "billing"

    def test_upgrade_lifts_counter_limits(self, db_session, make_account, service):
        account = make_account()
        UsageTracker().track(db_session, account.id, "products", 50)

        service.change_tier(
            db_session, account.id, "premium", TierChangeReason.UPGRADE,
            expires_at=FIXED_NOW + timedelta(days=30),
        )

        assert UsageTracker().track(db_session, account.id, "products", 1) == 51

    def test_downgrade_to_free_clears_expiry(self, db_session, make_account, service):
        account = make_account(plan="premium", expires_at=FIXED_NOW + timedelta(days=3))

        service.change_tier(
            db_session, account.id, "free", TierChangeReason.DOWNGRADE,
            expires_at=FIXED_NOW + timedelta(days=3),
        )

        assert _reload(db_session, account.id).subscription_expires_at is None

    def test_renewal_with_new_expiry_is_allowed(self, db_session, make_account, service):
        account = make_account(plan="premium", expires_at=FIXED_NOW + timedelta(days=3))

        history = service.change_tier(
            db_session, account.id, "premium", TierChangeReason.RENEWAL,
            expires_at=FIXED_NOW + timedelta(days=33),
        )

        assert history.previous_plan == history.new_plan == "premium"

    def test_no_op_change_rejected(self, db_session, make_account, service):
        account = make_account()

        with pytest.raises(ValueError):
            service.change_tier(db_session, account.id, "free", TierChangeReason.ADMIN)

        assert db_session.query(TierHistory).count() == 0

    def test_change_is_audited(self, db_session, make_account, settings, recording_audit_sink):
        account = make_account()
        service = TierService(settings=settings, audit_sink=recording_audit_sink)

        service.change_tier(
            db_session, account.id, "premium", TierChangeReason.UPGRADE,
            changed_by="billing", expires_at=FIXED_NOW + timedelta(days=30),
        )

        events = recording_audit_sink.of("tier_changed")
        assert len(events) == 1
        assert events[0]["resource"] == "tier_service"
        assert events[0]["details"]["new_plan"] == "premium"
        assert events[0]["details"]["expires_at"] == (FIXED_NOW + timedelta(days=30)).isoformat()

    def test_unknown_user(self, db_session, service):
        with pytest.raises(UserNotFoundError):
            service.change_tier(db_session, "missing", "premium", TierChangeReason.UPGRADE)

    def test_unknown_plan(self, db_session, make_account, service):
        account = make_account()

        with pytest.raises(ValueError):
            service.change_tier(db_session, account.id, "gold", TierChangeReason.UPGRADE)


class TestPerformAutomaticDowngrade:

    def test_downgrades_after_grace(self, db_session, make_account, service):
        account = make_account(plan="premium", expires_at=FIXED_NOW - timedelta(days=10))
        UsageTracker().track(db_session, account.id, "products", 120)

        assert service.perform_automatic_downgrade(db_session, account.id, FIXED_NOW) is True

        reloaded = _reload(db_session, account.id)
        assert reloaded.subscription_plan == "free"
        assert reloaded.subscription_expires_at is None

        history = service.get_tier_history(db_session, account.id)
        assert len(history) == 1
        assert history[0].change_reason == "expiration"
        assert history[0].changed_by is None

        counter = db_session.query(UserTierFeature).filter_by(
            user_id=account.id, feature_name="max_products"
        ).one()
        assert counter.usage_limit == 50
        assert counter.current_usage == 120

    def test_second_call_is_no_op(self, db_session, make_account, service):
        account = make_account(plan="premium", expires_at=FIXED_NOW - timedelta(days=10))

        assert service.perform_automatic_downgrade(db_session, account.id, FIXED_NOW) is True
        assert service.perform_automatic_downgrade(db_session, account.id, FIXED_NOW) is False
        assert len(service.get_tier_history(db_session, account.id)) == 1

    @pytest.mark.parametrize("plan,expires_delta", [
        ("premium", timedelta(days=-3)),
        ("premium", timedelta(days=5)),
        ("premium", None),
        ("free", None),
    ])
    def test_not_eligible(self, db_session, make_account, service, plan, expires_delta):
        expires_at = FIXED_NOW + expires_delta if expires_delta is not None else None
        account = make_account(plan=plan, expires_at=expires_at)

        assert service.perform_automatic_downgrade(db_session, account.id, FIXED_NOW) is False
        assert _reload(db_session, account.id).subscription_plan == plan

    def test_missing_account(self, db_session, service):
        assert service.perform_automatic_downgrade(db_session, "missing", FIXED_NOW) is False

    def test_write_failure_is_wrapped(self, db_session, make_account, service):
        account = make_account(plan="premium", expires_at=FIXED_NOW - timedelta(days=10))
        user_id = account.id

        with patch.object(
            db_session, "execute", side_effect=OperationalError("UPDATE", {}, Exception("down"))
        ):
            with pytest.raises(DatastoreUnavailableError):
                service.perform_automatic_downgrade(db_session, user_id, FIXED_NOW)


class TestTierHistory:

    def test_newest_first_and_limited(self, db_session, make_account, service):
        account = make_account()
        for days in (10, 20, 30):
            service.change_tier(
                db_session, account.id, "premium", TierChangeReason.RENEWAL,
                expires_at=FIXED_NOW + timedelta(days=days),
            )

        history = service.get_tier_history(db_session, account.id, limit=2)

        assert len(history) == 2
        assert history[0].effective_date >= history[1].effective_date
