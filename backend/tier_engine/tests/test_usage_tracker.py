"""
Tests for the atomic usage counters.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from tier_engine.entitlements.errors import (
    DatastoreUnavailableError,
    UnknownFeatureError,
    UsageLimitExceededError,
    UserNotFoundError,
)
from tier_engine.entitlements.features import FeatureName
from tier_engine.entitlements.usage import UsageTracker
from tier_engine.models.tier_feature import UserTierFeature


@pytest.fixture
def tracker():
    return UsageTracker()


def _counter(db, user_id, feature="max_products"):
    db.expire_all()
    return db.query(UserTierFeature).filter_by(user_id=user_id, feature_name=feature).one()


class TestTrack:

    def test_first_increment_creates_counter_with_limit_snapshot(self, db_session, make_account, tracker):
        account = make_account()

        assert tracker.track(db_session, account.id, "products", 1) == 1

        row = _counter(db_session, account.id)
        assert row.current_usage == 1
        assert row.usage_limit == 50

    def test_increments_accumulate(self, db_session, make_account, tracker):
        account = make_account()

        tracker.track(db_session, account.id, FeatureName.MAX_CATEGORIES, 3)
        new_usage = tracker.track(db_session, account.id, "categories", 2)

        assert new_usage == 5

    def test_increment_past_limit_is_rejected(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "categories", 20)

        with pytest.raises(UsageLimitExceededError) as exc_info:
            tracker.track(db_session, account.id, "categories", 1)

        assert exc_info.value.current_usage == 20
        assert exc_info.value.limit == 20
        assert _counter(db_session, account.id, "max_categories").current_usage == 20

    def test_batch_increment_must_fit_entirely(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 45)

        with pytest.raises(UsageLimitExceededError):
            tracker.track(db_session, account.id, "products", 10)

        assert _counter(db_session, account.id).current_usage == 45

    def test_decrement_clamps_at_zero(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 2)

        assert tracker.track(db_session, account.id, "products", -5) == 0
        assert _counter(db_session, account.id).current_usage == 0

    def test_decrement_without_counter_is_zero(self, db_session, make_account, tracker):
        account = make_account()

        assert tracker.track(db_session, account.id, "products", -1) == 0

    def test_unlimited_premium_counter_keeps_growing(self, db_session, make_account, tracker):
        account = make_account(plan="premium")

        assert tracker.track(db_session, account.id, "products", 500) == 500
        assert tracker.track(db_session, account.id, "products", 500) == 1000
        assert _counter(db_session, account.id).usage_limit is None

    def test_disabled_feature_has_no_slots(self, db_session, make_account, tracker):
        account = make_account()

        with pytest.raises(UsageLimitExceededError):
            tracker.track(db_session, account.id, "bulk_operations", 1)

    def test_unknown_feature_rejected(self, db_session, make_account, tracker):
        account = make_account()

        with pytest.raises(UnknownFeatureError):
            tracker.track(db_session, account.id, "teleportation", 1)

    def test_unknown_user_rejected(self, db_session, tracker):
        with pytest.raises(UserNotFoundError):
            tracker.track(db_session, "missing-user", "products", 1)

    def test_datastore_failure_is_wrapped(self, db_session, make_account, tracker):
        account = make_account()
        user_id = account.id

        with patch.object(
            db_session, "execute", side_effect=OperationalError("UPDATE", {}, Exception("locked"))
        ):
            with pytest.raises(DatastoreUnavailableError):
                tracker.track(db_session, user_id, "products", 1)


@pytest.mark.concurrency
class TestConcurrentTrack:

    def test_last_slot_is_taken_exactly_once(self, session_factory, db_session, make_account, tracker):
        """Two simultaneous increments at limit-1: one wins, one is rejected."""
        account = make_account()
        tracker.track(db_session, account.id, "products", 49)

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def consume():
            session = session_factory()
            try:
                barrier.wait()
                result = tracker.track(session, account.id, "products", 1)
                outcome = ("ok", result)
            except UsageLimitExceededError:
                outcome = ("denied", None)
            finally:
                session.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=consume) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sorted(o[0] for o in outcomes) == ["denied", "ok"]
        assert _counter(db_session, account.id).current_usage == 50

    def test_parallel_increments_are_not_lost(self, session_factory, db_session, make_account, tracker):
        account = make_account(plan="premium")
        tracker.track(db_session, account.id, "products", 1)

        def consume():
            session = session_factory()
            try:
                for _ in range(5):
                    tracker.track(session, account.id, "products", 1)
            finally:
                session.close()

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert _counter(db_session, account.id).current_usage == 21


class TestLimitsAndResets:

    def test_sync_usage_limits_follows_plan(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 10)

        updated = tracker.sync_usage_limits(db_session, account.id, "premium")
        db_session.commit()

        assert updated == 1
        assert _counter(db_session, account.id).usage_limit is None
        assert _counter(db_session, account.id).current_usage == 10

    def test_reset_usage_for_one_feature(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 10)
        tracker.track(db_session, account.id, "categories", 4)
        reset_at = datetime(2026, 1, 1, tzinfo=timezone.utc)

        affected = tracker.reset_usage(db_session, feature="products", user_id=account.id, at=reset_at)

        assert affected == 1
        assert _counter(db_session, account.id).current_usage == 0
        assert _counter(db_session, account.id, "max_categories").current_usage == 4

    def test_reset_usage_rejects_unknown_feature(self, db_session, tracker):
        with pytest.raises(UnknownFeatureError):
            tracker.reset_usage(db_session, feature="teleportation")

    def test_get_usage(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 7)

        usage = tracker.get_usage(db_session, account.id)

        assert usage[FeatureName.MAX_PRODUCTS].current == 7
        assert usage[FeatureName.MAX_PRODUCTS].limit == 50
        assert FeatureName.MAX_CATEGORIES not in usage


class TestUsageThreshold:

    def test_threshold_exceeded(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 45)

        result = tracker.check_usage_threshold(db_session, account.id, "products", 0.8)

        assert result.threshold_exceeded is True
        assert result.percentage == pytest.approx(0.9)
        assert "products" in result.warning_message

    def test_below_threshold(self, db_session, make_account, tracker):
        account = make_account()
        tracker.track(db_session, account.id, "products", 10)

        result = tracker.check_usage_threshold(db_session, account.id, "products", 0.8)

        assert result.threshold_exceeded is False
        assert result.warning_message is None

    def test_no_counter(self, db_session, make_account, tracker):
        account = make_account()

        result = tracker.check_usage_threshold(db_session, account.id, "products", 0.8)

        assert result.threshold_exceeded is False
        assert result.current_usage == 0
