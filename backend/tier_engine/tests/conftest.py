"""
Root test configuration and fixtures.

Every test gets its own file-backed SQLite database so that code opening
its own sessions (scheduler, audit sink) and threaded tests see real,
separate connections.

Shared fixtures:
- db_engine / session_factory / db_session: fresh schema with the reference
  feature definitions seeded
- make_account: factory for subscription accounts
- recording_dispatcher / recording_audit_sink: in-memory collaborators
- make_yaml_config: factory for writing YAML configs to a temp dir
"""

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from tier_engine.config.feature_catalog import load_feature_definitions
from tier_engine.config.settings import TierEngineSettings
from tier_engine.database.session import init_db
from tier_engine.entitlements.audit import AuditSink
from tier_engine.entitlements.catalog import seed_feature_definitions
from tier_engine.entitlements.notifications import NotificationDispatcher
from tier_engine.models.user import SubscriptionAccount, SubscriptionPlan

# Set test environment
os.environ.setdefault("ENV", "test")

FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

REFERENCE_CONFIG = Path(__file__).resolve().parents[3] / "config" / "tier_features.yml"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """SQLite database file with all tables created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tier_engine.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)

    session = factory()
    try:
        seed_feature_definitions(session, load_feature_definitions(str(REFERENCE_CONFIG)))
        session.commit()
    finally:
        session.close()

    return factory


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Accounts and settings
# =============================================================================


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def settings() -> TierEngineSettings:
    """Defaults, independent of the process environment."""
    return TierEngineSettings()


@pytest.fixture
def make_account(db_session):
    """
    Factory fixture that creates and commits a subscription account.

    Usage:
        account = make_account(plan="premium", expires_at=now + timedelta(days=5))
    """
    def _make(
        plan: str = SubscriptionPlan.FREE.value,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
        email: Optional[str] = None,
        first_name: Optional[str] = "Test",
        last_name: Optional[str] = "User",
    ) -> SubscriptionAccount:
        account = SubscriptionAccount(
            id=str(uuid.uuid4()),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            first_name=first_name,
            last_name=last_name,
            subscription_plan=getattr(plan, "value", plan),
            subscription_expires_at=expires_at,
            is_active=is_active,
        )
        db_session.add(account)
        db_session.commit()
        return account
    return _make


# =============================================================================
# Collaborators
# =============================================================================


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every notification; returns deliver_result for each."""

    def __init__(self, deliver_result: bool = True):
        self.deliver_result = deliver_result
        self.calls: List[tuple] = []

    def tier_changed(self, user, previous, next_plan, reason) -> bool:
        self.calls.append(("tier_changed", user.id, previous, next_plan, reason))
        return self.deliver_result

    def expiration_warning(self, user, days_left) -> bool:
        self.calls.append(("expiration_warning", user.id, days_left))
        return self.deliver_result

    def grace_period_started(self, user, grace_deadline) -> bool:
        self.calls.append(("grace_period_started", user.id, grace_deadline))
        return self.deliver_result

    def upgrade_prompt(self, user, feature) -> bool:
        self.calls.append(("upgrade_prompt", user.id, feature))
        return self.deliver_result

    def of(self, intent: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == intent]


class RecordingAuditSink(AuditSink):
    """Keeps audit events in memory."""

    def __init__(self):
        self.events: List[dict] = []

    def _write(self, user_id, action, resource, details, success) -> None:
        self.events.append({
            "user_id": user_id,
            "action": action,
            "resource": resource,
            "details": details,
            "success": success,
        })

    def of(self, action: str) -> List[dict]:
        return [e for e in self.events if e["action"] == action]


@pytest.fixture
def recording_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def recording_audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
    config.addinivalue_line("markers", "concurrency: exercises concurrent writers")


# =============================================================================
# Config fixtures
# =============================================================================


@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("tier_features.yml", {"tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
