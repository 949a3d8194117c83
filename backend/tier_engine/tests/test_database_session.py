"""
Tests for database URL handling and the request session dependency.
"""

import pytest
from fastapi import HTTPException

from tier_engine.database import session as db_session_module


@pytest.fixture
def fresh_singletons(monkeypatch):
    monkeypatch.setattr(db_session_module, "_engine", None)
    monkeypatch.setattr(db_session_module, "_SessionLocal", None)


def test_postgres_scheme_is_normalised(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db:5432/tiers")

    assert db_session_module._get_database_url() == "postgresql://user:pw@db:5432/tiers"


def test_missing_url_raises(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(ValueError):
        db_session_module._get_database_url()


@pytest.mark.asyncio
async def test_dependency_returns_503_without_database(monkeypatch, fresh_singletons):
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(HTTPException) as exc_info:
        await db_session_module.get_db_session().__anext__()

    assert exc_info.value.status_code == 503


def test_session_factory_from_env(monkeypatch, fresh_singletons, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'env.db'}")

    factory = db_session_module.get_session_factory()
    db_session_module.init_db()

    session = factory()
    try:
        assert session.bind is db_session_module.get_engine()
    finally:
        session.close()
        db_session_module.get_engine().dispose()
