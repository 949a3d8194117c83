"""
Database session management.
"""

from tier_engine.database.session import (
    get_engine,
    get_session_factory,
    get_db_session,
    init_db,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "get_db_session",
    "init_db",
]
