"""
Audit log model.

Append-only. Stores every entitlement decision and lifecycle transition
recorded through the audit sink.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Boolean, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB

from tier_engine.db_base import Base
from tier_engine.models.base import generate_uuid

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditLog(Base):
    """A single audit event."""

    __tablename__ = "audit_logs"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(String(36), nullable=True, index=True)
    action = Column(String(100), nullable=False)
    resource = Column(String(100), nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_audit_logs_user_action", "user_id", "action"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action={self.action}, user_id={self.user_id}, success={self.success})>"
