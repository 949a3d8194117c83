"""
Append-only tier change history.

A row is written on every automatic or manual plan change and is never
updated afterwards.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Text, DateTime, Index

from tier_engine.db_base import Base
from tier_engine.models.base import generate_uuid


class TierChangeReason:
    """Standard change_reason values."""
    EXPIRATION = "expiration"
    UPGRADE = "upgrade"
    RENEWAL = "renewal"
    DOWNGRADE = "downgrade"
    ADMIN = "admin"


class TierHistory(Base):
    """One plan transition for a user."""

    __tablename__ = "user_tier_history"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(36),
        nullable=False,
        index=True,
    )
    previous_plan = Column(String(20), nullable=False)
    new_plan = Column(String(20), nullable=False)
    change_reason = Column(
        String(50),
        nullable=False,
        comment="expiration, upgrade, renewal, downgrade, admin"
    )
    changed_by = Column(
        String(36),
        nullable=True,
        comment="Actor for manual changes; NULL for automatic ones"
    )
    effective_date = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_user_tier_history_user_effective", "user_id", "effective_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<TierHistory(user_id={self.user_id}, {self.previous_plan}->{self.new_plan}, "
            f"reason={self.change_reason})>"
        )
