"""
Audit Sink - append-only record of entitlement decisions and lifecycle
transitions.

Provides:
- AuditSink: the log(user_id, action, resource, details, success) contract
- LoggingAuditSink: structured log lines on the tier_engine.audit logger
- DatabaseAuditSink: audit_logs rows written in their own session

Writes are best-effort: a failing sink logs to the fallback logger and
never raises into the caller.
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from tier_engine.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("tier_engine.audit")
fallback_logger = logging.getLogger("tier_engine.audit.fallback")


class AuditAction:
    """Auditable engine actions."""
    FEATURE_ACCESS_CHECK = "feature_access_check"
    TIER_CHANGED = "tier_changed"
    TIER_DOWNGRADE_AUTOMATIC = "tier_downgrade_automatic"
    SUBSCRIPTION_EXPIRATION_WARNING = "subscription_expiration_warning"
    GRACE_PERIOD_ACTIVATED = "grace_period_activated"
    UPGRADE_PROMPT_SENT = "upgrade_prompt_sent"
    TIER_REQUIREMENT_CHECK = "tier_requirement_check"
    USAGE_STATISTICS_RETRIEVED = "usage_statistics_retrieved"


class AuditResource:
    TIER_SCHEDULER = "tier_scheduler"
    TIER_VALIDATION = "tier_validation"
    TIER_SERVICE = "tier_service"
    INTERNAL_TIER_VALIDATION = "internal_tier_validation"


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if hasattr(value, "value") and isinstance(getattr(value, "value"), (str, int)):
        return value.value
    return value


class AuditSink(ABC):
    """Append-only audit destination."""

    def log(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Record an audit event. Never raises."""
        payload = _json_safe(details or {})
        try:
            self._write(user_id, action, resource, payload, success)
        except Exception:
            fallback_logger.error(
                "audit_write_failed",
                exc_info=True,
                extra={
                    "user_id": user_id,
                    "action": action,
                    "resource": resource,
                    "details": payload,
                    "success": success,
                },
            )

    @abstractmethod
    def _write(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        details: Dict[str, Any],
        success: bool,
    ) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured audit logger only."""

    def _write(self, user_id, action, resource, details, success) -> None:
        audit_logger.info(
            action,
            extra={
                "event_type": "tier_audit",
                "audit_data": {
                    "user_id": user_id,
                    "action": action,
                    "resource": resource,
                    "details": details,
                    "success": success,
                },
            },
        )


class DatabaseAuditSink(AuditSink):
    """
    Persists audit events to audit_logs.

    Each event is written in a fresh session so an audit insert never joins
    (or rolls back with) the caller's transaction.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _write(self, user_id, action, resource, details, success) -> None:
        session = self._session_factory()
        try:
            session.add(AuditLog(
                user_id=user_id,
                action=action,
                resource=resource,
                details=details,
                success=success,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        audit_logger.info(
            action,
            extra={
                "event_type": "tier_audit",
                "audit_data": {
                    "user_id": user_id,
                    "action": action,
                    "resource": resource,
                    "success": success,
                },
            },
        )
