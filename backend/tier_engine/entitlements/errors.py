"""
Structured error classes for the tier engine.

Negative entitlement decisions are NOT errors; they are returned as
validation results. These exceptions cover the exceptional paths only.
"""

from typing import Optional

from fastapi import status


class TierEngineError(Exception):
    """Base exception for tier engine errors."""

    error_code = "TIER_ENGINE_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": str(self),
        }


class UserNotFoundError(TierEngineError):
    """The subscription account does not exist. Not retried."""

    error_code = "USER_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class DatastoreUnavailableError(TierEngineError):
    """
    A datastore call failed.

    Transient: request paths surface a 503, batch jobs skip the account and
    retry on the next scheduled tick.
    """

    error_code = "DATASTORE_UNAVAILABLE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Datastore unavailable during {operation}{detail}")


class NotificationDeliveryFailedError(TierEngineError):
    """A notification could not be delivered. Always non-fatal."""

    error_code = "NOTIFICATION_DELIVERY_FAILED"

    def __init__(self, user_id: str, intent: str, detail: Optional[str] = None):
        self.user_id = user_id
        self.intent = intent
        self.detail = detail
        super().__init__(
            f"Failed to deliver {intent} notification to user {user_id}"
            + (f": {detail}" if detail else "")
        )


class UsageLimitExceededError(TierEngineError):
    """
    An atomic usage increment found no free slot.

    Raised by the usage tracker when a concurrent request consumed the last
    slot between validation and write.
    """

    error_code = "USAGE_LIMIT_EXCEEDED"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, user_id: str, feature: str, current_usage: int, limit: Optional[int]):
        self.user_id = user_id
        self.feature = feature
        self.current_usage = current_usage
        self.limit = limit
        super().__init__(
            f"Usage limit reached for {feature}: {current_usage}/{limit}"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": str(self),
            "feature": self.feature,
            "current_usage": self.current_usage,
            "limit": self.limit,
        }


class UnknownFeatureError(TierEngineError):
    """A feature name outside the closed catalog was used for a write."""

    error_code = "UNKNOWN_FEATURE"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Unknown feature: {feature}")


class BulkRequestLimitError(TierEngineError):
    """A bulk validation call was empty or carried too many requests."""

    error_code = "BULK_REQUEST_LIMIT"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, count: int, maximum: int):
        self.count = count
        self.maximum = maximum
        super().__init__(f"Bulk validation takes 1 to {maximum} requests, got {count}")
