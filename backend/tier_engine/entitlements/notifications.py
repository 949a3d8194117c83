"""
Notification Dispatcher for tier lifecycle messages.

Four intents:
- tier_changed(user, previous, next, reason)
- expiration_warning(user, days_left)
- grace_period_started(user, grace_deadline)
- upgrade_prompt(user, feature)

Each returns True when the message was handed to the transport and False
otherwise. Dispatchers never raise: delivery problems are logged here and
audited by the caller.
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from tier_engine.entitlements.errors import NotificationDeliveryFailedError
from tier_engine.entitlements.features import display_name_for
from tier_engine.models.user import SubscriptionAccount
from tier_engine.services.email_sender import EmailMessage, EmailSender, get_email_sender

logger = logging.getLogger(__name__)


class NotificationIntent:
    TIER_CHANGED = "tier_changed"
    EXPIRATION_WARNING = "expiration_warning"
    GRACE_PERIOD_STARTED = "grace_period_started"
    UPGRADE_PROMPT = "upgrade_prompt"


EMAIL_SUBJECTS = {
    NotificationIntent.TIER_CHANGED: "Your subscription tier has changed",
    NotificationIntent.EXPIRATION_WARNING: "Your subscription is expiring soon",
    NotificationIntent.GRACE_PERIOD_STARTED: "Grace period activated for your subscription",
    NotificationIntent.UPGRADE_PROMPT: "Unlock more with Premium",
}


class NotificationDispatcher(ABC):
    """Delivers tier lifecycle messages to a user."""

    @abstractmethod
    def tier_changed(
        self,
        user: SubscriptionAccount,
        previous: str,
        next_plan: str,
        reason: str,
    ) -> bool:
        pass

    @abstractmethod
    def expiration_warning(self, user: SubscriptionAccount, days_left: int) -> bool:
        pass

    @abstractmethod
    def grace_period_started(self, user: SubscriptionAccount, grace_deadline: datetime) -> bool:
        pass

    @abstractmethod
    def upgrade_prompt(self, user: SubscriptionAccount, feature: str) -> bool:
        pass


def _wrap_html(name: str, body: str, product_name: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head><meta charset="utf-8"></head>
    <body style="font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
            <p>Hello {name},</p>
            <p>{body}</p>
            <p>Regards,<br/>{product_name}</p>
        </div>
    </body>
    </html>
    """


def _wrap_text(name: str, body: str, product_name: str) -> str:
    return f"Hello {name},\n\n{body}\n\nRegards,\n{product_name}"


class EmailNotificationDispatcher(NotificationDispatcher):
    """Renders tier messages as e-mails and sends them through an EmailSender."""

    def __init__(
        self,
        email_sender: Optional[EmailSender] = None,
        grace_period_days: int = 7,
        product_name: Optional[str] = None,
    ):
        self._sender = email_sender or get_email_sender()
        self._grace_period_days = grace_period_days
        self._product_name = product_name or os.getenv("NOTIFICATION_FROM_NAME", "StokReal")

    def tier_changed(self, user, previous, next_plan, reason) -> bool:
        return self._deliver(
            user,
            NotificationIntent.TIER_CHANGED,
            text=f"Your subscription tier changed from {previous} to {next_plan} due to {reason}.",
            html=(
                f"Your subscription tier changed from <strong>{previous}</strong> "
                f"to <strong>{next_plan}</strong> due to <em>{reason}</em>."
            ),
        )

    def expiration_warning(self, user, days_left) -> bool:
        return self._deliver(
            user,
            NotificationIntent.EXPIRATION_WARNING,
            text=(
                f"Your premium subscription will expire in {days_left} day(s). "
                "Please renew to avoid interruption."
            ),
            html=(
                f"Your premium subscription will expire in <strong>{days_left}</strong> day(s). "
                "Please renew to avoid interruption."
            ),
        )

    def grace_period_started(self, user, grace_deadline) -> bool:
        deadline = grace_deadline.isoformat()
        return self._deliver(
            user,
            NotificationIntent.GRACE_PERIOD_STARTED,
            text=(
                f"Your subscription has expired. A {self._grace_period_days}-day grace period "
                f"is active until {deadline}. Please renew to keep premium features."
            ),
            html=(
                f"Your subscription has expired. A {self._grace_period_days}-day grace period "
                f"is active until <strong>{deadline}</strong>. Please renew to keep premium features."
            ),
        )

    def upgrade_prompt(self, user, feature) -> bool:
        name = display_name_for(feature)
        return self._deliver(
            user,
            NotificationIntent.UPGRADE_PROMPT,
            text=f"Upgrade to Premium to unlock {name}.",
            html=f"Upgrade to Premium to unlock <strong>{name}</strong>.",
        )

    def _deliver(self, user: SubscriptionAccount, intent: str, text: str, html: str) -> bool:
        name = user.display_name
        message = EmailMessage(
            to_email=user.email,
            to_name=name,
            subject=EMAIL_SUBJECTS[intent],
            text_body=_wrap_text(name, text, self._product_name),
            html_body=_wrap_html(name, html, self._product_name),
            tags=["tier", intent],
        )

        try:
            delivered = self._sender.send_sync(message)
        except Exception as e:
            delivered = False
            error = NotificationDeliveryFailedError(user.id, intent, str(e))
            logger.error(str(error), extra={
                "user_id": user.id,
                "intent": intent,
            }, exc_info=True)
        else:
            if not delivered:
                logger.warning("Tier notification not delivered", extra={
                    "user_id": user.id,
                    "intent": intent,
                })

        if delivered:
            logger.info("Tier notification sent", extra={
                "user_id": user.id,
                "intent": intent,
            })
        return delivered
