"""
Mail transport used by the tier notification dispatcher.

Providers:
- SendGrid v3 HTTP API (production), via httpx
- SMTP (self-hosted / development), via smtplib
- Mock (tests), records messages in memory

The provider is chosen by NOTIFICATION_EMAIL_PROVIDER. Every sender reports
delivery as a bool and never raises, so a failed mail can never fail the
tier operation that triggered it.
"""

import logging
import os
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_FROM_EMAIL = "no-reply@stokreal.com"
DEFAULT_FROM_NAME = "StokReal"
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class EmailMessage:
    """A rendered notification e-mail."""
    to_email: str
    to_name: Optional[str]
    subject: str
    html_body: str
    text_body: Optional[str] = None
    tags: List[str] = field(default_factory=list)


class EmailSender(ABC):
    """Sends EmailMessage values; returns True when the provider accepted it."""

    def __init__(self, from_email: Optional[str] = None, from_name: Optional[str] = None):
        self.from_email = from_email or os.getenv("NOTIFICATION_FROM_EMAIL", DEFAULT_FROM_EMAIL)
        self.from_name = from_name or os.getenv("NOTIFICATION_FROM_NAME", DEFAULT_FROM_NAME)

    @abstractmethod
    def send_sync(self, message: EmailMessage) -> bool:
        pass

    async def send(self, message: EmailMessage) -> bool:
        return self.send_sync(message)


class SendGridEmailSender(EmailSender):
    """SendGrid v3 mail/send over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(from_email, from_name)
        self.api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.timeout = timeout
        self._client = client

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    def build_payload(self, message: EmailMessage) -> Dict[str, Any]:
        content = []
        if message.text_body:
            content.append({"type": "text/plain", "value": message.text_body})
        content.append({"type": "text/html", "value": message.html_body})

        payload: Dict[str, Any] = {
            "personalizations": [
                {"to": [{"email": message.to_email, "name": message.to_name or ""}]}
            ],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject,
            "content": content,
        }
        if message.tags:
            payload["categories"] = list(message.tags)
        return payload

    def _post(self, client: httpx.Client, payload: Dict[str, Any]) -> httpx.Response:
        return client.post(
            SENDGRID_SEND_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json=payload,
        )

    def send_sync(self, message: EmailMessage) -> bool:
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured", extra={
                "to_email": message.to_email,
            })
            return False

        payload = self.build_payload(message)
        try:
            if self._client is not None:
                response = self._post(self._client, payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = self._post(client, payload)
        except httpx.HTTPError as e:
            logger.error("Failed to send email via SendGrid", extra={
                "to_email": message.to_email,
                "error": str(e),
            }, exc_info=True)
            return False

        if response.status_code not in (200, 202):
            logger.error("SendGrid API error", extra={
                "status_code": response.status_code,
                "response": response.text,
                "to_email": message.to_email,
            })
            return False

        logger.info("Email sent via SendGrid", extra={
            "to_email": message.to_email,
            "subject": message.subject,
        })
        return True


class SMTPEmailSender(EmailSender):
    """Plain SMTP delivery with optional STARTTLS and login."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(from_email, from_name)
        self.host = host or os.getenv("SMTP_HOST", "localhost")
        self.port = port or int(os.getenv("SMTP_PORT", "587"))
        self.username = username or os.getenv("SMTP_USERNAME")
        self.password = password or os.getenv("SMTP_PASSWORD")
        if use_tls is None:
            use_tls = os.getenv("SMTP_USE_TLS", "true").lower() != "false"
        self.use_tls = use_tls
        self.timeout = timeout

    def build_mime(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to_email
        if message.text_body:
            msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))
        return msg

    def send_sync(self, message: EmailMessage) -> bool:
        msg = self.build_mime(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.from_email, [message.to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email via SMTP", extra={
                "to_email": message.to_email,
                "smtp_host": self.host,
                "error": str(e),
            }, exc_info=True)
            return False

        logger.info("Email sent via SMTP", extra={
            "to_email": message.to_email,
            "subject": message.subject,
        })
        return True


class MockEmailSender(EmailSender):
    """Keeps sent messages in memory. Set fail=True to simulate an outage."""

    def __init__(self, fail: bool = False):
        super().__init__(DEFAULT_FROM_EMAIL, DEFAULT_FROM_NAME)
        self.fail = fail
        self.sent_messages: List[EmailMessage] = []

    def send_sync(self, message: EmailMessage) -> bool:
        if self.fail:
            logger.warning("Mock email delivery failed", extra={"to_email": message.to_email})
            return False
        self.sent_messages.append(message)
        return True

    def clear(self) -> None:
        self.sent_messages.clear()


def get_email_sender() -> EmailSender:
    """Build the sender selected by NOTIFICATION_EMAIL_PROVIDER (default sendgrid)."""
    provider = os.getenv("NOTIFICATION_EMAIL_PROVIDER", "sendgrid").strip().lower()

    if provider == "smtp":
        return SMTPEmailSender()
    if provider == "mock":
        return MockEmailSender()
    if provider != "sendgrid":
        logger.warning("Unknown email provider, falling back to SendGrid", extra={
            "provider": provider,
        })
    return SendGridEmailSender()
