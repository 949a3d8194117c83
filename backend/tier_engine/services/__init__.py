"""
Outbound delivery services.
"""

from tier_engine.services.email_sender import (
    EmailMessage,
    EmailSender,
    MockEmailSender,
    SendGridEmailSender,
    SMTPEmailSender,
    get_email_sender,
)

__all__ = [
    "EmailMessage",
    "EmailSender",
    "MockEmailSender",
    "SendGridEmailSender",
    "SMTPEmailSender",
    "get_email_sender",
]
