"""
Email Notifications

Sends run failure (and optionally success) notifications via Resend.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import resend

from .messages import build_error_message, build_success_message

logger = logging.getLogger(__name__)


@dataclass
class EmailResult:
    """Result of email delivery."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailNotifier:
    """
    NotificationSink using Resend.

    Start notifications are not emailed. Success emails are opt-in;
    error emails are always sent when configured.
    """

    DEFAULT_FROM_NAME = "Metrics Collector"

    def __init__(
        self,
        api_key: Optional[str],
        to_email: Optional[str],
        from_email: str = "collector@localhost",
        notify_success: bool = False,
    ):
        self.api_key = api_key
        self.to_email = to_email
        self.from_email = from_email
        self.send_success = notify_success
        self.enabled = bool(api_key and to_email)

        if not self.enabled:
            logger.warning("RESEND_API_KEY or NOTIFY_EMAIL_TO not set - email notifications disabled")
        else:
            resend.api_key = self.api_key

    def send(self, subject: str, html_content: str) -> EmailResult:
        if not self.enabled:
            return EmailResult(success=False, error="Email notifications not configured")

        try:
            response = resend.Emails.send({
                "from": f"{self.DEFAULT_FROM_NAME} <{self.from_email}>",
                "to": [self.to_email],
                "subject": subject,
                "html": f"<pre style=\"font-family: Arial, sans-serif\">{html_content}</pre>",
            })
            logger.info(f"Email sent to {self.to_email}: {response.get('id', 'unknown')}")
            return EmailResult(success=True, message_id=response.get("id"))

        except Exception as e:
            logger.error(f"Email delivery failed: {e}")
            return EmailResult(success=False, error=str(e))

    async def notify_start(self, service_name: str) -> None:
        return None

    async def notify_success(self, service_name: str, stats: Any, duration: int) -> None:
        if self.send_success:
            self.send(
                f"[{service_name}] collection completed",
                build_success_message(service_name, stats, duration),
            )

    async def notify_error(self, service_name: str, error: Exception, duration: int) -> None:
        self.send(
            f"[{service_name}] collection failed",
            build_error_message(service_name, error, duration),
        )
