"""
Run notifications.

Every sink implements notify_start / notify_success / notify_error as
coroutines. Delivery is best-effort: sinks log their own failures and
CompositeNotifier isolates sinks from each other.
"""

import logging
from typing import Any, List, Protocol

from .email import EmailNotifier, EmailResult
from .messages import (
    build_error_message,
    build_start_message,
    build_success_message,
    build_warning_message,
    format_duration,
)
from .telegram import TelegramNotifier

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify_start(self, service_name: str) -> None: ...

    async def notify_success(self, service_name: str, stats: Any, duration: int) -> None: ...

    async def notify_error(self, service_name: str, error: Exception, duration: int) -> None: ...


class CompositeNotifier:
    """Fans each notification out to several sinks."""

    def __init__(self, sinks: List[NotificationSink]):
        self.sinks = list(sinks)

    async def _each(self, method: str, *args) -> None:
        for sink in self.sinks:
            try:
                await getattr(sink, method)(*args)
            except Exception as e:
                logger.error(f"{type(sink).__name__}.{method} failed: {e}")

    async def notify_start(self, service_name: str) -> None:
        await self._each("notify_start", service_name)

    async def notify_success(self, service_name: str, stats: Any, duration: int) -> None:
        await self._each("notify_success", service_name, stats, duration)

    async def notify_error(self, service_name: str, error: Exception, duration: int) -> None:
        await self._each("notify_error", service_name, error, duration)


def create_notifier(settings) -> CompositeNotifier:
    """Build the configured sinks from settings."""
    return CompositeNotifier([
        TelegramNotifier(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_CHAT_ID),
        EmailNotifier(
            settings.RESEND_API_KEY,
            settings.NOTIFY_EMAIL_TO,
            from_email=settings.NOTIFY_EMAIL_FROM,
        ),
    ])


__all__ = [
    "NotificationSink",
    "CompositeNotifier",
    "TelegramNotifier",
    "EmailNotifier",
    "EmailResult",
    "create_notifier",
    "format_duration",
    "build_start_message",
    "build_success_message",
    "build_warning_message",
    "build_error_message",
]
