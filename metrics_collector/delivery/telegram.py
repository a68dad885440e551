"""
Telegram Notifications

Posts run notifications to a chat through the Bot API.
Disabled (with a warning) when the bot token or chat id is missing.
"""

import logging
from typing import Any, Optional

import httpx

from .messages import build_error_message, build_start_message, build_success_message

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class TelegramNotifier:
    """NotificationSink backed by the Telegram Bot API."""

    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = bool(bot_token and chat_id)
        self._timeout = timeout
        self._transport = transport

        if not self.enabled:
            logger.warning("Telegram notifications disabled - missing bot token or chat ID")

    async def send_message(self, text: str, silent: bool = False) -> Optional[dict]:
        """Send one HTML message. Raises on delivery failure."""
        if not self.enabled:
            return None

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage",
                json={
                    "chat_id": self.chat_id,
                    "text": text,
                    "parse_mode": "HTML",
                    "disable_notification": silent,
                },
            )
            response.raise_for_status()
            return response.json()

    async def _deliver(self, kind: str, service_name: str, text: str) -> None:
        if not self.enabled:
            return
        try:
            await self.send_message(text)
            logger.info(f"{kind} notification sent for {service_name}")
        except Exception as e:
            logger.error(f"Failed to send {kind} notification for {service_name}: {e}")

    async def notify_start(self, service_name: str) -> None:
        await self._deliver("Start", service_name, build_start_message(service_name))

    async def notify_success(self, service_name: str, stats: Any, duration: int) -> None:
        await self._deliver("Success", service_name, build_success_message(service_name, stats, duration))

    async def notify_error(self, service_name: str, error: Exception, duration: int) -> None:
        await self._deliver("Error", service_name, build_error_message(service_name, error, duration))
