"""
Alert delivery via Telegram.

Setup:
1. Create a Telegram bot via @BotFather
2. Get your chat_id by messaging @userinfobot
3. Set environment variables:
   - TELEGRAM_BOT_TOKEN
   - TELEGRAM_CHAT_ID
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx

from core.config import Settings
from core.logging_utils import get_logger

logger = get_logger(__name__)


class AlertLevel(Enum):
    INFO = "ℹ️"
    SUCCESS = "✅"
    WARNING = "⚠️"
    ERROR = "❌"
    TRADE = "💰"


@dataclass
class AlertConfig:
    """Configuration for alerts."""
    enabled: bool = True
    telegram_token: str = ""
    telegram_chat_id: str = ""

    # Rate limiting
    min_interval_sec: float = 1.0  # Min time between alerts
    timeout_sec: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertConfig":
        return cls(
            enabled=settings.telegram_enabled,
            telegram_token=settings.telegram_bot_token,
            telegram_chat_id=settings.telegram_chat_id,
            timeout_sec=settings.api_timeout_seconds,
        )


class AlertManager:
    """Sends alerts via Telegram. Failures are logged, never raised."""

    TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"

    def __init__(self, config: AlertConfig):
        self.config = config
        self._last_alert_time: Optional[datetime] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

        if self.config.enabled:
            logger.info("[ALERT] Telegram alerts enabled")
        else:
            logger.info("[ALERT] Telegram not configured (set TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        return self._client

    async def close(self):
        """Wait for queued alerts, then close the client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def send(
        self,
        message: str,
        level: AlertLevel = AlertLevel.INFO,
        parse_mode: str = "HTML",
    ) -> bool:
        """
        Send an alert message.
        Returns True if sent successfully.
        """
        if not self.config.enabled:
            logger.debug("[ALERT] (disabled) %s", message)
            return False

        # Serialise sends so the min interval holds for concurrent callers
        async with self._lock:
            now = datetime.now(timezone.utc)
            if self._last_alert_time:
                elapsed = (now - self._last_alert_time).total_seconds()
                if elapsed < self.config.min_interval_sec:
                    await asyncio.sleep(self.config.min_interval_sec - elapsed)

            try:
                client = await self._get_client()
                url = self.TELEGRAM_API.format(token=self.config.telegram_token)
                payload = {
                    "chat_id": self.config.telegram_chat_id,
                    "text": f"{level.value} {message}",
                    "parse_mode": parse_mode,
                }
                resp = await client.post(url, json=payload)
                self._last_alert_time = datetime.now(timezone.utc)

                if resp.status_code == 200:
                    return True
                logger.warning("[ALERT] Telegram error: %s %s", resp.status_code, resp.text[:200])
                return False

            except httpx.HTTPError as e:
                logger.error("[ALERT] Failed to send: %s", e)
                return False

    def notify(self, message: str, level: AlertLevel = AlertLevel.INFO) -> None:
        """Fire-and-forget send; must be called from inside the event loop."""
        task = asyncio.create_task(self.send(message, level))
        self._pending.add(task)
        task.add_done_callback(self._on_sent)

    def _on_sent(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[ALERT] Unexpected alert failure: %s", exc)
