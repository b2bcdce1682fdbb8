"""
VolumeBot - volume-spike position bot for one Bybit linear symbol.

Two clocks:
- Candles: websocket klines (with REST back-fill) drive signal detection and entries
- Timers: trailing stop while a position exists, periodic position sync
"""

import asyncio
from typing import Optional

from core.alerts import AlertConfig, AlertLevel, AlertManager
from core.config import Settings
from core.logging_utils import get_logger
from core.models import Candle, CandleHistory
from core.timers import PeriodicTask
from core.trading_interfaces import INotifier, IVenue
from datafeeds.collectors import CandleCollector
from execution.lifecycle import PositionLifecycleManager
from execution.venue import BybitVenue

logger = get_logger(__name__)


class ConfigError(Exception):
    """Settings that make startup impossible."""


class VolumeBot:
    def __init__(
        self,
        settings: Settings,
        venue: Optional[IVenue] = None,
        notifier: Optional[INotifier] = None,
        collector: Optional[CandleCollector] = None,
    ):
        self.settings = settings
        self.alerts = notifier if notifier is not None else AlertManager(AlertConfig.from_settings(settings))
        self.venue = venue if venue is not None else BybitVenue(settings)
        self.lifecycle = PositionLifecycleManager(settings, self.venue, self.alerts)
        self.collector = collector if collector is not None else CandleCollector(settings)
        self.collector.on_candle = self._on_candle
        self.collector.on_connect = lambda: logger.info("[BOT] Market data connected")
        self.collector.on_disconnect = lambda: logger.warning("[BOT] Market data disconnected")

        self._sync_timer = PeriodicTask(
            "position-sync", settings.rest_check_interval_seconds, self._sync_position
        )
        self._collector_task: Optional[asyncio.Task] = None
        self._running = False

    def validate(self) -> None:
        if self.settings.is_live and not self.settings.is_configured:
            raise ConfigError(
                "Live mode needs BYBIT_API_KEY and BYBIT_API_SECRET. "
                "Fix .env or switch to TRADING_MODE=signals."
            )
        if self.settings.trade_size_usd <= 0:
            raise ConfigError("TRADE_SIZE_USD must be positive")
        if self.settings.danger_volume_threshold <= self.settings.volume_threshold:
            logger.warning(
                "[BOT] Danger threshold %.0f is not above the signal threshold %.0f",
                self.settings.danger_volume_threshold, self.settings.volume_threshold,
            )

    async def start(self):
        """Start up and run until stopped."""
        self.validate()
        self._running = True
        s = self.settings
        logger.info(
            "[BOT] Starting %s %s interval=%s size=$%.0f mode=%s",
            s.symbol, "mainnet" if not s.bybit_testnet else "testnet",
            s.candle_interval, s.trade_size_usd, s.trading_mode,
        )

        history = await self.collector.load_history()
        if s.is_live:
            await self.lifecycle.start(history)
        else:
            self.lifecycle.history = history

        await self.lifecycle.analyze_history(history)

        self.alerts.notify(
            self.lifecycle.formatter.bot_started(
                s.trading_mode, s.candle_interval, s.volume_threshold, self.lifecycle.state.has_position
            ),
            AlertLevel.INFO,
        )

        if s.is_live:
            self._sync_timer.start()
        self._collector_task = asyncio.create_task(self.collector.start(), name="candle-collector")
        try:
            await self._collector_task
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self):
        """Signal-handler safe: ends ``start()`` which then cleans up."""
        logger.info("[BOT] Stop requested")
        self.collector.stop()
        if self._collector_task and not self._collector_task.done():
            self._collector_task.cancel()

    async def stop(self):
        """Stop gracefully. Open positions and orders stay on the exchange."""
        if not self._running:
            return
        self._running = False
        logger.info("[BOT] Shutting down...")

        self._sync_timer.stop()
        self.collector.stop()
        await self.collector.wait_closed()
        self.lifecycle.stop()

        has_position = self.lifecycle.state.has_position
        if has_position:
            logger.info("[BOT] Keeping position open on exchange")
        self.alerts.notify(self.lifecycle.formatter.bot_stopped(has_position), AlertLevel.WARNING)
        if isinstance(self.alerts, AlertManager):
            await self.alerts.close()

    async def _on_candle(self, candle: Candle, history: CandleHistory):
        await self.lifecycle.process_candle(candle, history)

    async def _sync_position(self):
        # The trailing timer reconciles while a position exists
        if self.lifecycle.state.has_position:
            return
        await self.lifecycle.reconcile()
