"""WebSocket kline collector for Bybit v5 public linear streams."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import websockets

from core.config import Settings
from core.logging_utils import get_logger
from core.models import Candle, CandleHistory
from core.timers import PeriodicTask
from datafeeds.bybit_fetcher import fetch_history_async

logger = get_logger(__name__)

CandleHandler = Callable[[Candle, CandleHistory], Awaitable[object]]
HistoryFetcher = Callable[[str, str, int], Awaitable[List[Candle]]]


class CandleCollector:
    """Streams klines for one symbol/interval into a rolling ``CandleHistory``.

    Every (re)connect first back-fills from REST and replays missed confirmed
    bars through ``on_candle`` in order, then resumes live messages. The same
    back-fill also runs on a timer as a gap check.
    """

    WS_URL = "wss://stream.bybit.com/v5/public/linear"
    WS_URL_TESTNET = "wss://stream-testnet.bybit.com/v5/public/linear"

    def __init__(
        self,
        settings: Settings,
        on_candle: Optional[CandleHandler] = None,
        fetcher: HistoryFetcher = fetch_history_async,
    ):
        self.settings = settings
        self.symbol = settings.symbol
        self.interval = settings.candle_interval
        self.on_candle = on_candle
        self.fetcher = fetcher
        self.history = CandleHistory(max_size=settings.history_size)

        self._running = False
        self._connected = False
        self._ws = None
        self._close_task: Optional[asyncio.Task] = None
        self._dispatch_lock = asyncio.Lock()
        self._last_message_time: Optional[datetime] = None
        self._rest_check = PeriodicTask("rest-gap-check", settings.rest_check_interval_seconds, self._gap_check)

        # Reconnection state
        self._reconnect_attempts = 0
        self._total_reconnects = 0

        # Callbacks
        self.on_connect: Optional[Callable] = None
        self.on_disconnect: Optional[Callable] = None

    @property
    def url(self) -> str:
        return self.WS_URL_TESTNET if self.settings.bybit_testnet else self.WS_URL

    @property
    def topic(self) -> str:
        return f"kline.{self.interval}.{self.symbol}"

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def last_message_age(self) -> float:
        """Seconds since the last message."""
        if self._last_message_time is None:
            return 0.0 if self._connected else 999.0
        return (datetime.now(timezone.utc) - self._last_message_time).total_seconds()

    # -- history -----------------------------------------------------------

    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return await self.fetcher(symbol, interval, limit)

    async def load_history(self, limit: Optional[int] = None) -> CandleHistory:
        """Seed the buffer without dispatching anything."""
        candles = await self.fetcher(self.symbol, self.interval, limit or self.settings.initial_history_limit)
        self.history.extend(candles)
        logger.info("[WS] Loaded %d historical candles for %s", len(candles), self.symbol)
        return self.history

    async def backfill(self) -> int:
        """Fetch recent bars and replay the ones we have not seen confirmed."""
        candles = await self.fetcher(self.symbol, self.interval, self.settings.history_size)
        dispatched = 0
        for candle in candles:
            if await self._ingest(candle):
                dispatched += 1
        if dispatched:
            logger.info("[WS] Back-filled %d confirmed candles", dispatched)
        return dispatched

    async def _gap_check(self):
        await self.backfill()

    async def _ingest(self, candle: Candle) -> bool:
        """Buffer ``candle``; dispatch it if it newly became confirmed."""
        async with self._dispatch_lock:
            existing = self.history.find(candle.timestamp)
            self.history.upsert(candle)
            newly_confirmed = candle.confirmed and (existing is None or not existing.confirmed)
            if not newly_confirmed or self.history.find(candle.timestamp) is None:
                return False
            if self.on_candle:
                await self.on_candle(candle, self.history)
            return True

    # -- websocket ---------------------------------------------------------

    async def _handle_message(self, data: dict):
        self._last_message_time = datetime.now(timezone.utc)

        op = data.get("op")
        if op is not None:
            if data.get("success") is False:
                logger.error("[WS] %s failed: %s", op, data.get("ret_msg", data))
            elif op == "subscribe":
                logger.info("[WS] Subscribed to %s", self.topic)
            return

        if data.get("topic") != self.topic:
            return
        for item in data.get("data", []):
            try:
                candle = Candle.from_millis(
                    item["start"],
                    item["open"],
                    item["high"],
                    item["low"],
                    item["close"],
                    item["volume"],
                    item.get("turnover", 0),
                    confirmed=bool(item.get("confirm", False)),
                )
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("[WS] Bad kline payload %s: %s", item, e)
                continue
            await self._ingest(candle)

    async def _listen(self):
        """Main WebSocket listener loop."""
        while self._running:
            pinger: Optional[PeriodicTask] = None
            try:
                async with websockets.connect(self.url, ping_interval=None) as ws:
                    self._ws = ws
                    self._connected = True
                    if self._reconnect_attempts > 0:
                        logger.info("[WS] Reconnected after %s attempts", self._reconnect_attempts)
                    self._reconnect_attempts = 0

                    await ws.send(json.dumps({"op": "subscribe", "args": [self.topic]}))

                    # Bybit drops idle connections without app-level pings
                    async def _ping():
                        await ws.send(json.dumps({"op": "ping"}))

                    pinger = PeriodicTask("ws-ping", self.settings.ws_ping_interval_seconds, _ping)
                    pinger.start()

                    if self.on_connect:
                        self.on_connect()

                    await self.backfill()

                    async for message in ws:
                        try:
                            await self._handle_message(json.loads(message))
                        except json.JSONDecodeError:
                            continue
                        except Exception as e:
                            logger.exception("[WS] Error processing message: %s", e)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._reconnect_attempts += 1
                self._total_reconnects += 1
                logger.warning(
                    "[WS] Connection lost: %s, reconnecting in %.1fs (attempt %s)",
                    e, self.settings.ws_reconnect_delay_seconds, self._reconnect_attempts,
                )
            finally:
                if pinger is not None:
                    pinger.stop()
                self._connected = False
                self._ws = None

            if self.on_disconnect:
                self.on_disconnect()
            if self._running:
                await asyncio.sleep(self.settings.ws_reconnect_delay_seconds)

    async def stream_candles(self, on_candle: CandleHandler) -> None:
        self.on_candle = on_candle
        await self.start()

    async def start(self):
        """Run until ``stop()``."""
        self._running = True
        self._rest_check.start()
        await self._listen()

    def stop(self):
        """Stop the collector."""
        self._running = False
        self._rest_check.stop()
        if self._ws and self._close_task is None:
            self._close_task = asyncio.create_task(self._ws.close(), name="ws-close")
            self._close_task.add_done_callback(self._on_close_done)

    async def wait_closed(self):
        """Wait for the socket close started by ``stop()``."""
        if self._close_task is not None:
            await asyncio.gather(self._close_task, return_exceptions=True)

    def _on_close_done(self, task: asyncio.Task):
        self._close_task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("[WS] Socket close failed: %s", error)
