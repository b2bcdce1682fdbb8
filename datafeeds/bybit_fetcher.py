"""Bybit REST kline fetcher with rate limiting."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import List

from pybit.exceptions import FailedRequestError, InvalidRequestError
from pybit.unified_trading import HTTP

from core.config import interval_seconds, settings
from core.helpers import validate_candles
from core.logging_utils import get_logger
from core.models import Candle

logger = get_logger(__name__)

# Bybit serves at most 1000 klines per request
_MAX_CANDLES = 1000
_client: HTTP | None = None


class _TokenBucket:
    """Simple token bucket for global rate limiting."""

    def __init__(self, rps: float = 5.0, burst: float = 5.0):
        self.capacity = burst
        self.tokens = burst
        self.rps = rps
        self.last_refill = time.time()

    def acquire(self, cost: float = 1.0):
        now = time.time()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rps)
        self.last_refill = now
        wait = max(0.0, cost - self.tokens) / self.rps if self.tokens < cost else 0.0
        if wait > 0:
            time.sleep(wait)
            self.tokens = max(0.0, self.tokens - cost + wait * self.rps)
        else:
            self.tokens -= cost


_bucket = _TokenBucket()


def _get_client() -> HTTP:
    global _client
    if _client is None:
        # Public market data; no auth required
        _client = HTTP(testnet=settings.bybit_testnet, timeout=int(settings.api_timeout_seconds))
    return _client


def parse_kline_rows(rows: list, bar_seconds: int, now: datetime | None = None) -> List[Candle]:
    """Turn Bybit kline rows (newest first) into candles, oldest first.

    A row counts as confirmed once its bucket has closed; the newest row is
    normally still forming.
    """
    now = now or datetime.now(timezone.utc)
    candles: List[Candle] = []
    for row in reversed(rows or []):
        try:
            start_ms, open_, high, low, close, volume = row[:6]
            turnover = row[6] if len(row) > 6 else 0
            closed_at_ms = int(start_ms) + bar_seconds * 1000
            candles.append(Candle.from_millis(
                start_ms, open_, high, low, close, volume, turnover,
                confirmed=closed_at_ms <= now.timestamp() * 1000,
            ))
        except (ValueError, TypeError) as e:
            logger.debug("[BYBIT-FETCH] Skipping invalid kline row %s: %s", row, e)
    return validate_candles(candles)


def fetch_history(
    symbol: str,
    interval: str,
    limit: int,
    max_retries: int = 3,
    client: HTTP | None = None,
) -> List[Candle]:
    """
    Fetch the last ``limit`` klines for a linear symbol.
    Returns oldest→newest candles; empty on failure.
    """
    client = client or _get_client()
    limit = max(1, min(limit, _MAX_CANDLES))
    for attempt in range(max_retries):
        try:
            _bucket.acquire()
            resp = client.get_kline(category="linear", symbol=symbol, interval=interval, limit=limit)
            rows = (resp or {}).get("result", {}).get("list", [])
            candles = parse_kline_rows(rows, interval_seconds(interval))
            logger.debug("[BYBIT-FETCH] %s %s: %d candles", symbol, interval, len(candles))
            return candles
        except InvalidRequestError as e:
            # Bad symbol/interval; retrying will not help
            logger.error("[BYBIT-FETCH] %s %s rejected: %s", symbol, interval, e)
            return []
        except (FailedRequestError, ConnectionError, TimeoutError) as e:
            if attempt < max_retries - 1:
                time.sleep(min(10, 2 ** attempt))
                continue
            logger.warning("[BYBIT-FETCH] %s %s failed after %d attempts: %s", symbol, interval, max_retries, e)
    return []


async def fetch_history_async(symbol: str, interval: str, limit: int) -> List[Candle]:
    """``fetch_history`` off the event loop."""
    return await asyncio.to_thread(fetch_history, symbol, interval, limit)
