"""Bybit v5 linear-perpetual venue adapter.

pybit's HTTP client is synchronous; every call runs in a worker thread under
``asyncio.wait_for`` so a hung request never blocks the event loop. All
methods return ``VenueResult`` and never raise.
"""

import asyncio
from typing import Any, Optional

from pybit.unified_trading import HTTP

from core.config import Settings
from core.helpers import format_number
from core.logging_utils import get_logger
from core.models import (
    InstrumentInfo,
    OrderInfo,
    Side,
    Ticker,
    VenuePosition,
    WalletCoin,
)
from execution.order_utils import (
    RateLimiter,
    VenueErrorKind,
    VenueResult,
    classify_error,
)

logger = get_logger(__name__)

CATEGORY = "linear"


class BybitVenue:
    """Thin async wrapper over ``pybit.unified_trading.HTTP``."""

    def __init__(self, settings: Settings, client: Optional[HTTP] = None):
        self.settings = settings
        self._client = client or HTTP(
            testnet=settings.bybit_testnet,
            api_key=settings.bybit_api_key or None,
            api_secret=settings.bybit_api_secret or None,
            recv_window=settings.api_recv_window,
            timeout=int(settings.api_timeout_seconds),
            max_retries=1,
        )
        self._limiter = RateLimiter()
        self._instrument: Optional[InstrumentInfo] = None
        self.calls = 0
        self.errors = 0

    async def _call(self, method: str, *, private: bool = True, **params) -> VenueResult[dict]:
        if private and not self.settings.is_configured:
            return VenueResult.failure(VenueErrorKind.UNAVAILABLE, "API credentials not configured")

        await self._limiter.async_wait_if_needed()
        self.calls += 1
        func = getattr(self._client, method)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(func, **params),
                timeout=self.settings.api_timeout_seconds,
            )
        except Exception as e:
            error = classify_error(e)
            if error.kind != VenueErrorKind.NOT_MODIFIED:
                self.errors += 1
                logger.warning("[VENUE] %s failed: %s", method, error)
            return VenueResult(error=error)

        if not isinstance(response, dict):
            return VenueResult.failure(
                VenueErrorKind.INVALID_RESPONSE, f"{method} returned {type(response).__name__}"
            )
        return VenueResult.success(response.get("result") or {})

    @staticmethod
    def _parse(result: VenueResult, parser) -> VenueResult:
        """Apply ``parser`` to a successful payload, turning schema errors into results."""
        if not result.ok:
            return result
        try:
            return VenueResult.success(parser(result.value))
        except Exception as e:
            error = classify_error(e)
            logger.warning("[VENUE] Unexpected response shape: %s", error)
            return VenueResult(error=error)

    async def get_open_position(self, symbol: str) -> VenueResult[Optional[VenuePosition]]:
        result = await self._call("get_positions", category=CATEGORY, symbol=symbol)

        def parse(payload: dict) -> Optional[VenuePosition]:
            for raw in payload.get("list", []):
                position = VenuePosition.model_validate(raw)
                if position.is_open:
                    return position
            return None

        return self._parse(result, parse)

    async def get_balance(self, account_type: str, coin: str = "USDT") -> VenueResult[Optional[WalletCoin]]:
        result = await self._call("get_wallet_balance", accountType=account_type, coin=coin)

        def parse(payload: dict) -> Optional[WalletCoin]:
            for account in payload.get("list", []):
                for raw in account.get("coin", []):
                    if raw.get("coin") == coin:
                        return WalletCoin.model_validate(raw)
            return None

        return self._parse(result, parse)

    async def set_leverage(self, symbol: str, leverage: float) -> VenueResult[None]:
        value = format_number(leverage)
        result = await self._call(
            "set_leverage",
            category=CATEGORY,
            symbol=symbol,
            buyLeverage=value,
            sellLeverage=value,
        )
        return result if not result.ok else VenueResult.success(None)

    async def submit_limit_order(self, symbol: str, side: Side, qty: float, price: float) -> VenueResult[str]:
        result = await self._call(
            "place_order",
            category=CATEGORY,
            symbol=symbol,
            side=side.value,
            orderType="Limit",
            qty=format_number(qty),
            price=format_number(price),
            timeInForce="GTC",
            positionIdx=0,
        )
        return self._parse(result, lambda payload: str(payload["orderId"]))

    async def submit_reduce_only_order(
        self,
        symbol: str,
        side: Side,
        qty: float,
        price: Optional[float] = None,
    ) -> VenueResult[str]:
        """Market order by default; pass ``price`` for a reduce-only limit."""
        params: dict[str, Any] = {
            "category": CATEGORY,
            "symbol": symbol,
            "side": side.value,
            "orderType": "Market" if price is None else "Limit",
            "qty": format_number(qty),
            "reduceOnly": True,
            "positionIdx": 0,
        }
        if price is not None:
            params["price"] = format_number(price)
            params["timeInForce"] = "GTC"
        result = await self._call("place_order", **params)
        return self._parse(result, lambda payload: str(payload["orderId"]))

    async def get_order_status(self, symbol: str, order_id: str) -> VenueResult[Optional[OrderInfo]]:
        """Look in the realtime list first, then in order history."""

        def first(payload: dict) -> Optional[OrderInfo]:
            items = payload.get("list", [])
            return OrderInfo.model_validate(items[0]) if items else None

        active = self._parse(
            await self._call("get_open_orders", category=CATEGORY, symbol=symbol, orderId=order_id),
            first,
        )
        if not active.ok or active.value is not None:
            return active
        return self._parse(
            await self._call("get_order_history", category=CATEGORY, symbol=symbol, orderId=order_id),
            first,
        )

    async def set_stop_levels(
        self,
        symbol: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> VenueResult[None]:
        """Set TP and/or SL in one call. ``None`` leaves a level unchanged, 0 clears it."""
        params: dict[str, Any] = {
            "category": CATEGORY,
            "symbol": symbol,
            "tpslMode": "Full",
            "positionIdx": 0,
        }
        if take_profit is not None:
            params["takeProfit"] = format_number(take_profit)
        if stop_loss is not None:
            params["stopLoss"] = format_number(stop_loss)
        result = await self._call("set_trading_stop", **params)
        return result if not result.ok else VenueResult.success(None)

    async def get_ticker(self, symbol: str) -> VenueResult[Ticker]:
        result = await self._call("get_tickers", private=False, category=CATEGORY, symbol=symbol)
        return self._parse(result, lambda payload: Ticker.model_validate(payload["list"][0]))

    async def get_instrument(self, symbol: str) -> VenueResult[InstrumentInfo]:
        """Lot/leverage filters; cached after the first success."""
        if self._instrument is not None and self._instrument.symbol == symbol:
            return VenueResult.success(self._instrument)
        result = await self._call("get_instruments_info", private=False, category=CATEGORY, symbol=symbol)
        parsed = self._parse(result, lambda payload: InstrumentInfo.from_bybit(payload["list"][0]))
        if parsed.ok:
            self._instrument = parsed.value
        return parsed

    async def get_active_orders(self, symbol: str) -> VenueResult[list[OrderInfo]]:
        result = await self._call("get_open_orders", category=CATEGORY, symbol=symbol)
        return self._parse(
            result,
            lambda payload: [OrderInfo.model_validate(raw) for raw in payload.get("list", [])],
        )

    async def cancel_order(self, symbol: str, order_id: str) -> VenueResult[None]:
        result = await self._call("cancel_order", category=CATEGORY, symbol=symbol, orderId=order_id)
        return result if not result.ok else VenueResult.success(None)
