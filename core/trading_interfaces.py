"""Collaborator interfaces for the venue, market data and notifications."""

from typing import Awaitable, Callable, Optional, Protocol

from core.alerts import AlertLevel
from core.models import (
    Candle,
    CandleHistory,
    InstrumentInfo,
    OrderInfo,
    Side,
    Ticker,
    VenuePosition,
    WalletCoin,
)
from execution.order_utils import VenueResult


class IVenue(Protocol):
    """Trading API for a single linear instrument. Never raises."""

    async def get_open_position(self, symbol: str) -> VenueResult[Optional[VenuePosition]]:
        ...

    async def get_balance(self, account_type: str, coin: str = "USDT") -> VenueResult[Optional[WalletCoin]]:
        ...

    async def set_leverage(self, symbol: str, leverage: float) -> VenueResult[None]:
        ...

    async def submit_limit_order(self, symbol: str, side: Side, qty: float, price: float) -> VenueResult[str]:
        ...

    async def submit_reduce_only_order(self, symbol: str, side: Side, qty: float) -> VenueResult[str]:
        ...

    async def get_order_status(self, symbol: str, order_id: str) -> VenueResult[Optional[OrderInfo]]:
        ...

    async def set_stop_levels(
        self,
        symbol: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> VenueResult[None]:
        ...

    async def get_ticker(self, symbol: str) -> VenueResult[Ticker]:
        ...

    async def get_instrument(self, symbol: str) -> VenueResult[InstrumentInfo]:
        ...

    async def get_active_orders(self, symbol: str) -> VenueResult[list[OrderInfo]]:
        ...

    async def cancel_order(self, symbol: str, order_id: str) -> VenueResult[None]:
        ...


class IMarketData(Protocol):
    """Historical and streaming candles."""

    async def get_historical_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        ...

    async def stream_candles(self, on_candle: Callable[[Candle, CandleHistory], Awaitable[object]]) -> None:
        ...


class INotifier(Protocol):
    """Outbound human-readable alerts; fire-and-forget."""

    def notify(self, message: str, level: AlertLevel = AlertLevel.INFO) -> None:
        ...
