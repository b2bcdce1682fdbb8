"""Typed data models for the volume bot."""

from core.models.candle import Candle, CandleHistory
from core.models.position import ActivePosition, PositionState, Side
from core.models.signal import VolumeSignal
from core.models.trade_result import TradeResult
from core.models.venue import (
    InstrumentInfo,
    OrderInfo,
    OrderStatus,
    Ticker,
    VenuePosition,
    WalletCoin,
)

__all__ = [
    "ActivePosition",
    "Candle",
    "CandleHistory",
    "InstrumentInfo",
    "OrderInfo",
    "OrderStatus",
    "PositionState",
    "Side",
    "Ticker",
    "TradeResult",
    "VenuePosition",
    "VolumeSignal",
    "WalletCoin",
]
