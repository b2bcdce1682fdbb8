"""Collectors for streaming market data."""

from datafeeds.collectors.candle_collector import CandleCollector

__all__ = [
    "CandleCollector",
]
