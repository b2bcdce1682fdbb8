"""Helpers to validate REST candle responses before buffering."""

from typing import List

from core.models import Candle


def validate_candles(candles: List[Candle]) -> List[Candle]:
    """Return a de-duplicated, time-ordered list; later entries win."""
    if not candles:
        return []
    by_ts = {}
    for candle in candles:
        if candle.high <= 0 or candle.low <= 0:
            continue
        by_ts[candle.timestamp] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]
