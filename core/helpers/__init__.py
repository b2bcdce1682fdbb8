"""Shared helper utilities."""

from .rest_validation import validate_candles
from .timeframes import is_in_open_bucket
from .lots import floor_to_step, format_number, round_to_step

__all__ = [
    "validate_candles",
    "is_in_open_bucket",
    "floor_to_step",
    "format_number",
    "round_to_step",
]
