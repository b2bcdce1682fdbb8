"""Lot-size and tick-size rounding."""

import math


def format_number(value: float) -> str:
    """Bybit wants plain decimal strings, never exponent notation."""
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"


def _decimals(step: float) -> int:
    text = format_number(step)
    return len(text.split(".")[1]) if "." in text else 0


def floor_to_step(value: float, step: float) -> float:
    """Round ``value`` down to a multiple of ``step`` without float drift."""
    if step <= 0:
        return value
    steps = math.floor(value / step + 1e-9)
    return round(steps * step, _decimals(step))


def round_to_step(value: float, step: float) -> float:
    """Round ``value`` to the nearest multiple of ``step``."""
    if step <= 0:
        return value
    return round(round(value / step) * step, _decimals(step))
