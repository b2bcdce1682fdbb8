"""Bar-bucket arithmetic."""

from datetime import datetime, timedelta

from core.models import Candle


def is_in_open_bucket(candle: Candle, now: datetime, interval: timedelta) -> bool:
    """True when the candle belongs to the bar that has not closed yet.

    Guards against a feed that flags a bar confirmed before our clock agrees.
    """
    return candle.close_time(interval) > now
