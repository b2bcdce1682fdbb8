"""Volume-spike signal record."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from core.models.candle import Candle


@dataclass
class VolumeSignal:
    """Candidate entry waiting for a confirming lower-volume bar."""
    candle: Candle
    is_active: bool = True
    waiting_for_lower_volume: bool = True

    @property
    def timestamp(self) -> datetime:
        return self.candle.timestamp

    @property
    def volume(self) -> float:
        return self.candle.volume

    def age(self, now: datetime, interval: timedelta) -> timedelta:
        """Age measured from the close of the signal bar."""
        return now - self.candle.close_time(interval)

    def is_stale(self, now: datetime, interval: timedelta, max_age: timedelta) -> bool:
        return self.age(now, interval) > max_age
