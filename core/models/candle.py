"""Candle primitives and rolling history buffer."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """OHLCV bar. ``confirmed`` is False while the bar is still forming."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    turnover: float = 0.0
    confirmed: bool = False

    def __post_init__(self):
        if self.timestamp.tzinfo is None:
            # Bar start is always UTC
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        if self.high < self.low:
            raise ValueError(f"high {self.high} below low {self.low}")
        if self.volume < 0:
            raise ValueError(f"negative volume {self.volume}")

    @property
    def is_green(self) -> bool:
        return self.close >= self.open

    @property
    def range(self) -> float:
        return self.high - self.low

    def close_time(self, interval: timedelta) -> datetime:
        return self.timestamp + interval

    @classmethod
    def from_millis(
        cls,
        start_ms,
        open_,
        high,
        low,
        close,
        volume,
        turnover=0.0,
        confirmed: bool = False,
    ) -> "Candle":
        """Build a candle from Bybit's string/ms encoded fields."""
        return cls(
            timestamp=datetime.fromtimestamp(int(start_ms) / 1000, tz=timezone.utc),
            open=float(open_),
            high=float(high),
            low=float(low),
            close=float(close),
            volume=float(volume),
            turnover=float(turnover or 0),
            confirmed=bool(confirmed),
        )


@dataclass
class CandleHistory:
    """Rolling, timestamp-ordered buffer for a single symbol/interval.

    Updates for the still-forming bar replace the stored bar in place, so the
    buffer holds at most one candle per timestamp.
    """
    max_size: int = 6
    candles: list[Candle] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.candles)

    def upsert(self, candle: Candle) -> None:
        for i, existing in enumerate(self.candles):
            if existing.timestamp == candle.timestamp:
                # A confirmed bar is never downgraded by a late forming update
                if existing.confirmed and not candle.confirmed:
                    return
                self.candles[i] = candle
                return
        self.candles.append(candle)
        self.candles.sort(key=lambda c: c.timestamp)
        if len(self.candles) > self.max_size:
            self.candles = self.candles[-self.max_size:]

    def extend(self, candles: list[Candle]) -> None:
        for candle in candles:
            self.upsert(candle)

    def find(self, timestamp: datetime) -> Optional[Candle]:
        for candle in self.candles:
            if candle.timestamp == timestamp:
                return candle
        return None

    def previous(self, candle: Candle) -> Optional[Candle]:
        """Return the bar immediately preceding ``candle`` in the buffer."""
        earlier = [c for c in self.candles if c.timestamp < candle.timestamp]
        return earlier[-1] if earlier else None

    def last_confirmed(self) -> Optional[Candle]:
        for candle in reversed(self.candles):
            if candle.confirmed:
                return candle
        return None

    @property
    def latest(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    def snapshot(self) -> list[Candle]:
        return list(self.candles)
