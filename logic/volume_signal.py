"""
Volume-spike signal detection.

A confirmed bar whose volume reaches the threshold becomes the active signal.
A later bar with even more volume replaces it (strongest bar wins, no
averaging). While a position is open no signals are raised; an anomalous
volume bar after entry instead asks for the position to be closed.

The detector only decides. The lifecycle manager applies the decision.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.config import Settings
from core.helpers import is_in_open_bucket
from core.models import Candle
from core.state import LifecycleState


class SignalAction(Enum):
    IGNORE = "ignore"
    RAISE = "raise"
    REPLACE = "replace"
    DANGER_CLOSE = "danger_close"


@dataclass(frozen=True)
class SignalDecision:
    action: SignalAction
    reason: str = ""
    volume_ratio: float = 0.0

    @property
    def changes_signal(self) -> bool:
        return self.action in (SignalAction.RAISE, SignalAction.REPLACE)


class SignalDetector:
    """Stateless per call; reads ``LifecycleState`` but never mutates it."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def evaluate(
        self,
        completed: Candle,
        previous: Optional[Candle],
        state: LifecycleState,
        now: datetime,
    ) -> SignalDecision:
        interval = self.settings.interval

        if not completed.confirmed:
            return SignalDecision(SignalAction.IGNORE, "candle not confirmed")
        if previous is not None and not previous.confirmed:
            return SignalDecision(SignalAction.IGNORE, "previous candle not confirmed")
        if is_in_open_bucket(completed, now, interval):
            return SignalDecision(SignalAction.IGNORE, "candle in open bucket")

        ratio = completed.volume / previous.volume if previous is not None and previous.volume > 0 else 0.0

        if state.position is not None:
            closed_after_entry = completed.close_time(interval) > state.position.entry_time
            if completed.volume >= self.settings.danger_volume_threshold and closed_after_entry:
                return SignalDecision(
                    SignalAction.DANGER_CLOSE,
                    f"volume {completed.volume:.0f} >= danger {self.settings.danger_volume_threshold:.0f}",
                    ratio,
                )
            return SignalDecision(SignalAction.IGNORE, "position open", ratio)

        age = now - completed.close_time(interval)
        if age > self.settings.signal_max_age:
            return SignalDecision(SignalAction.IGNORE, f"candle too old ({age})", ratio)

        signal = state.signal if state.has_active_signal else None
        if signal is not None:
            if completed.timestamp <= signal.timestamp:
                return SignalDecision(SignalAction.IGNORE, "not newer than signal", ratio)
            if completed.volume > signal.volume:
                return SignalDecision(
                    SignalAction.REPLACE,
                    f"volume {completed.volume:.0f} > signal {signal.volume:.0f}",
                    ratio,
                )
            return SignalDecision(SignalAction.IGNORE, "signal already active", ratio)

        if completed.volume < self.settings.volume_threshold:
            return SignalDecision(SignalAction.IGNORE, "below threshold", ratio)
        if completed.timestamp in state.used_signal_timestamps:
            return SignalDecision(SignalAction.IGNORE, "candle already used as signal", ratio)
        return SignalDecision(
            SignalAction.RAISE,
            f"volume {completed.volume:.0f} >= threshold {self.settings.volume_threshold:.0f}",
            ratio,
        )
