"""Entry confirmation: enter on the first later bar with no more volume than the signal bar."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.config import Settings
from core.helpers import is_in_open_bucket
from core.models import Candle, CandleHistory, VolumeSignal


class EntryAction(Enum):
    SKIP = "skip"
    ENTER = "enter"
    CLEAR_SIGNAL = "clear_signal"


@dataclass(frozen=True)
class EntryDecision:
    action: EntryAction
    reason: str = ""
    signal_candle: Optional[Candle] = None
    confirming_candle: Optional[Candle] = None


class EntryTrigger:
    def __init__(self, settings: Settings):
        self.settings = settings

    def evaluate(
        self,
        completed: Candle,
        history: CandleHistory,
        signal: Optional[VolumeSignal],
        now: datetime,
    ) -> EntryDecision:
        if signal is None or not signal.is_active or not signal.waiting_for_lower_volume:
            return EntryDecision(EntryAction.SKIP, "no active signal")
        if completed.timestamp <= signal.timestamp:
            # The signal bar can never confirm itself
            return EntryDecision(EntryAction.SKIP, "candle not after signal")
        if not completed.confirmed:
            return EntryDecision(EntryAction.SKIP, "candle not confirmed")
        if is_in_open_bucket(completed, now, self.settings.interval):
            return EntryDecision(EntryAction.SKIP, "candle in open bucket")

        signal_candle = history.find(signal.timestamp)
        confirming = history.find(completed.timestamp)
        if signal_candle is None or confirming is None:
            missing = "signal" if signal_candle is None else "confirming"
            return EntryDecision(EntryAction.CLEAR_SIGNAL, f"{missing} candle missing from history")

        if signal.is_stale(now, self.settings.interval, self.settings.signal_max_age):
            return EntryDecision(EntryAction.CLEAR_SIGNAL, "signal expired")

        if completed.volume > signal.volume:
            return EntryDecision(EntryAction.SKIP, "volume above signal")

        return EntryDecision(
            EntryAction.ENTER,
            f"volume {completed.volume:.0f} <= signal {signal.volume:.0f}",
            signal_candle=signal_candle,
            confirming_candle=completed,
        )
