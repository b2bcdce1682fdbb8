"""Mutable lifecycle state owned by the position lifecycle manager."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from core.models import ActivePosition, VolumeSignal


@dataclass
class LifecycleState:
    """Everything the bot believes between events.

    Only the lifecycle manager and the components it owns mutate this. The
    venue stays the source of truth for positions; ``position`` is a cache
    the reconciler keeps honest.
    """
    signal: Optional[VolumeSignal] = None
    position: Optional[ActivePosition] = None

    # Held for the whole open attempt; overlapping triggers become no-ops
    is_opening_position: bool = False

    used_signal_timestamps: set[datetime] = field(default_factory=set)
    last_processed_candle: Optional[datetime] = None

    last_signal_alert_at: Optional[datetime] = None
    last_trailing_alert_at: Optional[datetime] = None
    last_trailing_alert_stop: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return self.position is not None

    @property
    def has_active_signal(self) -> bool:
        return self.signal is not None and self.signal.is_active

    def set_signal(self, signal: VolumeSignal) -> None:
        self.signal = signal
        self.used_signal_timestamps.add(signal.timestamp)

    def clear_signal(self) -> Optional[VolumeSignal]:
        signal, self.signal = self.signal, None
        return signal

    def clear_position(self) -> Optional[ActivePosition]:
        position, self.position = self.position, None
        self.last_trailing_alert_at = None
        self.last_trailing_alert_stop = None
        return position

    def forget_signals_before(self, cutoff: datetime) -> None:
        """Drop used-signal markers older than ``cutoff`` so the set stays small."""
        self.used_signal_timestamps = {ts for ts in self.used_signal_timestamps if ts >= cutoff}
