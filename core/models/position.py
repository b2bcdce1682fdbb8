"""Position and side enums."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Side(Enum):
    BUY = "Buy"
    SELL = "Sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @property
    def sign(self) -> int:
        """+1 for longs, -1 for shorts."""
        return 1 if self is Side.BUY else -1


class PositionState(Enum):
    PENDING = "pending"    # Order submitted, fill not yet confirmed
    OPEN = "open"          # Filled, TP/SL applied
    TRAILING = "trailing"  # Trailing stop active, TP removed


@dataclass
class ActivePosition:
    """The single position the bot believes it holds."""
    side: Side
    entry_price: float
    entry_time: datetime
    order_id: Optional[str] = None
    qty: float = 0.0
    state: PositionState = PositionState.PENDING
    is_trailing_active: bool = False
    last_trailing_stop_price: Optional[float] = None
    planned_take_profit: Optional[float] = None
    planned_stop_loss: Optional[float] = None
    execution_notification_sent: bool = False
    adopted: bool = False
    levels_applied: bool = True  # False until planned TP/SL are confirmed on the venue

    @property
    def is_pending(self) -> bool:
        return self.state == PositionState.PENDING

    @property
    def current_stop(self) -> Optional[float]:
        """Stop the ratchet compares against."""
        if self.last_trailing_stop_price is not None:
            return self.last_trailing_stop_price
        return self.planned_stop_loss

    def profit_points(self, price: float) -> float:
        return (price - self.entry_price) * self.side.sign

    def is_more_favorable(self, new_stop: float, old_stop: Optional[float]) -> bool:
        """True when ``new_stop`` is strictly tighter in the trade's favour."""
        if old_stop is None:
            return True
        if self.side == Side.BUY:
            return new_stop > old_stop
        return new_stop < old_stop

    def mark_filled(self, fill_price: Optional[float] = None, qty: Optional[float] = None):
        if fill_price:
            self.entry_price = fill_price
        if qty:
            self.qty = qty
        if self.state == PositionState.PENDING:
            self.state = PositionState.OPEN

    def activate_trailing(self, stop_price: float):
        self.is_trailing_active = True
        self.last_trailing_stop_price = stop_price
        self.state = PositionState.TRAILING
