"""Closed position result model."""

from dataclasses import dataclass
from datetime import datetime

from core.models.position import Side


@dataclass
class TradeResult:
    """Closed position summary used for notifications and the journal."""
    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    entry_time: datetime
    exit_time: datetime
    qty: float
    exit_reason: str  # "external", "danger", "cancelled"

    @property
    def pnl_points(self) -> float:
        return (self.exit_price - self.entry_price) * self.side.sign

    @property
    def pnl_pct(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return self.pnl_points / self.entry_price * 100

    @property
    def pnl_usd(self) -> float:
        return self.pnl_points * self.qty

    @property
    def hold_minutes(self) -> float:
        return (self.exit_time - self.entry_time).total_seconds() / 60
