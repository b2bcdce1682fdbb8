"""Validated shapes of the Bybit v5 responses the bot relies on.

Bybit encodes numbers as strings and uses "" for unset values, so numeric
fields are coerced before use. Unknown fields are ignored.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models.position import Side


def _blank_to_zero(value):
    if value is None or value == "":
        return 0.0
    return value


class _VenueModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class OrderStatus(str, Enum):
    NEW = "New"
    PARTIALLY_FILLED = "PartiallyFilled"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    PARTIALLY_FILLED_CANCELED = "PartiallyFilledCanceled"
    REJECTED = "Rejected"
    DEACTIVATED = "Deactivated"
    UNTRIGGERED = "Untriggered"
    TRIGGERED = "Triggered"
    UNKNOWN = "Unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

    @property
    def is_terminal_unfilled(self) -> bool:
        return self in (
            OrderStatus.CANCELLED,
            OrderStatus.PARTIALLY_FILLED_CANCELED,
            OrderStatus.REJECTED,
            OrderStatus.DEACTIVATED,
        )


class VenuePosition(_VenueModel):
    """One entry of ``/v5/position/list``."""
    symbol: str
    side: str = ""
    size: float = 0.0
    avg_price: float = Field(default=0.0, alias="avgPrice")
    mark_price: float = Field(default=0.0, alias="markPrice")
    take_profit: float = Field(default=0.0, alias="takeProfit")
    stop_loss: float = Field(default=0.0, alias="stopLoss")
    unrealised_pnl: float = Field(default=0.0, alias="unrealisedPnl")
    liq_price: float = Field(default=0.0, alias="liqPrice")
    leverage: float = 0.0

    @field_validator(
        "size", "avg_price", "mark_price", "take_profit", "stop_loss",
        "unrealised_pnl", "liq_price", "leverage",
        mode="before",
    )
    @classmethod
    def _numbers(cls, value):
        return _blank_to_zero(value)

    @property
    def is_open(self) -> bool:
        return self.size > 0 and self.side in ("Buy", "Sell")

    @property
    def position_side(self) -> Optional[Side]:
        if not self.is_open:
            return None
        return Side(self.side)

    @property
    def has_take_profit(self) -> bool:
        return self.take_profit > 0

    @property
    def has_stop_loss(self) -> bool:
        return self.stop_loss > 0


class WalletCoin(_VenueModel):
    """One coin of ``/v5/account/wallet-balance``."""
    coin: str
    wallet_balance: float = Field(default=0.0, alias="walletBalance")
    available_to_withdraw: float = Field(default=0.0, alias="availableToWithdraw")
    equity: float = 0.0

    @field_validator("wallet_balance", "available_to_withdraw", "equity", mode="before")
    @classmethod
    def _numbers(cls, value):
        return _blank_to_zero(value)

    def usable(self, account_type: str) -> float:
        # Unified accounts report availableToWithdraw inconsistently
        if account_type == "UNIFIED":
            return self.wallet_balance
        return self.available_to_withdraw


class OrderInfo(_VenueModel):
    """One entry of the realtime or history order lists."""
    order_id: str = Field(alias="orderId")
    order_status: OrderStatus = Field(default=OrderStatus.UNKNOWN, alias="orderStatus")
    side: str = ""
    qty: float = 0.0
    price: float = 0.0
    avg_price: float = Field(default=0.0, alias="avgPrice")
    cum_exec_qty: float = Field(default=0.0, alias="cumExecQty")
    reduce_only: bool = Field(default=False, alias="reduceOnly")
    order_type: str = Field(default="", alias="orderType")

    @field_validator("qty", "price", "avg_price", "cum_exec_qty", mode="before")
    @classmethod
    def _numbers(cls, value):
        return _blank_to_zero(value)

    @property
    def is_filled(self) -> bool:
        return self.order_status == OrderStatus.FILLED

    @property
    def fill_price(self) -> float:
        return self.avg_price or self.price


class Ticker(_VenueModel):
    symbol: str
    last_price: float = Field(alias="lastPrice")
    mark_price: float = Field(default=0.0, alias="markPrice")

    @field_validator("last_price", "mark_price", mode="before")
    @classmethod
    def _numbers(cls, value):
        return _blank_to_zero(value)

    @property
    def price(self) -> float:
        return self.mark_price or self.last_price


class InstrumentInfo(_VenueModel):
    """Lot size and leverage filters flattened from ``/v5/market/instruments-info``."""
    symbol: str
    qty_step: float = Field(gt=0)
    min_order_qty: float = Field(gt=0)
    max_leverage: float = Field(default=1.0, gt=0)
    tick_size: float = 0.0

    @classmethod
    def from_bybit(cls, raw: dict) -> "InstrumentInfo":
        lot = raw.get("lotSizeFilter") or {}
        lev = raw.get("leverageFilter") or {}
        price = raw.get("priceFilter") or {}
        return cls.model_validate({
            "symbol": raw.get("symbol", ""),
            "qty_step": lot.get("qtyStep"),
            "min_order_qty": lot.get("minOrderQty"),
            "max_leverage": lev.get("maxLeverage") or 1,
            "tick_size": price.get("tickSize") or 0,
        })
