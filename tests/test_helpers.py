"""Fakes and builders shared by the lifecycle tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.models import (
    Candle,
    CandleHistory,
    InstrumentInfo,
    OrderInfo,
    OrderStatus,
    Side,
    Ticker,
    VenuePosition,
    WalletCoin,
)
from execution.order_utils import VenueErrorKind, VenueResult

T0 = datetime(2026, 1, 5, 0, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)

# Calls that change something on the venue
ORDER_CALLS = {
    "set_leverage",
    "submit_limit_order",
    "submit_reduce_only_order",
    "set_stop_levels",
    "cancel_order",
}


def make_settings(**overrides) -> Settings:
    values = dict(
        bybit_api_key="key",
        bybit_api_secret="secret",
        telegram_bot_token="",
        telegram_chat_id="",
        trading_mode="live",
        symbol="SOLUSDT",
        candle_interval="60",
        trade_size_usd=1000.0,
        leverage=10,
        take_profit_points=3.0,
        stop_loss_points=3.0,
        order_price_offset=0.05,
        trailing_activation_points=1.0,
        trailing_distance=2.0,
        volume_threshold=500.0,
        danger_volume_threshold=5000.0,
        signal_max_age_hours=2.0,
        signal_alert_cooldown_seconds=0.0,
        execution_check_delays=[0.01],
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def bar(
    index: int,
    volume: float,
    open_: float = 100.0,
    close: Optional[float] = None,
    high: Optional[float] = None,
    low: Optional[float] = None,
    confirmed: bool = True,
) -> Candle:
    """Hourly candle ``index`` hours after T0. Green unless ``close`` < ``open_``."""
    close = open_ + 1.0 if close is None else close
    return Candle(
        timestamp=T0 + index * HOUR,
        open=open_,
        high=high if high is not None else max(open_, close) + 0.5,
        low=low if low is not None else min(open_, close) - 0.5,
        close=close,
        volume=volume,
        confirmed=confirmed,
    )


def history_of(*candles: Candle, max_size: int = 6) -> CandleHistory:
    history = CandleHistory(max_size=max_size)
    history.extend(list(candles))
    return history


def after_close(index: int, minutes: int = 1) -> datetime:
    """A moment just after candle ``index`` closed."""
    return T0 + (index + 1) * HOUR + timedelta(minutes=minutes)


class Clock:
    """Settable clock for components that read the time themselves."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, AlertLevel]] = []

    def notify(self, message: str, level: AlertLevel = AlertLevel.INFO) -> None:
        self.messages.append((message, level))

    def containing(self, text: str) -> list[str]:
        return [m for m, _ in self.messages if text in m]


class FakeVenue:
    """In-memory Bybit stand-in. Records every call."""

    def __init__(self, price: float = 100.0, balance: float = 10_000.0):
        self.position: Optional[VenuePosition] = None
        self.balances = {
            "CONTRACT": WalletCoin(coin="USDT", walletBalance=balance, availableToWithdraw=balance),
        }
        self.instrument = InstrumentInfo(
            symbol="SOLUSDT", qty_step=0.1, min_order_qty=0.1, max_leverage=50, tick_size=0.01
        )
        self.price = price
        self.orders: dict[str, OrderInfo] = {}
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, VenueResult] = {}
        self.submit_delay = 0.0
        self._next_id = 0

    # -- helpers -----------------------------------------------------------

    def _record(self, name: str, **kwargs) -> Optional[VenueResult]:
        self.calls.append((name, kwargs))
        return self.failures.get(name)

    def calls_named(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    @property
    def order_calls(self) -> list[tuple[str, dict]]:
        return [(name, kwargs) for name, kwargs in self.calls if name in ORDER_CALLS]

    def open_position(self, side: str, size: float, avg_price: float, mark: Optional[float] = None, tp: float = 0.0, sl: float = 0.0):
        self.position = VenuePosition(
            symbol="SOLUSDT", side=side, size=size, avgPrice=avg_price,
            markPrice=mark if mark is not None else avg_price,
            takeProfit=tp, stopLoss=sl,
        )

    def set_order_status(self, order_id: str, status: OrderStatus, avg_price: float = 0.0, cum_exec_qty: float = 0.0):
        order = self.orders[order_id]
        self.orders[order_id] = order.model_copy(update={
            "order_status": status,
            "avg_price": avg_price,
            "cum_exec_qty": cum_exec_qty,
        })

    # -- IVenue --------------------------------------------------------------

    async def get_open_position(self, symbol):
        failure = self._record("get_open_position", symbol=symbol)
        return failure or VenueResult.success(self.position)

    async def get_balance(self, account_type, coin="USDT"):
        failure = self._record("get_balance", account_type=account_type)
        return failure or VenueResult.success(self.balances.get(account_type))

    async def set_leverage(self, symbol, leverage):
        failure = self._record("set_leverage", leverage=leverage)
        return failure or VenueResult.success(None)

    async def submit_limit_order(self, symbol, side: Side, qty, price):
        failure = self._record("submit_limit_order", side=side, qty=qty, price=price)
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if failure:
            return failure
        self._next_id += 1
        order_id = f"order-{self._next_id}"
        self.orders[order_id] = OrderInfo(
            orderId=order_id, orderStatus="New", side=side.value, qty=qty, price=price, orderType="Limit"
        )
        return VenueResult.success(order_id)

    async def submit_reduce_only_order(self, symbol, side: Side, qty, price=None):
        failure = self._record("submit_reduce_only_order", side=side, qty=qty, price=price)
        return failure or VenueResult.success("close-1")

    async def get_order_status(self, symbol, order_id):
        failure = self._record("get_order_status", order_id=order_id)
        return failure or VenueResult.success(self.orders.get(order_id))

    async def set_stop_levels(self, symbol, take_profit=None, stop_loss=None):
        failure = self._record("set_stop_levels", take_profit=take_profit, stop_loss=stop_loss)
        if failure:
            return failure
        if self.position is not None:
            update = {}
            if take_profit is not None:
                update["take_profit"] = take_profit
            if stop_loss is not None:
                update["stop_loss"] = stop_loss
            self.position = self.position.model_copy(update=update)
        return VenueResult.success(None)

    async def get_ticker(self, symbol):
        failure = self._record("get_ticker")
        return failure or VenueResult.success(
            Ticker(symbol=symbol, lastPrice=self.price, markPrice=self.price)
        )

    async def get_instrument(self, symbol):
        failure = self._record("get_instrument")
        return failure or VenueResult.success(self.instrument)

    async def get_active_orders(self, symbol):
        failure = self._record("get_active_orders")
        if failure:
            return failure
        active = [o for o in self.orders.values() if o.order_status in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED, OrderStatus.UNTRIGGERED)]
        return VenueResult.success(active)

    async def cancel_order(self, symbol, order_id):
        failure = self._record("cancel_order", order_id=order_id)
        if failure:
            return failure
        if order_id in self.orders:
            self.set_order_status(order_id, OrderStatus.CANCELLED)
        return VenueResult.success(None)


def transient(message: str = "timeout") -> VenueResult:
    return VenueResult.failure(VenueErrorKind.TRANSIENT, message)


def rejected(message: str = "rejected", code: int = 110017) -> VenueResult:
    return VenueResult.failure(VenueErrorKind.REJECTED, message, code)
