"""Position opener: preflight checks, order parameters, limit order submission.

Direction follows volume spread analysis: a volume spike on a rising bar reads
as distribution (go short), on a falling bar as absorption (go long).

The opener never trusts the cache for preconditions. It asks the venue for an
existing position and balance, then submits one GTC limit order and records a
PENDING position whose TP/SL are applied once the fill is confirmed (Bybit
rejects trading stops on a position that does not exist yet).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.helpers import floor_to_step, round_to_step
from core.logger import log_entry, log_order, log_position
from core.logging_utils import get_logger
from core.models import ActivePosition, Candle, CandleHistory, PositionState, Side, VolumeSignal
from core.notifications import NotificationFormatter
from core.state import LifecycleState
from core.trading_interfaces import INotifier, IVenue
from execution.order_utils import calculate_limit_price
from execution.reconciler import PositionReconciler

logger = get_logger(__name__)

ACCOUNT_TYPES = ("CONTRACT", "UNIFIED")


class OpenStatus(Enum):
    OPENED = "opened"
    SIGNAL_ONLY = "signal_only"
    BUSY = "busy"
    POSITION_EXISTS = "position_exists"
    ADOPTED_EXISTING = "adopted_existing"
    STALE_SIGNAL = "stale_signal"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    DIRECTION_MISMATCH = "direction_mismatch"
    INVALID_LEVELS = "invalid_levels"
    VENUE_ERROR = "venue_error"
    ORDER_REJECTED = "order_rejected"


@dataclass(frozen=True)
class OpenOutcome:
    status: OpenStatus
    reason: str = ""
    position: Optional[ActivePosition] = None

    @property
    def opened(self) -> bool:
        return self.status == OpenStatus.OPENED


@dataclass(frozen=True)
class OrderPlan:
    side: Side
    qty: float
    price: float
    take_profit: float
    stop_loss: float
    leverage: float


def side_for(signal_candle: Candle) -> Side:
    return Side.SELL if signal_candle.is_green else Side.BUY


def verify_direction(signal_candle: Candle, side: Side) -> Optional[str]:
    """Independent re-check of the colour rule; returns an error or None."""
    rising = signal_candle.close >= signal_candle.open
    if rising and side != Side.SELL:
        return f"rising signal bar ({signal_candle.open} -> {signal_candle.close}) must short, got {side.value}"
    if not rising and side != Side.BUY:
        return f"falling signal bar ({signal_candle.open} -> {signal_candle.close}) must long, got {side.value}"
    return None


class PositionOpener:
    def __init__(
        self,
        settings: Settings,
        venue: IVenue,
        state: LifecycleState,
        notifier: INotifier,
        formatter: NotificationFormatter,
        reconciler: PositionReconciler,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.venue = venue
        self.state = state
        self.notifier = notifier
        self.formatter = formatter
        self.reconciler = reconciler
        self._now = clock or (lambda: datetime.now(timezone.utc))

    async def open(
        self,
        signal_candle: Candle,
        confirming_candle: Candle,
        history: Optional[CandleHistory] = None,
    ) -> OpenOutcome:
        if self.state.is_opening_position:
            logger.warning("[OPEN] Open already in progress, ignoring duplicate trigger")
            return OpenOutcome(OpenStatus.BUSY, "open already in progress")
        if self.state.position is not None:
            return OpenOutcome(OpenStatus.POSITION_EXISTS, "position already tracked")

        # Set before the first await; released on every exit path
        self.state.is_opening_position = True
        try:
            outcome = await self._open(signal_candle, confirming_candle, history)
        finally:
            self.state.is_opening_position = False

        log_entry({
            "event": "open_outcome",
            "symbol": self.settings.symbol,
            "status": outcome.status.value,
            "reason": outcome.reason,
            "signal_ts": signal_candle.timestamp,
            "confirming_ts": confirming_candle.timestamp,
        })
        if outcome.status not in (OpenStatus.OPENED, OpenStatus.SIGNAL_ONLY):
            logger.info("[OPEN] Aborted: %s (%s)", outcome.status.value, outcome.reason)
        return outcome

    async def _open(
        self,
        signal_candle: Candle,
        confirming_candle: Candle,
        history: Optional[CandleHistory],
    ) -> OpenOutcome:
        live = self.settings.is_live

        if live:
            existing = await self.venue.get_open_position(self.settings.symbol)
            if not existing.ok:
                return OpenOutcome(OpenStatus.VENUE_ERROR, f"position check failed: {existing.error}")
            if existing.value is not None:
                logger.warning(
                    "[OPEN] Venue already holds %s %s, adopting instead of opening",
                    existing.value.side, existing.value.size,
                )
                await self.reconciler.adopt(existing.value, history)
                return OpenOutcome(OpenStatus.ADOPTED_EXISTING, "position found on venue")

        signal = VolumeSignal(candle=signal_candle)
        if signal.is_stale(self._now(), self.settings.interval, self.settings.signal_max_age):
            return OpenOutcome(OpenStatus.STALE_SIGNAL, "signal older than staleness window")

        instrument = await self.venue.get_instrument(self.settings.symbol)
        if not instrument.ok:
            return OpenOutcome(OpenStatus.VENUE_ERROR, f"instrument info failed: {instrument.error}")
        info = instrument.value
        leverage = min(float(self.settings.leverage), info.max_leverage)

        if live:
            shortfall = await self._check_margin(leverage)
            if shortfall:
                return OpenOutcome(OpenStatus.INSUFFICIENT_BALANCE, shortfall)

        side = side_for(signal_candle)
        problem = verify_direction(signal_candle, side)
        if problem:
            logger.error("[OPEN] Direction check failed, trade cancelled: %s", problem)
            return OpenOutcome(OpenStatus.DIRECTION_MISMATCH, problem)

        plan = await self._plan(side, signal_candle, confirming_candle, info.qty_step, info.min_order_qty, info.tick_size, leverage)
        if isinstance(plan, OpenOutcome):
            return plan

        position = ActivePosition(
            side=plan.side,
            entry_price=plan.price,
            entry_time=self._now(),
            qty=plan.qty,
            state=PositionState.PENDING,
            planned_take_profit=plan.take_profit,
            planned_stop_loss=plan.stop_loss,
        )

        if not live:
            logger.info(
                "[OPEN] Signal-only: %s %s @ %s tp=%s sl=%s",
                plan.side.value, plan.qty, plan.price, plan.take_profit, plan.stop_loss,
            )
            self.notifier.notify(
                self.formatter.order_placed(position, signal_candle, confirming_candle, simulated=True),
                AlertLevel.INFO,
            )
            return OpenOutcome(OpenStatus.SIGNAL_ONLY, "signals mode", position)

        lev = await self.venue.set_leverage(self.settings.symbol, plan.leverage)
        if not (lev.ok or lev.not_modified):
            return OpenOutcome(OpenStatus.VENUE_ERROR, f"set leverage failed: {lev.error}")

        submitted = await self.venue.submit_limit_order(self.settings.symbol, plan.side, plan.qty, plan.price)
        log_order({
            "event": "submit_limit",
            "symbol": self.settings.symbol,
            "side": plan.side.value,
            "qty": plan.qty,
            "price": plan.price,
            "ok": submitted.ok,
            "order_id": submitted.value,
            "error": str(submitted.error) if submitted.error else None,
        })
        if not submitted.ok:
            status = OpenStatus.VENUE_ERROR if submitted.error.is_transient else OpenStatus.ORDER_REJECTED
            return OpenOutcome(status, f"order submit failed: {submitted.error}")

        position.order_id = submitted.value
        if self.state.position is not None:
            # Cannot happen while the opening flag is held; never overwrite a tracked position
            logger.error("[OPEN] Position appeared during open; order %s left to the reconciler", submitted.value)
            return OpenOutcome(OpenStatus.POSITION_EXISTS, "position appeared during open")

        self.state.position = position
        logger.info(
            "[OPEN] Limit %s %s @ %s submitted (order %s) tp=%s sl=%s",
            plan.side.value, plan.qty, plan.price, position.order_id, plan.take_profit, plan.stop_loss,
        )
        log_position({
            "event": "pending",
            "symbol": self.settings.symbol,
            "side": plan.side.value,
            "order_id": position.order_id,
            "qty": plan.qty,
            "price": plan.price,
            "take_profit": plan.take_profit,
            "stop_loss": plan.stop_loss,
        })
        self.notifier.notify(
            self.formatter.order_placed(position, signal_candle, confirming_candle),
            AlertLevel.TRADE,
        )
        return OpenOutcome(OpenStatus.OPENED, "limit order submitted", position)

    async def _check_margin(self, leverage: float) -> Optional[str]:
        """Return a shortfall description, or None when margin is sufficient."""
        required = self.settings.trade_size_usd / leverage
        for account_type in ACCOUNT_TYPES:
            balance = await self.venue.get_balance(account_type)
            if not balance.ok or balance.value is None:
                continue
            available = balance.value.usable(account_type)
            logger.info(
                "[OPEN] %s USDT available %.2f, required margin %.2f (x%s)",
                account_type, available, required, leverage,
            )
            if available < required:
                return f"{account_type} has {available:.2f} USDT, need {required:.2f}"
            return None
        return "no USDT balance found in CONTRACT or UNIFIED account"

    async def _plan(
        self,
        side: Side,
        signal_candle: Candle,
        confirming_candle: Candle,
        qty_step: float,
        min_qty: float,
        tick_size: float,
        leverage: float,
    ):
        extreme = (
            min(signal_candle.low, confirming_candle.low)
            if side == Side.BUY
            else max(signal_candle.high, confirming_candle.high)
        )
        stop_loss = round_to_step(extreme - side.sign * self.settings.stop_loss_points, tick_size)

        ticker = await self.venue.get_ticker(self.settings.symbol)
        if ticker.ok and ticker.value.last_price > 0:
            market = ticker.value.last_price
        else:
            market = confirming_candle.close
            logger.warning("[OPEN] Ticker unavailable (%s), pricing from candle close %s", ticker.error, market)

        price = round_to_step(calculate_limit_price(market, side.sign, self.settings.order_price_offset), tick_size)
        take_profit = round_to_step(price + side.sign * self.settings.take_profit_points, tick_size)

        if (price - stop_loss) * side.sign <= 0:
            return OpenOutcome(
                OpenStatus.INVALID_LEVELS,
                f"stop {stop_loss} not on the loss side of order price {price}",
            )

        qty = max(floor_to_step(self.settings.trade_size_usd / price, qty_step), min_qty)
        logger.info(
            "[OPEN] Sizing $%.0f / %s = %s (step %s, min %s)",
            self.settings.trade_size_usd, price, qty, qty_step, min_qty,
        )
        return OrderPlan(
            side=side,
            qty=qty,
            price=price,
            take_profit=take_profit,
            stop_loss=stop_loss,
            leverage=leverage,
        )
