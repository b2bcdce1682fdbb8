"""Position reconciliation against the venue.

The venue is the source of truth. Each pass compares the cached
``ActivePosition`` with what Bybit reports and repairs the cache:

- pending order and no venue position: expected, nothing to do
- venue flat, local position: closed externally (TP/SL hit or manual)
- venue position, no local position (or other side): adopt it
- both agree: make sure TP/SL are still attached

Adoption is what makes restarts safe; running it again against unchanged
venue state issues no further order calls.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.helpers import round_to_step
from core.logger import log_position, log_stop
from core.logging_utils import get_logger
from core.models import (
    ActivePosition,
    Candle,
    CandleHistory,
    PositionState,
    Side,
    TradeResult,
    VenuePosition,
)
from core.notifications import NotificationFormatter
from core.state import LifecycleState
from core.trading_interfaces import INotifier, IVenue

logger = get_logger(__name__)


class ReconcileOutcome(Enum):
    NO_POSITION = "no_position"
    IN_SYNC = "in_sync"
    PENDING_ORDER = "pending_order"
    ADOPTED = "adopted"
    CLOSED_EXTERNALLY = "closed_externally"
    CORRECTED = "corrected"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    reason: str = ""


@dataclass(frozen=True)
class ExpectedLevels:
    take_profit: float
    stop_loss: float
    from_candles: bool


class PositionReconciler:
    """Keeps ``LifecycleState.position`` consistent with the venue."""

    def __init__(
        self,
        settings: Settings,
        venue: IVenue,
        state: LifecycleState,
        notifier: INotifier,
        formatter: NotificationFormatter,
    ):
        self.settings = settings
        self.venue = venue
        self.state = state
        self.notifier = notifier
        self.formatter = formatter
        self._lock = asyncio.Lock()

        # Callbacks
        self.on_adopted: Optional[Callable[[ActivePosition], None]] = None
        self.on_closed: Optional[Callable[[], None]] = None

    async def reconcile(self, history: Optional[CandleHistory] = None) -> ReconcileResult:
        if self.state.is_opening_position:
            # The opener owns the state until its order is recorded
            return ReconcileResult(ReconcileOutcome.SKIPPED, "open in progress")

        async with self._lock:
            local = self.state.position
            if local is not None and local.is_pending:
                return ReconcileResult(ReconcileOutcome.PENDING_ORDER, "waiting for fill")

            result = await self.venue.get_open_position(self.settings.symbol)
            if not result.ok:
                logger.warning("[SYNC] Position query failed: %s", result.error)
                return ReconcileResult(ReconcileOutcome.FAILED, str(result.error))

            # Re-read after the await; the poller or opener may have moved on
            local = self.state.position
            if local is not None and local.is_pending:
                return ReconcileResult(ReconcileOutcome.PENDING_ORDER, "waiting for fill")

            venue_position = result.value
            if venue_position is None:
                if local is None:
                    return ReconcileResult(ReconcileOutcome.NO_POSITION)
                await self._handle_external_close(local, history)
                return ReconcileResult(ReconcileOutcome.CLOSED_EXTERNALLY)

            if local is None or local.side != venue_position.position_side:
                if local is not None:
                    logger.warning(
                        "[SYNC] Side mismatch: local %s, venue %s - re-adopting",
                        local.side.value, venue_position.side,
                    )
                await self._adopt(venue_position, history)
                return ReconcileResult(ReconcileOutcome.ADOPTED)

            return await self._verify_in_sync(local, venue_position)

    async def adopt(self, venue_position: VenuePosition, history: Optional[CandleHistory] = None) -> ActivePosition:
        """Adopt a position found outside a reconcile pass (e.g. by the opener)."""
        async with self._lock:
            local = self.state.position
            if local is not None and local.side == venue_position.position_side:
                return local
            return await self._adopt(venue_position, history)

    def expected_levels(
        self,
        side: Side,
        entry_price: float,
        history: Optional[CandleHistory] = None,
    ) -> ExpectedLevels:
        """TP/SL the bot itself would have placed for a position at ``entry_price``."""
        take_profit = entry_price + side.sign * self.settings.take_profit_points
        pair = find_signal_pair(history, self.settings.volume_threshold) if history else None
        if pair is not None:
            signal_candle, confirming = pair
            extreme = (
                min(signal_candle.low, confirming.low)
                if side == Side.BUY
                else max(signal_candle.high, confirming.high)
            )
            stop_loss = extreme - side.sign * self.settings.stop_loss_points
            # A candle-based stop on the wrong side of entry is useless
            if (entry_price - stop_loss) * side.sign > 0:
                return ExpectedLevels(take_profit, stop_loss, from_candles=True)
        stop_loss = entry_price - side.sign * self.settings.stop_loss_points
        return ExpectedLevels(take_profit, stop_loss, from_candles=False)

    async def _adopt(self, venue_position: VenuePosition, history: Optional[CandleHistory]) -> ActivePosition:
        side = venue_position.position_side
        entry = venue_position.avg_price
        tolerance = self.settings.adoption_tolerance_points

        trailing = False
        if venue_position.has_stop_loss and venue_position.mark_price > 0:
            stop_distance = (venue_position.mark_price - venue_position.stop_loss) * side.sign
            trailing = abs(stop_distance - self.settings.trailing_distance) <= self.settings.trailing_inference_tolerance

        logger.info(
            "[SYNC] Adopting %s %s @ %s (tp=%s sl=%s mark=%s trailing=%s)",
            side.value, venue_position.size, entry,
            venue_position.take_profit or "-", venue_position.stop_loss or "-",
            venue_position.mark_price, trailing,
        )

        expected = self.expected_levels(side, entry, history)
        tick = await self._tick_size()
        expected_tp = round_to_step(expected.take_profit, tick)
        expected_sl = round_to_step(expected.stop_loss, tick)

        new_tp: Optional[float] = None
        new_sl: Optional[float] = None
        if not trailing:
            if not venue_position.has_take_profit or abs(venue_position.take_profit - expected_tp) > tolerance:
                new_tp = expected_tp
            if not venue_position.has_stop_loss or abs(venue_position.stop_loss - expected_sl) > tolerance:
                new_sl = expected_sl

        # Kept even when the apply fails so later passes can retry it
        planned_tp = new_tp if new_tp is not None else (venue_position.take_profit or None)
        planned_sl = new_sl if new_sl is not None else (venue_position.stop_loss or None)
        levels_applied = True
        if new_tp is not None or new_sl is not None:
            await self._cancel_reduce_only_orders()
            result = await self.venue.set_stop_levels(
                self.settings.symbol, take_profit=new_tp, stop_loss=new_sl
            )
            if result.ok or result.not_modified:
                logger.info("[SYNC] Re-applied levels tp=%s sl=%s (candle stop=%s)", new_tp, new_sl, expected.from_candles)
                log_stop({
                    "event": "adopt_levels",
                    "symbol": self.settings.symbol,
                    "take_profit": new_tp,
                    "stop_loss": new_sl,
                    "from_candles": expected.from_candles,
                })
            else:
                levels_applied = False
                logger.error("[SYNC] Failed to apply levels to adopted position, retrying next pass: %s", result.error)

        position = ActivePosition(
            side=side,
            entry_price=entry,
            entry_time=datetime.now(timezone.utc),  # Real entry time is unknown
            order_id=None,
            qty=venue_position.size,
            state=PositionState.TRAILING if trailing else PositionState.OPEN,
            is_trailing_active=trailing,
            last_trailing_stop_price=venue_position.stop_loss if trailing else None,
            planned_take_profit=None if trailing else planned_tp,
            planned_stop_loss=planned_sl,
            execution_notification_sent=True,
            adopted=True,
            levels_applied=levels_applied,
        )
        self.state.position = position
        self.state.clear_signal()

        log_position({
            "event": "adopted",
            "symbol": self.settings.symbol,
            "side": side.value,
            "qty": venue_position.size,
            "entry_price": entry,
            "take_profit": position.planned_take_profit,
            "stop_loss": position.planned_stop_loss,
            "trailing": trailing,
        })
        self.notifier.notify(
            self.formatter.position_adopted(venue_position, position.planned_take_profit, position.planned_stop_loss, trailing),
            AlertLevel.WARNING,
        )
        if self.on_adopted:
            self.on_adopted(position)
        return position

    async def _verify_in_sync(self, local: ActivePosition, venue_position: VenuePosition) -> ReconcileResult:
        if venue_position.size != local.qty:
            logger.info("[SYNC] Size changed on venue: %s -> %s", local.qty, venue_position.size)
            local.qty = venue_position.size

        take_profit = None
        if not local.is_trailing_active and local.planned_take_profit is not None:
            if self._needs_level(local, venue_position.take_profit, local.planned_take_profit):
                take_profit = local.planned_take_profit
        stop_loss = None
        if local.current_stop is not None:
            if self._needs_level(local, venue_position.stop_loss, local.current_stop):
                stop_loss = local.current_stop

        if take_profit is None and stop_loss is None:
            local.levels_applied = True
            if local.current_stop is None:
                return ReconcileResult(ReconcileOutcome.IN_SYNC, "no stop known")
            return ReconcileResult(ReconcileOutcome.IN_SYNC)

        logger.warning("[SYNC] Levels missing on venue, restoring tp=%s sl=%s", take_profit, stop_loss)
        result = await self.venue.set_stop_levels(
            self.settings.symbol, take_profit=take_profit, stop_loss=stop_loss
        )
        if not (result.ok or result.not_modified):
            logger.error("[SYNC] Failed to restore levels: %s", result.error)
            return ReconcileResult(ReconcileOutcome.FAILED, str(result.error))
        local.levels_applied = True
        log_stop({
            "event": "restore_levels",
            "symbol": self.settings.symbol,
            "take_profit": take_profit,
            "stop_loss": stop_loss,
        })
        return ReconcileResult(ReconcileOutcome.CORRECTED, "levels restored")

    def _needs_level(self, local: ActivePosition, on_venue: float, planned: float) -> bool:
        """Missing on the venue, or off target while an earlier apply is still owed."""
        if not on_venue:
            return True
        return not local.levels_applied and abs(on_venue - planned) > self.settings.adoption_tolerance_points

    async def _handle_external_close(self, local: ActivePosition, history: Optional[CandleHistory]):
        exit_price = await self._best_effort_price(history)
        if self.state.position is not local:
            return
        if exit_price is None:
            exit_price = local.entry_price

        trade = TradeResult(
            symbol=self.settings.symbol,
            side=local.side,
            entry_price=local.entry_price,
            exit_price=exit_price,
            entry_time=local.entry_time,
            exit_time=datetime.now(timezone.utc),
            qty=local.qty,
            exit_reason="closed on exchange (TP/SL or manual)",
        )
        logger.info(
            "[SYNC] Position closed externally: %s entry=%s exit~%s pnl=%+.2f pts",
            local.side.value, local.entry_price, exit_price, trade.pnl_points,
        )

        self.state.clear_position()
        self.state.clear_signal()
        if self.on_closed:
            self.on_closed()

        log_position({
            "event": "closed",
            "symbol": self.settings.symbol,
            "side": local.side.value,
            "entry_price": local.entry_price,
            "exit_price": exit_price,
            "pnl_points": trade.pnl_points,
            "reason": trade.exit_reason,
        })
        self.notifier.notify(self.formatter.position_closed(trade), AlertLevel.TRADE)
        await self._cancel_reduce_only_orders()

    async def _best_effort_price(self, history: Optional[CandleHistory]) -> Optional[float]:
        ticker = await self.venue.get_ticker(self.settings.symbol)
        if ticker.ok and ticker.value.last_price > 0:
            return ticker.value.last_price
        latest = history.latest if history else None
        return latest.close if latest else None

    async def _cancel_reduce_only_orders(self):
        orders = await self.venue.get_active_orders(self.settings.symbol)
        if not orders.ok:
            logger.warning("[SYNC] Could not list orders for cleanup: %s", orders.error)
            return
        for order in orders.value:
            if not order.reduce_only:
                continue
            result = await self.venue.cancel_order(self.settings.symbol, order.order_id)
            if result.ok:
                logger.info("[SYNC] Cancelled leftover reduce-only order %s (%s @ %s)", order.order_id, order.side, order.price)
            else:
                logger.warning("[SYNC] Failed to cancel %s: %s", order.order_id, result.error)

    async def _tick_size(self) -> float:
        instrument = await self.venue.get_instrument(self.settings.symbol)
        return instrument.value.tick_size if instrument.ok else 0.0


def find_signal_pair(history: CandleHistory, volume_threshold: float) -> Optional[tuple[Candle, Candle]]:
    """Most recent (signal, confirming) pair: a threshold bar followed by a bar with no more volume."""
    candles = [c for c in history.snapshot() if c.confirmed]
    for i in range(len(candles) - 1, -1, -1):
        signal_candle = candles[i]
        if signal_candle.volume < volume_threshold:
            continue
        for confirming in candles[i + 1:]:
            if confirming.volume <= signal_candle.volume:
                return signal_candle, confirming
    return None
