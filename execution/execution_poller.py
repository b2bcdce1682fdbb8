"""Order execution poller.

After a limit entry is submitted the poller checks the order right away and
again after each configured delay; the trailing tick also calls ``check()``
while the position is pending. On fill it applies the deferred TP/SL in one
trading-stop call and sends the fill alert exactly once. It never re-prices
or resubmits: an order that never fills waits until it is cancelled. An
order the venue stops reporting is settled from the open position once
``order_missing_max_checks`` lookups in a row come back empty.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.logger import log_order, log_position, log_stop
from core.logging_utils import get_logger
from core.models import ActivePosition
from core.notifications import NotificationFormatter
from core.state import LifecycleState
from core.timers import schedule_once
from core.trading_interfaces import INotifier, IVenue
from execution.order_utils import VenueErrorKind

logger = get_logger(__name__)


class PollStatus(Enum):
    NOT_PENDING = "not_pending"
    BUSY = "busy"
    WAITING = "waiting"
    FILLED = "filled"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    reason: str = ""


class ExecutionPoller:
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
        self._tasks: list[asyncio.Task] = []
        self._checking = False
        self._missing_order_id: Optional[str] = None
        self._missing_count = 0

        # Callbacks
        self.on_filled: Optional[Callable[[ActivePosition], None]] = None
        self.on_cancelled: Optional[Callable[[], None]] = None

    @property
    def scheduled(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def schedule(self, order_id: str) -> None:
        """Check now, then after each configured delay."""
        self.cancel()
        self._missing_order_id = None
        self._missing_count = 0
        delays = [0.0, *self.settings.execution_check_delays]
        self._tasks = [
            schedule_once(delay, self.check, name=f"exec-check-{order_id}-{delay:g}s")
            for delay in delays
        ]
        logger.info("[EXEC] Scheduled %d checks for order %s", len(delays), order_id)

    def cancel(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = []

    async def check(self) -> PollResult:
        position = self.state.position
        if position is None or not position.is_pending or not position.order_id:
            return PollResult(PollStatus.NOT_PENDING)
        if self._checking:
            return PollResult(PollStatus.BUSY)

        self._checking = True
        try:
            return await self._check(position)
        finally:
            self._checking = False

    async def _check(self, position: ActivePosition) -> PollResult:
        order_id = position.order_id
        result = await self.venue.get_order_status(self.settings.symbol, order_id)
        if self.state.position is not position or not position.is_pending:
            return PollResult(PollStatus.NOT_PENDING, "position changed during check")
        if not result.ok:
            logger.warning("[EXEC] Status check for %s failed: %s", order_id, result.error)
            return PollResult(PollStatus.ERROR, str(result.error))

        info = result.value
        if info is None:
            return await self._handle_missing(position)
        self._missing_count = 0

        if info.is_filled or (info.order_status.is_terminal_unfilled and info.cum_exec_qty > 0):
            return await self._finalize_fill(position, info.fill_price, info.cum_exec_qty or position.qty)

        if info.order_status.is_terminal_unfilled:
            return self._handle_cancelled(position, info.order_status.value)

        logger.debug("[EXEC] Order %s status %s, waiting", order_id, info.order_status.value)
        return PollResult(PollStatus.WAITING, info.order_status.value)

    async def _handle_missing(self, position: ActivePosition) -> PollResult:
        """Neither the open list nor history knows the order; past the limit the position decides."""
        order_id = position.order_id
        if self._missing_order_id != order_id:
            self._missing_order_id = order_id
            self._missing_count = 0
        self._missing_count += 1
        if self._missing_count < self.settings.order_missing_max_checks:
            logger.info("[EXEC] Order %s not found yet (%d/%d)", order_id, self._missing_count, self.settings.order_missing_max_checks)
            return PollResult(PollStatus.WAITING, "order not found")

        result = await self.venue.get_open_position(self.settings.symbol)
        if self.state.position is not position or not position.is_pending:
            return PollResult(PollStatus.NOT_PENDING, "position changed during check")
        if not result.ok:
            logger.warning("[EXEC] Position query for missing order %s failed: %s", order_id, result.error)
            return PollResult(PollStatus.ERROR, str(result.error))

        venue_position = result.value
        if venue_position is not None and venue_position.position_side == position.side:
            logger.warning("[EXEC] Order %s not found but a %s position exists, treating as filled", order_id, position.side.value)
            return await self._finalize_fill(position, venue_position.avg_price, venue_position.size)

        # Any other-side position is left for the reconciler to adopt
        return self._handle_cancelled(position, "missing")

    async def _finalize_fill(self, position: ActivePosition, fill_price: float, qty: float) -> PollResult:
        logger.info("[EXEC] Order %s filled: %s @ %s", position.order_id, qty, fill_price)

        stops = await self.venue.set_stop_levels(
            self.settings.symbol,
            take_profit=position.planned_take_profit,
            stop_loss=position.planned_stop_loss,
        )
        if self.state.position is not position or not position.is_pending:
            return PollResult(PollStatus.NOT_PENDING, "position changed during finalize")

        if not (stops.ok or stops.not_modified):
            if stops.error.kind in (VenueErrorKind.TRANSIENT, VenueErrorKind.UNAVAILABLE):
                # Stay pending so the next check retries the stops
                logger.warning("[EXEC] Could not apply TP/SL yet: %s", stops.error)
                return PollResult(PollStatus.ERROR, str(stops.error))
            logger.error("[EXEC] Venue rejected TP/SL for %s: %s", position.order_id, stops.error)
            self.notifier.notify(
                f"Venue rejected TP/SL after fill of {position.order_id}: {stops.error}",
                AlertLevel.ERROR,
            )
        else:
            log_stop({
                "event": "initial_levels",
                "symbol": self.settings.symbol,
                "order_id": position.order_id,
                "take_profit": position.planned_take_profit,
                "stop_loss": position.planned_stop_loss,
            })

        position.mark_filled(fill_price, qty)
        log_order({
            "event": "filled",
            "symbol": self.settings.symbol,
            "order_id": position.order_id,
            "qty": qty,
            "avg_price": fill_price,
        })
        log_position({
            "event": "open",
            "symbol": self.settings.symbol,
            "side": position.side.value,
            "entry_price": position.entry_price,
            "qty": position.qty,
        })

        if not position.execution_notification_sent:
            position.execution_notification_sent = True
            self.notifier.notify(self.formatter.order_filled(position), AlertLevel.SUCCESS)

        self.cancel()
        if self.on_filled:
            self.on_filled(position)
        return PollResult(PollStatus.FILLED)

    def _handle_cancelled(self, position: ActivePosition, status: str) -> PollResult:
        logger.warning("[EXEC] Order %s ended unfilled (%s), dropping pending position", position.order_id, status)
        self.state.clear_position()
        log_order({
            "event": "unfilled",
            "symbol": self.settings.symbol,
            "order_id": position.order_id,
            "status": status,
        })
        self.notifier.notify(self.formatter.order_cancelled(position, status), AlertLevel.WARNING)
        self.cancel()
        if self.on_cancelled:
            self.on_cancelled()
        return PollResult(PollStatus.CANCELLED, status)
