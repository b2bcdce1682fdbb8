"""Trailing stop manager.

A fixed-interval timer that runs only while a position exists. Every tick
reconciles first, lets the poller finish a pending entry, then ratchets the
stop toward price once profit reaches the activation distance. The stop only
ever tightens. The first activation also removes the take-profit.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.helpers import round_to_step
from core.logger import log_stop
from core.logging_utils import get_logger
from core.models import ActivePosition, CandleHistory
from core.notifications import NotificationFormatter
from core.state import LifecycleState
from core.timers import PeriodicTask
from core.trading_interfaces import INotifier, IVenue
from execution.execution_poller import ExecutionPoller
from execution.reconciler import PositionReconciler

logger = get_logger(__name__)


class TrailAction(Enum):
    NONE = "none"
    ACTIVATED = "activated"
    MOVED = "moved"
    FAILED = "failed"


@dataclass(frozen=True)
class TrailResult:
    action: TrailAction
    stop_price: Optional[float] = None
    price: Optional[float] = None
    reason: str = ""


class TrailingStopManager:
    def __init__(
        self,
        settings: Settings,
        venue: IVenue,
        state: LifecycleState,
        notifier: INotifier,
        formatter: NotificationFormatter,
        reconciler: PositionReconciler,
        poller: ExecutionPoller,
        history_provider: Optional[Callable[[], Optional[CandleHistory]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.venue = venue
        self.state = state
        self.notifier = notifier
        self.formatter = formatter
        self.reconciler = reconciler
        self.poller = poller
        self.history_provider = history_provider or (lambda: None)
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._timer = PeriodicTask("trailing-stop", settings.trailing_interval_seconds, self.tick)
        self._ticking = False

    @property
    def is_running(self) -> bool:
        return self._timer.is_running

    def start(self) -> None:
        if self.state.position is None:
            return
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    async def tick(self) -> Optional[TrailResult]:
        if self._ticking:
            logger.debug("[TRAIL] Previous tick still running, skipping")
            return None
        self._ticking = True
        try:
            return await self._tick()
        finally:
            self._ticking = False

    async def _tick(self) -> Optional[TrailResult]:
        if self.state.position is None:
            self.stop()
            return None

        await self.reconciler.reconcile(self.history_provider())

        position = self.state.position
        if position is None:
            self.stop()
            return None
        if position.is_pending:
            await self.poller.check()
            position = self.state.position
            if position is None or position.is_pending:
                return None

        return await self.update(position)

    async def update(self, position: ActivePosition) -> TrailResult:
        """One ratchet step for ``position`` at the current mark price."""
        ticker = await self.venue.get_ticker(self.settings.symbol)
        if not ticker.ok:
            logger.warning("[TRAIL] Price unavailable: %s", ticker.error)
            return TrailResult(TrailAction.FAILED, reason=str(ticker.error))
        if self.state.position is not position:
            return TrailResult(TrailAction.NONE, reason="position changed")

        price = ticker.value.price
        profit = position.profit_points(price)
        if profit < self.settings.trailing_activation_points:
            return TrailResult(TrailAction.NONE, price=price, reason=f"profit {profit:.2f} below activation")

        tick_size = await self._tick_size()
        new_stop = round_to_step(price - position.side.sign * self.settings.trailing_distance, tick_size)
        baseline = position.current_stop
        if not position.is_more_favorable(new_stop, baseline):
            return TrailResult(TrailAction.NONE, stop_price=baseline, price=price, reason="not tighter")

        first = not position.is_trailing_active
        result = await self.venue.set_stop_levels(
            self.settings.symbol,
            take_profit=0 if first else None,
            stop_loss=new_stop,
        )
        if self.state.position is not position:
            return TrailResult(TrailAction.NONE, reason="position changed")
        if not (result.ok or result.not_modified):
            logger.warning("[TRAIL] Failed to move stop to %s: %s", new_stop, result.error)
            return TrailResult(TrailAction.FAILED, new_stop, price, str(result.error))

        # Re-check the ratchet; a concurrent update may have tightened further
        if not position.is_more_favorable(new_stop, position.current_stop):
            return TrailResult(TrailAction.NONE, position.current_stop, price, "superseded")

        if first:
            position.activate_trailing(new_stop)
            logger.info("[TRAIL] Activated at %s, stop %s, take-profit removed", price, new_stop)
        else:
            position.last_trailing_stop_price = new_stop
            logger.info("[TRAIL] Stop %s -> %s (price %s)", baseline, new_stop, price)

        log_stop({
            "event": "trail_activate" if first else "trail_move",
            "symbol": self.settings.symbol,
            "side": position.side.value,
            "price": price,
            "old_stop": baseline,
            "new_stop": new_stop,
        })
        self._maybe_alert(first, new_stop, price)
        return TrailResult(TrailAction.ACTIVATED if first else TrailAction.MOVED, new_stop, price)

    def _maybe_alert(self, first: bool, new_stop: float, price: float) -> None:
        now = self._now()
        last_at = self.state.last_trailing_alert_at
        last_stop = self.state.last_trailing_alert_stop

        if first:
            message = self.formatter.trailing_activated(new_stop, price)
        else:
            cooled = last_at is None or (now - last_at).total_seconds() >= self.settings.trailing_alert_cooldown_seconds
            big_move = last_stop is None or abs(new_stop - last_stop) >= self.settings.trailing_alert_min_move
            if not (cooled or big_move):
                return
            message = self.formatter.trailing_moved(new_stop, self.settings.trailing_distance, price)

        self.state.last_trailing_alert_at = now
        self.state.last_trailing_alert_stop = new_stop
        self.notifier.notify(message, AlertLevel.INFO)

    async def _tick_size(self) -> float:
        instrument = await self.venue.get_instrument(self.settings.symbol)
        return instrument.value.tick_size if instrument.ok else 0.0
