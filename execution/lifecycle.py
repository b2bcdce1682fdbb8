"""
Position lifecycle manager.

Single owner of ``LifecycleState``. Confirmed candles flow through the signal
detector and then the entry trigger, strictly one candle at a time; the
execution poller, trailing stop manager and reconciler share the same state
object and report back through callbacks wired here.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from core.alerts import AlertLevel
from core.config import Settings
from core.logger import log_order, log_signal
from core.logging_utils import get_logger
from core.models import ActivePosition, Candle, CandleHistory, VolumeSignal
from core.notifications import NotificationFormatter
from core.state import LifecycleState
from core.trading_interfaces import INotifier, IVenue
from execution.execution_poller import ExecutionPoller
from execution.position_opener import OpenOutcome, PositionOpener
from execution.reconciler import PositionReconciler, ReconcileResult
from execution.trailing_stop import TrailingStopManager
from logic.entry_trigger import EntryAction, EntryDecision, EntryTrigger
from logic.volume_signal import SignalAction, SignalDecision, SignalDetector

logger = get_logger(__name__)


@dataclass(frozen=True)
class CandleOutcome:
    """What one confirmed candle did to the lifecycle."""
    processed: bool
    signal: Optional[SignalDecision] = None
    entry: Optional[EntryDecision] = None
    open: Optional[OpenOutcome] = None


class PositionLifecycleManager:
    def __init__(
        self,
        settings: Settings,
        venue: IVenue,
        notifier: INotifier,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.venue = venue
        self.notifier = notifier
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self.state = LifecycleState()
        self.history: Optional[CandleHistory] = None
        self.formatter = NotificationFormatter(
            settings.symbol, settings.trade_size_usd, settings.stop_loss_points
        )

        self.detector = SignalDetector(settings)
        self.trigger = EntryTrigger(settings)
        self.reconciler = PositionReconciler(settings, venue, self.state, notifier, self.formatter)
        self.poller = ExecutionPoller(settings, venue, self.state, notifier, self.formatter)
        self.opener = PositionOpener(
            settings, venue, self.state, notifier, self.formatter, self.reconciler, clock=self._now
        )
        self.trailing = TrailingStopManager(
            settings, venue, self.state, notifier, self.formatter,
            self.reconciler, self.poller,
            history_provider=lambda: self.history,
            clock=self._now,
        )

        self.reconciler.on_adopted = self._on_position_live
        self.reconciler.on_closed = self._on_position_gone
        self.poller.on_filled = self._on_position_live
        self.poller.on_cancelled = self._on_position_gone

        self._lock = asyncio.Lock()
        self._close_requested_for: Optional[ActivePosition] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self, history: Optional[CandleHistory] = None) -> ReconcileResult:
        """Rebuild position state from the venue before any candle is processed."""
        if history is not None:
            self.history = history
        result = await self.reconciler.reconcile(self.history)
        logger.info("[LIFECYCLE] Startup reconcile: %s %s", result.outcome.value, result.reason)
        if self.state.position is not None:
            self.trailing.start()
        return result

    def stop(self) -> None:
        """Cancel timers. In-flight orders on the venue are left alone."""
        self.poller.cancel()
        self.trailing.stop()

    async def reconcile(self) -> ReconcileResult:
        return await self.reconciler.reconcile(self.history)

    # -- candles -----------------------------------------------------------

    async def process_candle(self, candle: Candle, history: CandleHistory) -> CandleOutcome:
        async with self._lock:
            self.history = history
            if not candle.confirmed:
                return CandleOutcome(False)
            last = self.state.last_processed_candle
            if last is not None and candle.timestamp <= last:
                # Replayed by a backfill
                return CandleOutcome(False)
            self.state.last_processed_candle = candle.timestamp

            now = self._now()
            self._expire_stale_signal(now)

            previous = history.previous(candle)
            decision = self.detector.evaluate(candle, previous, self.state, now)
            logger.debug("[LIFECYCLE] %s vol=%.0f -> %s (%s)", candle.timestamp, candle.volume, decision.action.value, decision.reason)

            if decision.changes_signal:
                self._apply_signal(candle, previous, decision, now)
            elif decision.action == SignalAction.DANGER_CLOSE:
                await self._danger_close(candle, decision)

            entry = self.trigger.evaluate(candle, history, self.state.signal, now)
            opened = None
            if entry.action == EntryAction.ENTER:
                opened = await self._enter(entry, history)
            elif entry.action == EntryAction.CLEAR_SIGNAL:
                logger.info("[LIFECYCLE] Clearing signal: %s", entry.reason)
                self._drop_signal(entry.reason)

            self.state.forget_signals_before(now - self.settings.signal_max_age - self.settings.interval)
            return CandleOutcome(True, decision, entry, opened)

    async def analyze_history(self, history: CandleHistory) -> list[CandleOutcome]:
        """Replay the confirmed bars already in ``history`` (startup catch-up)."""
        outcomes = []
        for candle in history.snapshot():
            if candle.confirmed:
                outcomes.append(await self.process_candle(candle, history))
        logger.info("[LIFECYCLE] Retrospective analysis over %d bars done", len(outcomes))
        return outcomes

    def _expire_stale_signal(self, now: datetime) -> None:
        signal = self.state.signal
        if signal is not None and signal.is_stale(now, self.settings.interval, self.settings.signal_max_age):
            logger.info("[LIFECYCLE] Signal from %s expired", signal.timestamp)
            self._drop_signal("expired")

    def _apply_signal(self, candle: Candle, previous: Optional[Candle], decision: SignalDecision, now: datetime) -> None:
        replaced = decision.action == SignalAction.REPLACE
        old = self.state.signal
        self.state.set_signal(VolumeSignal(candle=candle))
        if replaced:
            logger.info("[SIGNAL] Replaced %s with %s: %s", old.timestamp if old else None, candle.timestamp, decision.reason)
        else:
            logger.info("[SIGNAL] New signal %s: %s", candle.timestamp, decision.reason)

        log_signal({
            "event": "replace" if replaced else "raise",
            "symbol": self.settings.symbol,
            "candle_ts": candle.timestamp,
            "volume": candle.volume,
            "volume_ratio": round(decision.volume_ratio, 4),
            "green": candle.is_green,
            "replaced_ts": old.timestamp if replaced and old else None,
        })

        last = self.state.last_signal_alert_at
        if last is not None and (now - last).total_seconds() < self.settings.signal_alert_cooldown_seconds:
            logger.debug("[SIGNAL] Alert suppressed (cooldown)")
            return
        self.state.last_signal_alert_at = now
        self.notifier.notify(self.formatter.volume_spike(candle, previous, replaced), AlertLevel.INFO)

    def _drop_signal(self, reason: str) -> None:
        signal = self.state.clear_signal()
        if signal is not None:
            log_signal({
                "event": "clear",
                "symbol": self.settings.symbol,
                "candle_ts": signal.timestamp,
                "reason": reason,
            })

    async def _enter(self, entry: EntryDecision, history: CandleHistory) -> OpenOutcome:
        signal = self.state.signal
        logger.info(
            "[LIFECYCLE] Entry confirmed by %s (%s)", entry.confirming_candle.timestamp, entry.reason
        )
        outcome = await self.opener.open(entry.signal_candle, entry.confirming_candle, history)

        # A signal is consumed by one entry attempt whatever the result
        if self.state.signal is signal:
            self._drop_signal(f"entry attempted: {outcome.status.value}")

        if outcome.opened and outcome.position is not None and outcome.position.order_id:
            self.poller.schedule(outcome.position.order_id)
            self.trailing.start()
        return outcome

    # -- closing -----------------------------------------------------------

    async def _danger_close(self, candle: Candle, decision: SignalDecision) -> None:
        logger.warning("[LIFECYCLE] Anomalous volume after entry: %s", decision.reason)
        if await self.close_position(decision.reason):
            self.notifier.notify(
                self.formatter.danger_close(candle, self.settings.danger_volume_threshold),
                AlertLevel.WARNING,
            )

    async def close_position(self, reason: str) -> bool:
        """Flatten the current position. The reconciler finishes the cleanup.

        A pending entry is cancelled; a filled one gets a reduce-only market
        order for the size the venue reports. Returns True when a close was
        requested.
        """
        position = self.state.position
        if position is None:
            return False
        if self._close_requested_for is position:
            logger.info("[LIFECYCLE] Close already requested for this position")
            return False
        self._close_requested_for = position

        if position.is_pending and position.order_id:
            result = await self.venue.cancel_order(self.settings.symbol, position.order_id)
            log_order({
                "event": "cancel_entry",
                "symbol": self.settings.symbol,
                "order_id": position.order_id,
                "reason": reason,
                "ok": result.ok,
            })
            if not result.ok:
                logger.error("[LIFECYCLE] Failed to cancel pending entry %s: %s", position.order_id, result.error)
                self._close_requested_for = None
                return False
            logger.info("[LIFECYCLE] Pending entry %s cancelled (%s)", position.order_id, reason)
            return True

        venue_position = await self.venue.get_open_position(self.settings.symbol)
        if not venue_position.ok:
            logger.error("[LIFECYCLE] Cannot close, position query failed: %s", venue_position.error)
            self._close_requested_for = None
            return False
        if venue_position.value is None:
            logger.info("[LIFECYCLE] Venue already flat, leaving cleanup to the reconciler")
            return False

        size = venue_position.value.size
        result = await self.venue.submit_reduce_only_order(self.settings.symbol, position.side.opposite, size)
        log_order({
            "event": "close_market",
            "symbol": self.settings.symbol,
            "side": position.side.opposite.value,
            "qty": size,
            "reason": reason,
            "ok": result.ok,
            "order_id": result.value,
        })
        if not result.ok:
            logger.error("[LIFECYCLE] Close order failed: %s", result.error)
            self._close_requested_for = None
            return False
        logger.info("[LIFECYCLE] Close order %s submitted for %s (%s)", result.value, size, reason)
        return True

    # -- callbacks ---------------------------------------------------------

    def _on_position_live(self, position: ActivePosition) -> None:
        self.trailing.start()

    def _on_position_gone(self) -> None:
        self._close_requested_for = None
        self.poller.cancel()
        self.trailing.stop()
