"""End-to-end candle flows through the lifecycle manager."""

from datetime import timedelta

import pytest
import pytest_asyncio

from core.models import ActivePosition, OrderStatus, PositionState, Side
from execution.lifecycle import PositionLifecycleManager
from execution.position_opener import OpenStatus
from logic.entry_trigger import EntryAction
from logic.volume_signal import SignalAction
from tests.test_helpers import (
    T0,
    Clock,
    FakeVenue,
    RecordingNotifier,
    after_close,
    bar,
    history_of,
    make_settings,
)


@pytest.fixture
def clock():
    return Clock(after_close(0))


@pytest.fixture
def venue():
    return FakeVenue(price=100.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def manager(venue, notifier, clock):
    manager = PositionLifecycleManager(make_settings(), venue, notifier, clock=clock)
    yield manager
    manager.stop()


async def feed(manager, clock, history, *indices):
    outcomes = []
    for i in indices:
        clock.now = after_close(i)
        candle = next(c for c in history.snapshot() if c.timestamp == bar(i, 0).timestamp)
        outcomes.append(await manager.process_candle(candle, history))
    return outcomes


@pytest.mark.asyncio
async def test_spike_then_quieter_bar_places_one_entry(manager, venue, notifier, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 400))

    quiet, spike, confirm = await feed(manager, clock, history, 0, 1, 2)

    assert quiet.signal.action == SignalAction.IGNORE
    assert spike.signal.action == SignalAction.RAISE
    assert spike.entry.action == EntryAction.SKIP
    assert confirm.entry.action == EntryAction.ENTER
    assert confirm.open.status == OpenStatus.OPENED
    assert confirm.entry.signal_candle.volume == 1000

    assert len(venue.calls_named("submit_limit_order")) == 1
    assert manager.state.position.is_pending
    assert manager.state.signal is None
    assert manager.trailing.is_running
    assert notifier.containing("VOLUME SPIKE")


@pytest.mark.asyncio
async def test_stronger_spike_replaces_signal(manager, venue, notifier, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 1200), bar(3, 400))

    _, _, replaced, confirm = await feed(manager, clock, history, 0, 1, 2, 3)

    assert replaced.signal.action == SignalAction.REPLACE
    assert notifier.containing("VOLUME SIGNAL REPLACED")
    assert confirm.entry.action == EntryAction.ENTER
    assert confirm.entry.signal_candle.volume == 1200


@pytest.mark.asyncio
async def test_replayed_candle_is_ignored(manager, notifier, clock):
    history = history_of(bar(0, 100), bar(1, 1000))

    await feed(manager, clock, history, 0, 1)
    again = await manager.process_candle(history.find(bar(1, 0).timestamp), history)

    assert not again.processed
    assert len(notifier.containing("VOLUME SPIKE")) == 1


@pytest.mark.asyncio
async def test_unconfirmed_candle_is_ignored(manager, clock):
    history = history_of(bar(0, 1000, confirmed=False))
    clock.now = after_close(0)

    outcome = await manager.process_candle(history.latest, history)

    assert not outcome.processed
    assert manager.state.signal is None


@pytest.mark.asyncio
async def test_no_second_position_while_one_is_tracked(manager, venue, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 400), bar(3, 2000), bar(4, 300))

    outcomes = await feed(manager, clock, history, 0, 1, 2, 3, 4)

    assert outcomes[3].signal.action == SignalAction.IGNORE
    assert outcomes[4].entry.action == EntryAction.SKIP
    assert len(venue.calls_named("submit_limit_order")) == 1


@pytest.mark.asyncio
async def test_signal_expires_without_confirmation(manager, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 1100, open_=100, close=100.5))
    await feed(manager, clock, history, 0, 1)
    assert manager.state.signal is not None

    history.upsert(bar(5, 2000))
    clock.now = after_close(5)
    await manager.process_candle(history.find(bar(5, 0).timestamp), history)

    # The old signal expired; bar 5 is a fresh spike
    assert manager.state.signal.timestamp == bar(5, 0).timestamp


@pytest.mark.asyncio
async def test_truncated_history_clears_signal(venue, notifier, clock):
    manager = PositionLifecycleManager(make_settings(signal_max_age_hours=6), venue, notifier, clock=clock)
    history = history_of(bar(0, 100), bar(1, 1000), max_size=2)
    await feed(manager, clock, history, 0, 1)

    history.upsert(bar(2, 1200, open_=100, close=99))
    history.upsert(bar(3, 300))
    clock.now = after_close(3)
    outcome = await manager.process_candle(history.find(bar(3, 0).timestamp), history)

    assert outcome.entry.action == EntryAction.CLEAR_SIGNAL
    assert manager.state.signal is None
    assert venue.calls_named("submit_limit_order") == []
    manager.stop()


@pytest.mark.asyncio
async def test_danger_volume_closes_filled_position(manager, venue, notifier, clock):
    manager.state.position = ActivePosition(
        side=Side.BUY, entry_price=100, entry_time=T0 + timedelta(minutes=30),
        qty=1.5, state=PositionState.OPEN, planned_stop_loss=97,
    )
    venue.open_position("Buy", 1.5, 100.0, sl=97.0)
    history = history_of(bar(1, 6000), bar(2, 7000))

    first, second = await feed(manager, clock, history, 1, 2)

    assert first.signal.action == SignalAction.DANGER_CLOSE
    assert venue.calls_named("submit_reduce_only_order") == [{"side": Side.SELL, "qty": 1.5, "price": None}]
    assert notifier.containing("ANOMALOUS VOLUME")
    # Cleanup is left to the reconciler; no second close order
    assert second.signal.action == SignalAction.DANGER_CLOSE
    assert len(venue.calls_named("submit_reduce_only_order")) == 1


@pytest.mark.asyncio
async def test_danger_volume_cancels_pending_entry(manager, venue, clock):
    manager.state.position = ActivePosition(
        side=Side.SELL, entry_price=100, entry_time=T0, order_id="order-9", qty=1,
    )
    history = history_of(bar(1, 6000))

    await feed(manager, clock, history, 1)

    assert venue.calls_named("cancel_order") == [{"order_id": "order-9"}]
    assert venue.calls_named("submit_reduce_only_order") == []


@pytest.mark.asyncio
async def test_cancelled_entry_stops_trailing(manager, venue, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 400))
    await feed(manager, clock, history, 0, 1, 2)
    venue.set_order_status("order-1", OrderStatus.CANCELLED)

    await manager.poller.check()

    assert manager.state.position is None
    assert not manager.trailing.is_running


@pytest.mark.asyncio
async def test_retrospective_analysis_replays_history(manager, venue, clock):
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 400))
    clock.now = after_close(2)

    outcomes = await manager.analyze_history(history)

    assert len(outcomes) == 3
    assert outcomes[-1].open.status == OpenStatus.OPENED


@pytest.mark.asyncio
async def test_start_adopts_and_trails(manager, venue):
    venue.open_position("Buy", 1, 50.0)

    await manager.start(history_of(bar(0, 100)))

    assert manager.state.position.adopted
    assert manager.trailing.is_running
    manager.stop()
    assert not manager.trailing.is_running


@pytest.mark.asyncio
async def test_signals_mode_alerts_without_orders(venue, notifier, clock):
    manager = PositionLifecycleManager(make_settings(trading_mode="signals"), venue, notifier, clock=clock)
    history = history_of(bar(0, 100), bar(1, 1000), bar(2, 400))

    *_, confirm = await feed(manager, clock, history, 0, 1, 2)

    assert confirm.open.status == OpenStatus.SIGNAL_ONLY
    assert manager.state.position is None
    assert manager.state.signal is None
    assert venue.calls_named("submit_limit_order") == []
    assert notifier.containing("SIGNAL (not submitted)")
