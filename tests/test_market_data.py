import asyncio
from datetime import timedelta

import pytest
from pybit.exceptions import FailedRequestError, InvalidRequestError

from datafeeds import bybit_fetcher
from datafeeds.bybit_fetcher import fetch_history, parse_kline_rows
from datafeeds.collectors import CandleCollector
from tests.test_helpers import HOUR, T0, bar, make_settings


def start_ms(index: int) -> str:
    return str(int((T0 + index * HOUR).timestamp() * 1000))


def row(index: int, volume: float = 100.0) -> list:
    return [start_ms(index), "100", "101.5", "99.5", "101", str(volume), "10000"]


def kline_message(index: int, volume: float, confirm: bool, topic: str = "kline.60.SOLUSDT") -> dict:
    return {
        "topic": topic,
        "type": "snapshot",
        "data": [{
            "start": int(start_ms(index)),
            "end": int(start_ms(index + 1)) - 1,
            "interval": "60",
            "open": "100", "close": "101", "high": "101.5", "low": "99.5",
            "volume": str(volume), "turnover": "0",
            "confirm": confirm,
        }],
    }


class FakeKlineClient:
    def __init__(self, rows=None, errors=None):
        self.rows = rows or []
        self.errors = list(errors or [])
        self.calls = []

    def get_kline(self, **params):
        self.calls.append(params)
        if self.errors:
            raise self.errors.pop(0)
        return {"retCode": 0, "result": {"category": "linear", "list": self.rows}}


def test_rows_are_reversed_and_last_bar_unconfirmed():
    # Bybit lists newest first
    rows = [row(2, 300), row(1, 200), row(0, 100)]

    candles = parse_kline_rows(rows, 3600, now=T0 + timedelta(hours=2, minutes=30))

    assert [c.volume for c in candles] == [100, 200, 300]
    assert [c.confirmed for c in candles] == [True, True, False]
    assert candles[0].timestamp == T0


def test_bad_rows_are_skipped():
    rows = [row(1), ["oops"], [start_ms(0), "x", "1", "1", "1", "1"]]

    candles = parse_kline_rows(rows, 3600, now=T0 + timedelta(hours=5))

    assert len(candles) == 1


def test_fetch_history_clamps_limit_and_parses():
    client = FakeKlineClient(rows=[row(1), row(0)])

    candles = fetch_history("SOLUSDT", "60", 5000, client=client)

    assert len(candles) == 2
    assert client.calls == [{"category": "linear", "symbol": "SOLUSDT", "interval": "60", "limit": 1000}]


def test_rejected_request_is_not_retried():
    error = InvalidRequestError(
        request="GET /v5/market/kline", message="Invalid symbol",
        status_code=10001, time="12:00:00", resp_headers={},
    )
    client = FakeKlineClient(errors=[error])

    assert fetch_history("NOPE", "60", 5, client=client) == []
    assert len(client.calls) == 1


def test_transient_failure_is_retried(monkeypatch):
    monkeypatch.setattr(bybit_fetcher.time, "sleep", lambda seconds: None)
    error = FailedRequestError(
        request="GET /v5/market/kline", message="Bad Gateway",
        status_code=502, time="12:00:00", resp_headers={},
    )
    client = FakeKlineClient(rows=[row(0)], errors=[error])

    candles = fetch_history("SOLUSDT", "60", 5, client=client)

    assert len(candles) == 1
    assert len(client.calls) == 2


def make_collector(fetched=None):
    received = []

    async def fetcher(symbol, interval, limit):
        return list(fetched or [])

    async def on_candle(candle, history):
        received.append(candle)

    collector = CandleCollector(make_settings(), on_candle=on_candle, fetcher=fetcher)
    return collector, received


@pytest.mark.asyncio
async def test_live_bar_dispatched_once_when_confirmed():
    collector, received = make_collector()

    await collector._handle_message(kline_message(0, 50, confirm=False))
    await collector._handle_message(kline_message(0, 120, confirm=False))
    assert received == []

    await collector._handle_message(kline_message(0, 150, confirm=True))
    await collector._handle_message(kline_message(0, 150, confirm=True))

    assert [c.volume for c in received] == [150]
    assert collector.history.find(T0).volume == 150


@pytest.mark.asyncio
async def test_other_topics_and_acks_are_ignored():
    collector, received = make_collector()

    await collector._handle_message({"op": "subscribe", "success": True, "ret_msg": ""})
    await collector._handle_message({"op": "pong", "success": True})
    await collector._handle_message(kline_message(0, 150, confirm=True, topic="kline.60.BTCUSDT"))

    assert received == []
    assert len(collector.history) == 0


@pytest.mark.asyncio
async def test_backfill_replays_missed_bars_in_order():
    fetched = [bar(0, 100), bar(1, 1000), bar(2, 400), bar(3, 50, confirmed=False)]
    collector, received = make_collector(fetched)
    collector.history.upsert(bar(0, 100))

    dispatched = await collector.backfill()

    assert dispatched == 2
    assert [c.timestamp for c in received] == [bar(1, 0).timestamp, bar(2, 0).timestamp]
    # A second pass finds nothing new
    assert await collector.backfill() == 0


@pytest.mark.asyncio
async def test_load_history_does_not_dispatch():
    collector, received = make_collector([bar(0, 100), bar(1, 1000)])

    history = await collector.load_history()

    assert len(history) == 2
    assert received == []
    assert collector.topic == "kline.60.SOLUSDT"
    assert not collector.is_connected
    assert collector.last_message_age == 999.0


class FakeSocket:
    def __init__(self, error=None):
        self.error = error
        self.closed = False

    async def close(self):
        self.closed = True
        if self.error:
            raise self.error


@pytest.mark.asyncio
async def test_stop_closes_socket_and_waits_for_it():
    collector, _ = make_collector()
    socket = FakeSocket()
    collector._ws = socket

    collector.stop()
    collector.stop()
    await collector.wait_closed()

    assert socket.closed
    assert collector._close_task is None


@pytest.mark.asyncio
async def test_failed_socket_close_is_logged(caplog):
    collector, _ = make_collector()
    collector._ws = FakeSocket(error=ConnectionResetError("peer gone"))

    collector.stop()
    await collector.wait_closed()
    await asyncio.sleep(0)

    assert "Socket close failed: peer gone" in caplog.text
    assert collector._close_task is None
