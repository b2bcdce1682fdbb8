import json
from datetime import timedelta

import httpx
import pytest

from core.alerts import AlertConfig, AlertLevel, AlertManager
from core.models import Side, TradeResult
from core.notifications import NotificationFormatter
from tests.test_helpers import T0, bar, make_settings


def manager_with(handler) -> AlertManager:
    manager = AlertManager(AlertConfig(
        enabled=True, telegram_token="123:abc", telegram_chat_id="42", min_interval_sec=0.0,
    ))
    manager._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return manager


@pytest.mark.asyncio
async def test_disabled_manager_sends_nothing():
    manager = AlertManager(AlertConfig.from_settings(make_settings()))

    assert not manager.config.enabled
    assert await manager.send("hello") is False
    await manager.close()


@pytest.mark.asyncio
async def test_send_posts_html_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    manager = manager_with(handler)
    assert await manager.send("<b>hi</b>", AlertLevel.WARNING)
    await manager.close()

    assert seen[0].url.path == "/bot123:abc/sendMessage"
    body = json.loads(seen[0].content)
    assert body["chat_id"] == "42"
    assert body["parse_mode"] == "HTML"
    assert body["text"].startswith(AlertLevel.WARNING.value)


@pytest.mark.asyncio
async def test_telegram_error_status_returns_false():
    manager = manager_with(lambda request: httpx.Response(400, text="Bad Request: chat not found"))

    assert await manager.send("hi") is False
    await manager.close()


@pytest.mark.asyncio
async def test_transport_failure_is_logged_not_raised():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    manager = manager_with(handler)

    assert await manager.send("hi") is False
    await manager.close()


@pytest.mark.asyncio
async def test_notify_is_flushed_on_close():
    seen = []
    manager = manager_with(lambda request: seen.append(request) or httpx.Response(200))

    manager.notify("one")
    manager.notify("two")
    await manager.close()

    assert len(seen) == 2
    assert manager._client.is_closed


def test_position_closed_text():
    formatter = NotificationFormatter("SOLUSDT", 1000.0, 3.0)
    result = TradeResult(
        symbol="SOLUSDT", side=Side.SELL, entry_price=100.0, exit_price=97.0,
        entry_time=T0, exit_time=T0 + timedelta(hours=2), qty=10, exit_reason="external",
    )

    text = formatter.position_closed(result)

    assert "📉 SHORT" in text
    assert "+3.00 pts" in text
    assert "$+30.00" in text


def test_volume_spike_text_shows_ratio():
    formatter = NotificationFormatter("SOLUSDT", 1000.0, 3.0)

    text = formatter.volume_spike(bar(1, 1000), bar(0, 250))

    assert "VOLUME SPIKE SOLUSDT" in text
    assert "(4.00x)" in text
    assert "🟢" in text
