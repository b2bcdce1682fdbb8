import pytest
from pybit.exceptions import FailedRequestError, InvalidRequestError

from core.models import OrderStatus, Side
from execution.order_utils import (
    VenueErrorKind,
    calculate_limit_price,
    classify_error,
    classify_ret_code,
)
from execution.venue import BybitVenue
from tests.test_helpers import make_settings


def invalid(code: int, message: str = "bad request") -> InvalidRequestError:
    return InvalidRequestError(
        request="POST /v5/position/trading-stop", message=message,
        status_code=code, time="12:00:00", resp_headers={},
    )


class FakeHTTP:
    """Stands in for ``pybit.unified_trading.HTTP``: canned payloads per method."""

    def __init__(self, responses=None, errors=None):
        self.responses = responses or {}
        self.errors = errors or {}
        self.requests: list[tuple[str, dict]] = []

    def __getattr__(self, method):
        def call(**params):
            self.requests.append((method, params))
            if method in self.errors:
                raise self.errors[method]
            response = self.responses.get(method, {"result": {}})
            return response.pop(0) if isinstance(response, list) else response
        return call

    def params(self, method):
        return [params for name, params in self.requests if name == method]


def venue_with(**kwargs):
    http = FakeHTTP(**kwargs)
    return BybitVenue(make_settings(), client=http), http


@pytest.mark.parametrize("code,kind", [
    (34040, VenueErrorKind.NOT_MODIFIED),
    (110043, VenueErrorKind.NOT_MODIFIED),
    (10006, VenueErrorKind.TRANSIENT),
    (10003, VenueErrorKind.UNAVAILABLE),
    (110007, VenueErrorKind.REJECTED),
])
def test_ret_code_classification(code, kind):
    assert classify_ret_code(code) == kind
    assert classify_error(invalid(code)).kind == kind


def test_exception_classification():
    failed = FailedRequestError(
        request="GET /v5/market/tickers", message="Bad Gateway",
        status_code=502, time="12:00:00", resp_headers={},
    )
    assert classify_error(failed).kind == VenueErrorKind.TRANSIENT
    assert classify_error(TimeoutError()).kind == VenueErrorKind.TRANSIENT
    assert classify_error(KeyError("list")).kind == VenueErrorKind.INVALID_RESPONSE


def test_limit_price_is_marketable():
    assert calculate_limit_price(100.0, Side.BUY.sign, 0.05) == pytest.approx(100.05)
    assert calculate_limit_price(100.0, Side.SELL.sign, 0.05) == pytest.approx(99.95)


@pytest.mark.asyncio
async def test_open_position_skips_flat_entries():
    venue, _ = venue_with(responses={"get_positions": {"result": {"list": [
        {"symbol": "SOLUSDT", "side": "", "size": "0", "avgPrice": "", "takeProfit": "", "stopLoss": ""},
        {"symbol": "SOLUSDT", "side": "Sell", "size": "2.5", "avgPrice": "101.2", "markPrice": "100.9",
         "takeProfit": "98.2", "stopLoss": ""},
    ]}}})

    result = await venue.get_open_position("SOLUSDT")

    assert result.ok
    assert result.value.position_side is Side.SELL
    assert result.value.size == 2.5
    assert not result.value.has_stop_loss


@pytest.mark.asyncio
async def test_flat_account_returns_none():
    venue, _ = venue_with(responses={"get_positions": {"result": {"list": [
        {"symbol": "SOLUSDT", "side": "", "size": "0"},
    ]}}})

    result = await venue.get_open_position("SOLUSDT")

    assert result.ok and result.value is None


@pytest.mark.asyncio
async def test_balance_picks_requested_coin():
    venue, http = venue_with(responses={"get_wallet_balance": {"result": {"list": [
        {"accountType": "CONTRACT", "coin": [
            {"coin": "BTC", "walletBalance": "0.1"},
            {"coin": "USDT", "walletBalance": "250.5", "availableToWithdraw": "200"},
        ]},
    ]}}})

    result = await venue.get_balance("CONTRACT")

    assert result.value.usable("CONTRACT") == 200.0
    assert http.params("get_wallet_balance") == [{"accountType": "CONTRACT", "coin": "USDT"}]


@pytest.mark.asyncio
async def test_limit_order_params():
    venue, http = venue_with(responses={"place_order": {"result": {"orderId": "abc-1"}}})

    result = await venue.submit_limit_order("SOLUSDT", Side.SELL, 10.0, 99.95)

    assert result.value == "abc-1"
    params = http.params("place_order")[0]
    assert params["side"] == "Sell" and params["orderType"] == "Limit"
    assert params["qty"] == "10" and params["price"] == "99.95"
    assert "reduceOnly" not in params


@pytest.mark.asyncio
async def test_reduce_only_market_close_params():
    venue, http = venue_with(responses={"place_order": {"result": {"orderId": "close-9"}}})

    await venue.submit_reduce_only_order("SOLUSDT", Side.BUY, 2.5)

    params = http.params("place_order")[0]
    assert params["orderType"] == "Market"
    assert params["reduceOnly"] is True
    assert "price" not in params


@pytest.mark.asyncio
async def test_stop_levels_send_only_given_fields():
    venue, http = venue_with()

    await venue.set_stop_levels("SOLUSDT", stop_loss=101.25)
    await venue.set_stop_levels("SOLUSDT", take_profit=0, stop_loss=102)

    first, second = http.params("set_trading_stop")
    assert first["stopLoss"] == "101.25" and "takeProfit" not in first
    assert second["takeProfit"] == "0" and second["stopLoss"] == "102"


@pytest.mark.asyncio
async def test_not_modified_is_reported_not_raised():
    venue, _ = venue_with(errors={"set_trading_stop": invalid(34040, "not modified")})

    result = await venue.set_stop_levels("SOLUSDT", stop_loss=101)

    assert not result.ok and result.not_modified
    assert venue.errors == 0


@pytest.mark.asyncio
async def test_order_status_falls_back_to_history():
    venue, http = venue_with(responses={
        "get_open_orders": {"result": {"list": []}},
        "get_order_history": {"result": {"list": [
            {"orderId": "o-1", "orderStatus": "Filled", "avgPrice": "99.9", "cumExecQty": "10"},
        ]}},
    })

    result = await venue.get_order_status("SOLUSDT", "o-1")

    assert result.value.order_status == OrderStatus.FILLED
    assert result.value.fill_price == 99.9
    assert [name for name, _ in http.requests] == ["get_open_orders", "get_order_history"]


@pytest.mark.asyncio
async def test_instrument_is_cached():
    venue, http = venue_with(responses={"get_instruments_info": {"result": {"list": [{
        "symbol": "SOLUSDT",
        "lotSizeFilter": {"qtyStep": "0.1", "minOrderQty": "0.1"},
        "leverageFilter": {"maxLeverage": "50.00"},
        "priceFilter": {"tickSize": "0.010"},
    }]}}})

    first = await venue.get_instrument("SOLUSDT")
    second = await venue.get_instrument("SOLUSDT")

    assert first.value.tick_size == 0.01 and second.value is first.value
    assert len(http.params("get_instruments_info")) == 1


@pytest.mark.asyncio
async def test_malformed_payload_is_invalid_response():
    venue, _ = venue_with(responses={"get_tickers": {"result": {"list": []}}})

    result = await venue.get_ticker("SOLUSDT")

    assert result.error.kind == VenueErrorKind.INVALID_RESPONSE


@pytest.mark.asyncio
async def test_private_calls_need_credentials():
    http = FakeHTTP()
    venue = BybitVenue(make_settings(bybit_api_key="", bybit_api_secret=""), client=http)

    private = await venue.get_open_position("SOLUSDT")
    public = await venue.get_ticker("SOLUSDT")

    assert private.error.kind == VenueErrorKind.UNAVAILABLE
    assert [name for name, _ in http.requests] == ["get_tickers"]
    assert public.error.kind == VenueErrorKind.INVALID_RESPONSE
