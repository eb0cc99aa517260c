import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from core.errors import VenueError
from models.order import OrderStatus
from modules.venue_client import RateLimiter, RestVenueClient, normalize_venue_status, split_symbol

# ------------------------- Fixtures ------------------------- #


def _response(body, status=200):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body)
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.closed = False
    return s


@pytest.fixture
def client(session):
    return RestVenueClient(api_key="test_api_key", secret_key="test_secret_key",
                           base_url="https://mock.api.lbank.info", session=session)


def _reply(session, *bodies):
    session.request.return_value.__aenter__.side_effect = [_response(b) for b in bodies]

# ------------------------- Tests ------------------------- #


def test_split_symbol_formats():
    assert split_symbol("BTC/USDT") == ("BTC", "USDT")
    assert split_symbol("eth_usdt") == ("ETH", "USDT")
    assert split_symbol("sol-usdc") == ("SOL", "USDC")
    with pytest.raises(ValueError):
        split_symbol("BTCUSDT")


@pytest.mark.parametrize("status,filled_qty,expected", [
    ("closed", 1.0, OrderStatus.FILLED),
    ("canceled", 0.0, OrderStatus.CANCELED),
    ("open", 0.0, OrderStatus.PENDING),
    ("open", 0.4, OrderStatus.PARTIALLY_FILLED),
    ("rejected", 0.0, OrderStatus.FAILED),
])
def test_normalize_venue_status(status, filled_qty, expected):
    assert normalize_venue_status(status, filled_qty) == expected


@pytest.mark.asyncio
async def test_rate_limiter():
    limiter = RateLimiter(max_requests=2, window=0.2)
    loop = asyncio.get_running_loop()

    # First two should pass quickly
    start = loop.time()
    await limiter.acquire()
    await limiter.acquire()
    assert loop.time() - start < 0.1

    # Third should be rate limited
    start = loop.time()
    await limiter.acquire()
    assert loop.time() - start >= 0.15


@pytest.mark.asyncio
async def test_market_buy_is_priced_in_quote(client, session):
    _reply(session,
           {"result": True, "data": [{"ticker": {"latest": "50000", "change": "1.2"}}]},
           {"result": True, "data": {"order_id": "abc-1"}})

    ack = await client.submit_market_order("BTC/USDT", "buy", 0.01)

    assert ack.order_id == "abc-1"
    method, url = session.request.call_args.args
    sent = session.request.call_args.kwargs["data"]
    assert method == "POST"
    assert url.endswith("/v2/supplement/create_order.do")
    assert sent["type"] == "buy_market"
    assert float(sent["price"]) == pytest.approx(500.0)
    assert sent["symbol"] == "btc_usdt"
    assert sent["sign"]


@pytest.mark.asyncio
async def test_order_status_is_parsed(client, session):
    _reply(session, {"result": True, "data": [{
        "orderId": "abc-1", "status": 2, "origQty": "0.5", "executedQty": "0.5",
        "avgPrice": "101.5", "fee": "-0.05",
    }]})

    status = await client.get_order_status("BTC/USDT", "abc-1")

    assert status.status == "closed"
    assert status.filled == 0.5
    assert status.remaining == 0.0
    assert status.avg_fill_price == 101.5
    assert status.fee == 0.05


@pytest.mark.asyncio
async def test_balance_and_order_book(client, session):
    _reply(session,
           {"result": True, "data": {"balances": [{"asset": "usdt", "free": "250.5"}]}},
           {"result": True, "data": {"bids": [["99", "1"]], "asks": [["101", "2"]]}})

    balance = await client.get_balance()
    book = await client.get_order_book("BTC/USDT", depth=5)

    assert balance.free == {"USDT": 250.5}
    assert book.bids == [(99.0, 1.0)]
    assert book.asks == [(101.0, 2.0)]
    assert session.request.call_args.kwargs["params"] == {"symbol": "btc_usdt", "size": 5}


@pytest.mark.asyncio
async def test_api_rejection_raises_venue_error(client, session):
    _reply(session, {"result": "false", "error_code": 10016})

    with pytest.raises(VenueError) as exc:
        await client.get_balance()
    assert "10016" in exc.value.reason
    assert client.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_http_error_raises_venue_error(client, session):
    session.request.return_value.__aenter__.return_value = _response({}, status=503)

    with pytest.raises(VenueError) as exc:
        await client.get_ticker("BTC/USDT")
    assert exc.value.status == 503


@pytest.mark.asyncio
async def test_transport_failure_raises_venue_error(client, session):
    session.request.side_effect = aiohttp.ClientError("connection reset")

    with pytest.raises(VenueError):
        await client.get_order_history("BTC/USDT")
    assert client.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_non_json_body_raises_venue_error(client, session):
    resp = _response(None)
    resp.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
    session.request.return_value.__aenter__.return_value = resp

    with pytest.raises(VenueError) as exc:
        await client.submit_market_order("BTC/USDT", "sell", 1.0)
    assert "unreadable body" in exc.value.reason
    assert client.metrics["errors"] == 1
