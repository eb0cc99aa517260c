from unittest.mock import AsyncMock

import pytest

from core.errors import ExecutionError
from models.events import OrderCompleted, TrackingFailed, TrackingTimedOut
from models.order import OrderPreview, OrderStatus, TrackedOrder
from models.position import Position
from models.trade import TradeRecord, TradeStatus
from models.venue import VenueOrderStatus
from modules.order_execution import ACTIVE_ORDERS_KEY, OrderTracker, PollOutcome

from conftest import START, filled


def _preview(**overrides):
    fields = dict(id="user-1_p1", user_id="user-1", agent_id="agent-1", signal_id="sig-1",
                  symbol="BTC/USDT", side="buy", amount=2.0, estimated_cost=200.0,
                  take_profit=110.0, stop_loss=95.0, expires_at=START + 300)
    fields.update(overrides)
    return OrderPreview(**fields)


@pytest.fixture
def completed(bus):
    seen = []
    bus.subscribe(OrderCompleted, seen.append)
    return seen


@pytest.mark.asyncio
async def test_submit_order_writes_trade_and_tracks(executor, tracker, venue, persistence, store):
    order = await executor.submit_order(_preview())

    assert order.order_id == "ord-1"
    assert order.expected_price == pytest.approx(100.0)
    assert venue.submitted[0]["type"] == "market"

    trade = persistence.get_trade_by_order_id("ord-1")
    assert trade.quantity == 2.0
    assert trade.target_price == 110.0
    assert trade.stop_loss == 95.0
    assert "ord-1" in await store.smembers(ACTIVE_ORDERS_KEY)


@pytest.mark.asyncio
async def test_limit_preview_uses_limit_order(executor, venue):
    await executor.submit_order(_preview(order_type="limit", price=98.0))

    assert venue.submitted[0]["type"] == "limit"
    assert venue.submitted[0]["price"] == 98.0


@pytest.mark.asyncio
async def test_rejected_submission_leaves_record(executor, venue, persistence):
    venue.fail_submit = "MIN_NOTIONAL"

    with pytest.raises(ExecutionError) as exc:
        await executor.submit_order(_preview())

    trade = persistence.get_trade(exc.value.trade_id)
    assert trade.status == TradeStatus.REJECTED
    assert trade.reason == "MIN_NOTIONAL"


@pytest.mark.asyncio
async def test_fill_completes_order(executor, tracker, venue, persistence, store, bus, completed):
    venue.script("ord-1",
                 VenueOrderStatus(order_id="ord-1", status="open", filled=1.0),
                 filled("ord-1", 2.0, 101.0, fee=0.2))

    await executor.submit_order(_preview())
    result = await tracker.wait_for("ord-1")

    assert result.outcome == PollOutcome.TERMINAL
    assert result.attempts == 2
    assert result.order.status == OrderStatus.FILLED
    assert result.order.actual_fill_price == 101.0
    assert result.order.profit == pytest.approx(2.0)
    assert result.order.fees == 0.2

    trade = persistence.get_trade_by_order_id("ord-1")
    assert trade.status == TradeStatus.FILLED
    assert trade.filled_price == 101.0
    assert await store.smembers(ACTIVE_ORDERS_KEY) == []
    assert [o.order_id for o in await tracker.get_order_history("user-1")] == ["ord-1"]
    assert [o.order_id for o in await tracker.get_agent_order_history("agent-1")] == ["ord-1"]
    assert [o.order_id for o in await tracker.get_symbol_order_history("btc_usdt")] == ["ord-1"]

    await bus.drain()
    assert [e.status for e in completed] == ["filled"]


@pytest.mark.asyncio
async def test_sell_profit_sign(tracker):
    order = TrackedOrder(order_id="o", user_id="u", symbol="BTC/USDT", side="sell",
                         amount=2.0, expected_price=100.0)
    updated = tracker.update_tracking_data(order, filled("o", 2.0, 99.0))
    assert updated.profit == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_polling_times_out_without_raising(venue, store, persistence, bus, clock, sleep):
    timeouts = []
    bus.subscribe(TrackingTimedOut, timeouts.append)
    tracker = OrderTracker(venue, store, persistence, bus=bus, poll_interval=3.0,
                           max_duration=9.0, clock=clock, sleep=sleep)
    order = TrackedOrder(order_id="slow", user_id="user-1", symbol="BTC/USDT",
                         side="buy", amount=1.0, timestamp=clock())

    assert await tracker.track_order(order)
    result = await tracker.wait_for("slow")

    assert result.outcome == PollOutcome.TIMEOUT
    assert result.attempts == 4
    assert result.order.status == OrderStatus.PENDING
    assert await store.get("order_lock:slow") is None
    assert "slow" in await tracker.get_active_orders()

    await bus.drain()
    assert [t.order_id for t in timeouts] == ["slow"]


@pytest.mark.asyncio
async def test_second_tracker_is_refused(tracker, clock):
    order = TrackedOrder(order_id="dup", user_id="u", symbol="BTC/USDT", side="buy", amount=1.0)
    await tracker.store.set_if_absent("order_lock:dup", clock(), ttl=60)

    assert await tracker.track_order(order) is False


@pytest.mark.asyncio
async def test_closing_fill_realises_pnl(executor, tracker, venue, persistence, bus, completed):
    original = TradeRecord(id="t-open", agent_id="agent-1", user_id="user-1", symbol="BTC/USDT",
                           side="buy", quantity=2.0, price=100.0, filled_price=100.0,
                           filled_quantity=2.0, status=TradeStatus.FILLED, order_id="ord-0")
    persistence.save_trade(original)
    position = Position.from_prices(side="buy", entry_price=100.0, current_price=110.0,
                                    quantity=2.0, agent_id="agent-1", trade_id="t-open",
                                    user_id="user-1", symbol="BTC/USDT", entry_time=START)
    venue.script("ord-1", filled("ord-1", 2.0, 110.0))

    order = await executor.submit_closing_order(position, 2.0, "take profit")
    await tracker.wait_for(order.order_id)

    assert venue.submitted[0]["side"] == "sell"
    closed = persistence.get_trade("t-open")
    assert closed.status == TradeStatus.CLOSED
    assert closed.pnl == pytest.approx(20.0)
    closing = persistence.get_trade_by_order_id("ord-1")
    assert closing.status == TradeStatus.CLOSED
    assert closing.closes_trade_id == "t-open"

    await bus.drain()
    assert completed[0].realized_pnl == pytest.approx(20.0)
    assert completed[0].closes_trade_id == "t-open"


@pytest.mark.asyncio
async def test_partial_close_keeps_trade_open(executor, tracker, venue, persistence):
    persistence.save_trade(TradeRecord(id="t-open", agent_id="agent-1", user_id="user-1",
                                       symbol="BTC/USDT", side="buy", quantity=2.0, price=100.0,
                                       filled_price=100.0, status=TradeStatus.FILLED))
    position = Position.from_prices(side="buy", entry_price=100.0, current_price=90.0,
                                    quantity=2.0, agent_id="agent-1", trade_id="t-open",
                                    user_id="user-1", symbol="BTC/USDT", entry_time=START)
    venue.script("ord-1", filled("ord-1", 1.0, 90.0))

    await executor.submit_closing_order(position, 1.0, "partial")
    await tracker.wait_for("ord-1")

    trade = persistence.get_trade("t-open")
    assert trade.status == TradeStatus.FILLED
    assert trade.filled_quantity == pytest.approx(1.0)
    assert trade.pnl == pytest.approx(-10.0)
    assert [t.id for t in persistence.list_open_trades("agent-1")] == ["t-open"]


@pytest.mark.asyncio
async def test_fill_price_fallbacks(tracker, venue):
    venue.script("via-status", filled("via-status", 1.0, 105.0))
    assert await tracker.get_order_fill_price("via-status", "BTC/USDT") == 105.0

    venue.history = [filled("via-history", 1.0, 99.5)]
    assert await tracker.get_order_fill_price("via-history", "BTC/USDT") == 99.5

    assert await tracker.get_order_fill_price("unknown") is None


@pytest.mark.asyncio
async def test_cleanup_drops_orphans(tracker, store):
    await store.sadd(ACTIVE_ORDERS_KEY, "ghost")
    assert await tracker.cleanup_old_data() == 1
    assert await tracker.get_active_orders() == []


@pytest.mark.asyncio
async def test_crashed_poll_run_is_reported(executor, tracker, venue, store, bus, monkeypatch):
    failures = []
    bus.subscribe(TrackingFailed, failures.append)
    monkeypatch.setattr(venue, "get_order_status",
                        AsyncMock(side_effect=RuntimeError("unexpected payload")))

    await executor.submit_order(_preview())
    result = await tracker.wait_for("ord-1")

    assert result.outcome == PollOutcome.ERROR
    assert "unexpected payload" in result.error
    assert result.order.symbol == "BTC/USDT"
    assert await store.get("order_lock:ord-1") is None
    # still listed so a later run can pick it up
    assert "ord-1" in await tracker.get_active_orders()

    await bus.drain()
    assert [(f.order_id, f.symbol) for f in failures] == [("ord-1", "BTC/USDT")]
