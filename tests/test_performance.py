import pandas as pd
import pytest

from models.events import OrderCompleted
from modules.performance import PerformanceTracker, compute_metrics

from conftest import START


def _frame(pnls, price=100.0, quantity=1.0):
    return pd.DataFrame({
        "pnl": pnls,
        "price": [price] * len(pnls),
        "quantity": [quantity] * len(pnls),
    })


def _completed(order_id, pnl, status="filled", agent_id="agent-1", ts=START):
    return OrderCompleted(order_id=order_id, user_id="user-1", agent_id=agent_id,
                          symbol="BTC/USDT", side="sell", amount=1.0, status=status,
                          actual_fill_price=100.0, fees=0.1, profit=None,
                          realized_pnl=pnl, closes_trade_id="t1", completed_at=ts)


@pytest.fixture
def perf(store, persistence, bus, clock):
    return PerformanceTracker(store, persistence, bus=bus, clock=clock)


def test_empty_frame_gives_zero_metrics():
    metrics = compute_metrics(_frame([]), now=START)
    assert metrics.total_trades == 0
    assert metrics.win_rate == 0.0
    assert metrics.last_updated == START


def test_metrics_from_round_trips():
    metrics = compute_metrics(_frame([10.0, -5.0, 20.0, -10.0]), now=START)

    assert metrics.total_trades == 4
    assert metrics.win_rate == 50.0
    assert metrics.total_pnl == 15.0
    # cumulative 10, 5, 25, 15: the 10 → 5 fall is the deepest
    assert metrics.max_drawdown == 50.0
    # returns 0.1, -0.05, 0.2, -0.1 → mean 0.0375, sample std ~0.1377
    assert metrics.sharpe_ratio == 0.272


def test_drawdown_ignored_until_peak_positive():
    metrics = compute_metrics(_frame([-5.0, -5.0]), now=START)
    assert metrics.max_drawdown == 0.0
    assert metrics.win_rate == 0.0


def test_single_trade_has_no_sharpe():
    assert compute_metrics(_frame([3.0]), now=START).sharpe_ratio == 0.0


@pytest.mark.asyncio
async def test_completed_closing_order_updates_agent(perf, persistence, agent):
    metrics = await perf.on_order_completed(_completed("o1", 12.5))

    assert metrics.total_trades == 1
    assert metrics.total_pnl == 12.5
    assert persistence.get_agent_performance(agent.id)["total_trades"] == 1


@pytest.mark.asyncio
async def test_each_order_counts_once(perf, agent):
    await perf.on_order_completed(_completed("o1", 5.0))
    assert await perf.on_order_completed(_completed("o1", 5.0)) is None

    assert (await perf.get_agent_performance(agent.id)).total_trades == 1


@pytest.mark.asyncio
async def test_non_closing_or_unfilled_orders_are_ignored(perf, agent):
    assert await perf.on_order_completed(_completed("o1", None)) is None
    assert await perf.on_order_completed(_completed("o2", 5.0, status="canceled")) is None
    assert await perf.on_order_completed(_completed("o3", 5.0, agent_id=None)) is None


@pytest.mark.asyncio
async def test_bus_delivery_records_result(perf, bus, agent):
    bus.publish(_completed("o1", -4.0))
    bus.publish(_completed("o1", -4.0))
    await bus.drain()

    metrics = await perf.get_agent_performance(agent.id)
    assert metrics.total_trades == 1
    assert metrics.total_pnl == -4.0


@pytest.mark.asyncio
async def test_performance_falls_back_to_document_store(perf, store, clock, agent):
    await perf.on_order_completed(_completed("o1", 7.0))
    clock.advance(31)
    assert await store.get(f"agent_performance:{agent.id}") is None

    metrics = await perf.get_agent_performance(agent.id)
    assert metrics.total_pnl == 7.0


@pytest.mark.asyncio
async def test_unknown_agent_gets_defaults(perf):
    metrics = await perf.get_agent_performance("nobody")
    assert metrics.total_trades == 0
