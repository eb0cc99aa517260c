import pytest

from models.signal import Recommendation, SignalStatus, TradingSignal
from models.trade import TradeRecord, TradeStatus

from conftest import START


def _trade(trade_id, **overrides):
    fields = dict(id=trade_id, agent_id="agent-1", user_id="user-1", symbol="BTC/USDT",
                  side="buy", quantity=1.0, price=100.0)
    fields.update(overrides)
    return TradeRecord(**fields)


def test_agent_round_trip_and_active_listing(persistence, agent):
    assert persistence.get_agent(agent.id) == agent
    persistence.upsert_agent(agent.model_copy(update={"id": "agent-2", "is_active": False}))

    assert [a.id for a in persistence.list_active_agents()] == ["agent-1"]
    assert persistence.get_agent("missing") is None


def test_agent_performance_document(persistence, agent):
    assert persistence.get_agent_performance(agent.id) is None
    persistence.update_agent_performance(agent.id, {"total_trades": 3})
    assert persistence.get_agent_performance(agent.id) == {"total_trades": 3}


def test_signal_upsert_and_cleanup(persistence):
    signal = TradingSignal(id="s1", agent_id="agent-1", symbol="BTC/USDT",
                           recommendation=Recommendation.BUY, confidence=0.8, created_at=START)
    persistence.upsert_signal(signal)
    assert persistence.delete_signals_before(START + 10) == 0  # still pending

    signal.transition(SignalStatus.FAILED, "stale")
    persistence.upsert_signal(signal)
    assert persistence.get_signal("s1").failure_reason == "stale"
    assert persistence.delete_signals_before(START + 10) == 1
    assert persistence.get_signal("s1") is None


def test_open_trades_exclude_closing_and_finished(persistence):
    persistence.save_trade(_trade("open-pending"))
    persistence.save_trade(_trade("open-filled", status=TradeStatus.FILLED, order_id="o1"))
    persistence.save_trade(_trade("done", status=TradeStatus.CLOSED))
    persistence.save_trade(_trade("rejected", status=TradeStatus.REJECTED))
    persistence.save_trade(_trade("closer", side="sell", closes_trade_id="open-filled"))

    assert {t.id for t in persistence.list_open_trades("agent-1")} == {"open-pending", "open-filled"}
    assert persistence.get_trade_by_order_id("o1").id == "open-filled"


def test_save_trade_updates_in_place(persistence):
    trade = _trade("t1")
    persistence.save_trade(trade)
    trade.status = TradeStatus.FILLED
    trade.filled_price = 101.0
    persistence.save_trade(trade)

    stored = persistence.get_trade("t1")
    assert stored.status == TradeStatus.FILLED
    assert stored.entry_price == 101.0


def test_performance_trades_are_recorded_once(persistence):
    kwargs = dict(agent_id="agent-1", symbol="BTC/USDT", side="sell",
                  quantity=1.0, price=100.0, pnl=5.0, ts=START)
    assert persistence.record_performance_trade(order_id="o1", **kwargs) is True
    assert persistence.record_performance_trade(order_id="o1", **kwargs) is False
    assert persistence.record_performance_trade(order_id="o2", **{**kwargs, "ts": START + 1}) is True

    frame = persistence.performance_frame("agent-1")
    assert list(frame["order_id"]) == ["o1", "o2"]
    assert frame["pnl"].sum() == pytest.approx(10.0)
