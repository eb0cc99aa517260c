import logging
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from core.initialization import load_configuration
from core.pipeline import TradingPipeline
from models.order import PreviewStatus
from models.signal import Signal, SignalStatus
from modules.signal_source import SignalSource

from conftest import filled


@pytest.fixture
def config(tmp_path):
    return load_configuration(str(tmp_path / "absent.env"))


@pytest.fixture
def source():
    src = AsyncMock(spec=SignalSource)
    src.generate_signal.return_value = Signal(symbol="BTC/USDT", recommendation="BUY",
                                              confidence=0.9, reasoning="breakout")
    return src


@pytest_asyncio.fixture
async def pipeline(config, store, persistence, venue, bus, clock, sleep, source):
    p = TradingPipeline.from_config(config, overrides={
        "logger": logging.getLogger("test.pipeline"),
        "store": store,
        "persistence": persistence,
        "venue": venue,
        "bus": bus,
        "clock": clock,
        "sleep": sleep,
        "source": source,
    })
    yield p
    await p.scheduler.stop()
    await p.tracker.stop()


@pytest.mark.asyncio
async def test_recurring_jobs_registered(pipeline):
    assert set(pipeline.scheduler.get_job_stats()) == {
        "signal_queue", "position_monitor", "preview_expiry", "cleanup", "market_analysis",
    }
    assert pipeline.scheduler.get_job_stats()["signal_queue"]["interval"] == 30.0


@pytest.mark.asyncio
async def test_no_source_no_analysis_job(config, store, persistence, venue, bus, clock):
    p = TradingPipeline.from_config(config, overrides={
        "store": store, "persistence": persistence, "venue": venue, "bus": bus, "clock": clock,
    })
    assert "market_analysis" not in p.scheduler.get_job_stats()


@pytest.mark.asyncio
async def test_generate_requires_source(config, store, persistence, venue, bus, clock, agent):
    p = TradingPipeline.from_config(config, overrides={
        "store": store, "persistence": persistence, "venue": venue, "bus": bus, "clock": clock,
    })
    with pytest.raises(RuntimeError):
        await p.generate_and_queue_signal(agent.id)


@pytest.mark.asyncio
async def test_signal_to_closed_position(pipeline, agent, venue, clock, bus):
    queued = await pipeline.generate_and_queue_signal(agent.id)
    assert (await pipeline.get_queue_stats())["total_queued"] == 1

    assert await pipeline.scheduler.run_once("signal_queue")
    [preview] = await pipeline.confirmation.get_user_pending_previews("user-1")
    assert preview.amount == pytest.approx(10.0)

    venue.script("ord-1", filled("ord-1", 10.0, 100.0))
    executed = await pipeline.confirm_order(preview.id)
    assert executed.status == PreviewStatus.EXECUTED
    await pipeline.tracker.wait_for("ord-1")
    await bus.drain()

    signal = await pipeline.dispatcher.get_signal(queued.id)
    assert signal.status == SignalStatus.EXECUTED
    assert [o.order_id for o in await pipeline.get_order_history("user-1")] == ["ord-1"]

    # baseline check, then a 5 % drop breaches the risk-level-3 stop
    await pipeline.scheduler.run_once("position_monitor")
    assert len(await pipeline.get_agent_positions(agent.id)) == 1
    venue.script("ord-2", filled("ord-2", 10.0, 95.0))
    clock.advance(10)
    venue.price = 95.0
    await pipeline.scheduler.run_once("position_monitor")
    await bus.drain()
    await pipeline.tracker.wait_for("ord-2")
    await bus.drain()

    assert venue.submitted[1]["side"] == "sell"
    metrics = await pipeline.get_agent_performance(agent.id)
    assert metrics.total_trades == 1
    assert metrics.total_pnl == pytest.approx(-50.0)
    assert metrics.win_rate == 0.0


@pytest.mark.asyncio
async def test_preview_from_plain_dict(pipeline, agent):
    preview = await pipeline.create_order_preview({
        "user_id": "user-1", "agent_id": agent.id, "symbol": "BTC/USDT",
        "side": "buy", "amount": 2.0,
    })
    assert preview.status == PreviewStatus.PENDING

    cancelled = await pipeline.cancel_order_preview(preview.id, "changed my mind")
    assert cancelled.status == PreviewStatus.CANCELLED
    assert cancelled.failure_reason == "changed my mind"


@pytest.mark.asyncio
async def test_broadcast_through_facade(pipeline, agent):
    result = await pipeline.broadcast_signal(
        Signal(symbol="BTC/USDT", recommendation="SELL", confidence=0.8)
    )
    assert result["total_agents"] == 1
    assert len(result["queued"]) == 1


@pytest.mark.asyncio
async def test_analyses_honour_agent_interval(pipeline, source, agent, clock):
    assert await pipeline.run_due_analyses() == 1
    assert await pipeline.run_due_analyses() == 0

    clock.advance(agent.analysis_interval)
    assert await pipeline.run_due_analyses() == 1
    assert source.generate_signal.await_count == 2


@pytest.mark.asyncio
async def test_failed_analysis_is_logged_not_raised(pipeline, source, agent):
    source.generate_signal.side_effect = RuntimeError("model offline")
    assert await pipeline.run_due_analyses() == 0


@pytest.mark.asyncio
async def test_cleanup_reports_counts(pipeline, store, clock):
    await store.set("scratch", 1, ttl=1)
    clock.advance(2)

    result = await pipeline.cleanup()

    assert result == {"signals": 0, "tracking": 0, "expired_keys": 1}


@pytest.mark.asyncio
async def test_start_and_stop(config, clock, venue, bus):
    from module.persistence.sqlite import SQLitePersistence
    from utils.cache import MemoryStore

    p = TradingPipeline.from_config(config, overrides={
        "store": MemoryStore(clock=clock), "persistence": SQLitePersistence(":memory:"),
        "venue": venue, "bus": bus, "clock": clock,
    })
    await p.start()
    assert p.scheduler.running
    await p.stop()
    assert not p.scheduler.running
