import pytest

from models.order import OrderRequest
from modules.pre_trade_validator import estimate_slippage


def _request(**overrides):
    fields = dict(user_id="user-1", agent_id="agent-1", symbol="BTC/USDT", side="buy", amount=1.0)
    fields.update(overrides)
    return OrderRequest(**fields)


def test_estimate_slippage_walks_the_book():
    levels = [(100.0, 1.0), (102.0, 1.0)]
    assert estimate_slippage(levels, 1.0, 100.0) == pytest.approx(0.0)
    assert estimate_slippage(levels, 2.0, 100.0) == pytest.approx(1.0)
    assert estimate_slippage(levels, 3.0, 100.0) is None


@pytest.mark.asyncio
async def test_valid_order_gets_cost_and_fees(validator, agent):
    result = await validator.validate(_request(amount=2.0))

    assert result.is_valid
    assert result.estimated_cost == pytest.approx(200.0)
    assert result.estimated_fees == pytest.approx(0.2)
    assert result.slippage_estimate is not None
    assert result.warnings == []


@pytest.mark.asyncio
async def test_below_minimum_suggests_adjusted_amount(validator, agent):
    result = await validator.validate(_request(amount=0.05))

    assert not result.is_valid
    assert any("below minimum" in e for e in result.errors)
    assert result.adjusted_amount == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_agent_max_position_applies(validator, agent):
    result = await validator.validate(_request(amount=20.0))

    assert not result.is_valid
    assert any("exceeds limit of $1000.00" in e for e in result.errors)


@pytest.mark.asyncio
async def test_insufficient_quote_balance(validator, venue, agent):
    venue.balance = {"USDT": 50.0}

    result = await validator.validate(_request(amount=1.0))

    assert not result.is_valid
    assert any("Insufficient USDT balance" in e for e in result.errors)


@pytest.mark.asyncio
async def test_high_balance_usage_is_a_warning(validator, venue, agent):
    venue.balance = {"USDT": 105.0}

    result = await validator.validate(_request(amount=1.0))

    assert result.is_valid
    assert any("more than 90%" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_sell_checks_base_balance(validator, venue, agent):
    venue.balance = {"BTC": 0.5}

    result = await validator.validate(_request(side="sell", amount=1.0))

    assert any("Insufficient BTC balance" in e for e in result.errors)


@pytest.mark.asyncio
async def test_daily_volume_limit(validator, agent):
    await validator.update_daily_stats("user-1", 9_950.0)

    result = await validator.validate(_request(amount=1.0))

    assert any("Daily volume limit exceeded" in e for e in result.errors)


@pytest.mark.asyncio
async def test_rapid_movement_and_thin_book_warn(validator, venue, agent):
    venue.change_24h = -14.0
    venue.asks = [(100.5, 0.1)]

    result = await validator.validate(_request(amount=1.0))

    assert result.is_valid
    assert any("Rapid price movement" in w for w in result.warnings)
    assert any("Insufficient order book depth" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_limit_orders_skip_book_checks(validator, venue, agent):
    venue.asks = []

    result = await validator.validate(_request(order_type="limit", price=99.0))

    assert result.is_valid
    assert result.estimated_cost == pytest.approx(99.0)
    assert result.slippage_estimate is None


@pytest.mark.asyncio
async def test_market_data_failure_is_an_error(validator, venue, agent):
    venue.fail_ticker = True

    result = await validator.validate(_request())

    assert result.errors == ["Unable to retrieve market data: ticker unavailable"]
