import asyncio
import itertools
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from core.errors import VenueError
from models.agent import AgentConfig
from models.venue import Balance, OrderBook, Ticker, VenueOrderAck, VenueOrderStatus
from module.persistence.sqlite import SQLitePersistence
from modules.order_confirmation import OrderConfirmationService
from modules.order_execution import OrderExecutor, OrderTracker
from modules.pre_trade_validator import PreTradeValidator
from modules.venue_client import BaseVenueClient
from utils.cache import MemoryStore
from utils.event_bus import EventBus

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVenue(BaseVenueClient):
    """In-memory venue: fixed ticker/book/balance, scripted order states."""

    def __init__(self, price: float = 100.0, balance: Optional[Dict[str, float]] = None):
        self.price = price
        self.change_24h = 1.0
        self.balance = balance if balance is not None else {"USDT": 10_000.0, "BTC": 10.0}
        self.bids = [(price * 0.9999, 50.0), (price * 0.999, 500.0)]
        self.asks = [(price * 1.0001, 50.0), (price * 1.001, 500.0)]
        self.submitted: List[dict] = []
        self.status_script: Dict[str, List[VenueOrderStatus]] = {}
        self.history: List[VenueOrderStatus] = []
        self.fail_submit: Optional[str] = None
        self.fail_ticker = False
        self.status_calls = 0
        self._ids = itertools.count(1)

    def script(self, order_id: str, *statuses: VenueOrderStatus) -> None:
        self.status_script[order_id] = list(statuses)

    async def _ack(self, **order) -> VenueOrderAck:
        if self.fail_submit:
            raise VenueError(self.fail_submit)
        order_id = f"ord-{next(self._ids)}"
        self.submitted.append({"order_id": order_id, **order})
        return VenueOrderAck(order_id=order_id)

    async def submit_market_order(self, symbol, side, amount):
        return await self._ack(symbol=symbol, side=side, amount=amount, type="market")

    async def submit_limit_order(self, symbol, side, amount, price):
        return await self._ack(symbol=symbol, side=side, amount=amount, price=price, type="limit")

    async def get_order_status(self, symbol, order_id):
        self.status_calls += 1
        script = self.status_script.get(order_id)
        if not script:
            return VenueOrderStatus(order_id=order_id, status="open")
        # last scripted state is sticky
        return script.pop(0) if len(script) > 1 else script[0]

    async def get_order_history(self, symbol, limit=100):
        return list(self.history)

    async def get_balance(self):
        return Balance(free=dict(self.balance))

    async def get_ticker(self, symbol):
        if self.fail_ticker:
            raise VenueError("ticker unavailable")
        return Ticker(symbol=symbol, last_price=self.price, change_percent_24h=self.change_24h)

    async def get_order_book(self, symbol, depth=20):
        return OrderBook(symbol=symbol, bids=list(self.bids), asks=list(self.asks))


def filled(order_id: str, qty: float, price: float, fee: float = 0.0) -> VenueOrderStatus:
    return VenueOrderStatus(order_id=order_id, status="closed", filled=qty,
                            remaining=0.0, avg_fill_price=price, fee=fee)


# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def bus():
    b = EventBus()
    yield b
    await b.stop()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def persistence():
    p = SQLitePersistence(":memory:")
    yield p
    p.close()


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def agent(persistence):
    a = AgentConfig(id="agent-1", user_id="user-1", name="Alpha", symbol="BTC/USDT",
                    risk_percentage=2.0, risk_level=3, max_position_size=1000.0)
    persistence.upsert_agent(a)
    return a


@pytest.fixture
def sleep(clock):
    async def _sleep(seconds: float) -> None:
        clock.advance(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def validator(venue, store, persistence, clock):
    return PreTradeValidator(venue, store, agent_lookup=persistence.get_agent, clock=clock)


@pytest_asyncio.fixture
async def tracker(venue, store, persistence, bus, clock, sleep):
    t = OrderTracker(venue, store, persistence, bus=bus, poll_interval=3.0, max_duration=300.0,
                     max_attempts=3, clock=clock, sleep=sleep)
    yield t
    await t.stop()


@pytest.fixture
def executor(venue, persistence, tracker):
    return OrderExecutor(venue, persistence, tracker)


@pytest.fixture
def confirmation(store, validator, executor, bus, clock):
    return OrderConfirmationService(store, validator, executor, bus=bus, clock=clock)
