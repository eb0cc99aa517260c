"""
exit_decision.py
----------------
Reacts to material P&L moves: stop-loss / take-profit rules first, then the
external exit advisor.  An exit decision turns into a closing market order
that re-enters the execution layer; at most one closing order per trade is
in flight at a time.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from core.errors import ExecutionError, VenueError
from models.agent import AgentConfig
from models.events import ExitDecided, OrderCompleted, PnLChanged
from models.order import TrackedOrder
from models.position import ExitAction, ExitDecision, Position
from models.trade import OPEN_TRADE_STATUSES
from modules.sl_tp_rules import check_sl_tp
from modules.venue_client import BaseVenueClient
from utils.event_bus import BUS, IdempotentHandler
from utils.logger import with_context

EXIT_HISTORY_LIMIT = 100
EXIT_HISTORY_TTL = 7 * 24 * 60 * 60


class ExitAdvisor(ABC):
    """External exit recommendation (e.g. a model ensemble)."""

    @abstractmethod
    async def analyze_exit(self, agent_id: str, position: Position,
                           market_conditions: Dict[str, Any]) -> ExitDecision: ...


class ExitCoordinator:
    def __init__(
        self,
        store,
        persistence,
        venue: BaseVenueClient,
        executor,
        advisor: Optional[ExitAdvisor] = None,
        *,
        bus=BUS,
        lock_ttl: float = 300.0,
        partial_default_pct: float = 50.0,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.venue = venue
        self.executor = executor
        self.advisor = advisor
        self.bus = bus
        self.lock_ttl = lock_ttl
        self.partial_default_pct = partial_default_pct
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        bus.subscribe(PnLChanged, IdempotentHandler(self.on_pnl_changed, clock=clock))
        bus.subscribe(OrderCompleted, self._on_order_completed)

    # ------------------------------------------------------------------ #
    async def market_conditions(self, symbol: str) -> Dict[str, Any]:
        """Spread, 24h volatility and visible liquidity; empty when unavailable."""
        try:
            ticker = await self.venue.get_ticker(symbol)
            book = await self.venue.get_order_book(symbol)
        except VenueError as exc:
            self.logger.warning("Market conditions for %s unavailable: %s", symbol, exc.reason)
            return {}
        conditions: Dict[str, Any] = {
            "price": ticker.last_price,
            "volatility": abs(ticker.change_percent_24h),
            "liquidity": sum(p * q for p, q in book.bids[:10]) + sum(p * q for p, q in book.asks[:10]),
        }
        if book.bids and book.asks:
            conditions["spread"] = (book.asks[0][0] - book.bids[0][0]) / book.bids[0][0] * 100
        return conditions

    async def evaluate(self, agent: AgentConfig, position: Position) -> ExitDecision:
        decision = check_sl_tp(position, agent)
        if decision.wants_exit or self.advisor is None:
            return decision
        conditions = await self.market_conditions(position.symbol)
        return await self.advisor.analyze_exit(agent.id, position, conditions)

    def exit_quantity(self, position: Position, decision: ExitDecision) -> float:
        if decision.action == ExitAction.EXIT_NOW:
            return position.quantity
        if decision.action == ExitAction.PARTIAL_EXIT:
            pct = decision.exit_percentage or self.partial_default_pct
            return position.quantity * pct / 100
        return 0.0

    async def execute_exit(self, position: Position, decision: ExitDecision) -> Optional[TrackedOrder]:
        quantity = self.exit_quantity(position, decision)
        if quantity <= 0:
            return None

        log = with_context(self.logger, agent_id=position.agent_id, symbol=position.symbol,
                           trade_id=position.trade_id)
        lock_key = f"exit_lock:{position.trade_id}"
        if not await self.store.set_if_absent(lock_key, self._clock(), ttl=self.lock_ttl):
            log.info("Closing order already in flight; %s ignored", decision.action.value)
            return None
        try:
            order = await self.executor.submit_closing_order(position, quantity, decision.reasoning)
        except ExecutionError as exc:
            await self.store.delete(lock_key)
            log.error("Closing order failed: %s", exc.reason)
            return None
        log.info("🚪 %s %.8g @ market (%s)", decision.action.value, quantity, decision.reasoning)
        return order

    async def on_pnl_changed(self, event: PnLChanged) -> Optional[ExitDecided]:
        position = event.position
        agent = self.persistence.get_agent(event.agent_id)
        if agent is None or not agent.is_active:
            return None
        trade = self.persistence.get_trade(event.trade_id)
        if trade is None or trade.status not in OPEN_TRADE_STATUSES:
            return None

        decision = await self.evaluate(agent, position)
        order = await self.execute_exit(position, decision) if decision.wants_exit else None

        outcome = ExitDecided(
            agent_id=event.agent_id,
            trade_id=event.trade_id,
            action=decision.action.value,
            urgency=decision.urgency.value,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            exit_quantity=order.amount if order else 0.0,
            order_id=order.order_id if order else None,
            timestamp=self._clock(),
        )
        await self.store.push_history(
            f"exit_history:{event.agent_id}", outcome.timestamp,
            {**outcome.__dict__}, EXIT_HISTORY_LIMIT, ttl=EXIT_HISTORY_TTL,
        )
        self.bus.publish(outcome)
        return outcome

    async def _on_order_completed(self, event: OrderCompleted) -> None:
        if event.closes_trade_id:
            await self.store.delete(f"exit_lock:{event.closes_trade_id}")

    async def get_exit_history(self, agent_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        return await self.store.history(f"exit_history:{agent_id}", limit)
