"""
position_monitor.py
-------------------
Periodic P&L check of every open position of every active agent.

For each open trade the monitor prices the position (short-lived price
cache), compares the unrealised P&L with the value recorded at the previous
check and publishes one ``PnLChanged`` when the move is material.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from core.errors import VenueError
from models.agent import AgentConfig
from models.events import PnLChanged
from models.position import Position
from models.trade import TradeRecord
from modules.venue_client import BaseVenueClient
from utils.event_bus import BUS
from utils.logger import with_context

POSITION_PREFIX = "position:"
PNL_PREFIX = "pnl_history:"
PRICE_PREFIX = "current_price:"


def pnl_change_percent(previous: float, current: float) -> float:
    """Relative P&L move in percent; from a zero baseline any move counts as 100."""
    if previous != 0:
        return abs(current - previous) / abs(previous) * 100
    return 0.0 if current == previous else 100.0


class PositionMonitor:
    def __init__(
        self,
        store,
        persistence,
        venue: BaseVenueClient,
        *,
        bus=BUS,
        change_threshold: float = 0.5,
        price_ttl: float = 5.0,
        pnl_ttl: float = 3600.0,
        position_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.venue = venue
        self.bus = bus
        self.change_threshold = change_threshold
        self.price_ttl = price_ttl
        self.pnl_ttl = pnl_ttl
        self.position_ttl = position_ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------ #
    async def get_current_price(self, symbol: str) -> float:
        key = f"{PRICE_PREFIX}{symbol.upper()}"
        cached = await self.store.get(key)
        if cached is not None:
            return float(cached)
        price = (await self.venue.get_ticker(symbol)).last_price
        await self.store.set(key, price, ttl=self.price_ttl)
        return price

    async def build_position(self, trade: TradeRecord, agent: AgentConfig) -> Optional[Position]:
        entry = trade.entry_price
        if not entry:
            return None
        current = await self.get_current_price(trade.symbol)
        return Position.from_prices(
            side=trade.side,
            entry_price=entry,
            current_price=current,
            quantity=trade.open_quantity,
            agent_id=agent.id,
            trade_id=trade.id,
            user_id=trade.user_id,
            symbol=trade.symbol,
            entry_time=trade.created_at,
            last_checked=self._clock(),
            target_price=trade.target_price,
            stop_loss=trade.stop_loss,
        )

    async def check_pnl_change(self, position: Position) -> Optional[PnLChanged]:
        """Compare with the last check; the new value is recorded either way."""
        key = f"{PNL_PREFIX}{position.agent_id}:{position.trade_id}"
        previous = await self.store.get(key)
        current = position.unrealized_pnl
        await self.store.set(key, current, ttl=self.pnl_ttl)
        if previous is None:
            return None

        change = pnl_change_percent(float(previous), current)
        if change < self.change_threshold:
            return None
        return PnLChanged(
            agent_id=position.agent_id,
            trade_id=position.trade_id,
            position=position,
            previous_pnl=float(previous),
            current_pnl=current,
            change_percent=change,
            timestamp=self._clock(),
        )

    async def monitor_agent_positions(self, agent_id: str) -> List[PnLChanged]:
        agent = self.persistence.get_agent(agent_id)
        if agent is None or not agent.is_active:
            return []

        events: List[PnLChanged] = []
        open_ids = set()
        for trade in self.persistence.list_open_trades(agent_id):
            open_ids.add(trade.id)
            try:
                position = await self.build_position(trade, agent)
            except VenueError as exc:
                with_context(self.logger, agent_id=agent_id, symbol=trade.symbol,
                             trade_id=trade.id).warning("Pricing failed: %s", exc.reason)
                continue
            if position is None:
                continue

            event = await self.check_pnl_change(position)
            if event is not None:
                events.append(event)
                self.bus.publish(event)
            await self.store.set(f"{POSITION_PREFIX}{agent_id}:{trade.id}",
                                 position.model_dump(mode="json"), ttl=self.position_ttl)

        # closed trades drop out of the position cache right away
        for key in await self.store.keys(f"{POSITION_PREFIX}{agent_id}:*"):
            if key.rsplit(":", 1)[-1] not in open_ids:
                await self.store.delete(key)
        return events

    async def monitor_all_active_agents(self) -> int:
        agents = self.persistence.list_active_agents()
        total = 0
        for agent in agents:
            total += len(await self.monitor_agent_positions(agent.id))
        self.logger.debug("Monitored %d agents, %d P&L events", len(agents), total)
        return total

    # ------------------------------------------------------------------ #
    async def get_agent_positions(self, agent_id: str) -> List[Position]:
        positions = []
        for key in await self.store.keys(f"{POSITION_PREFIX}{agent_id}:*"):
            raw = await self.store.get(key)
            if raw is not None:
                positions.append(Position.model_validate(raw))
        return sorted(positions, key=lambda p: p.entry_time)

    async def get_position_summary(self, agent_id: str) -> Dict[str, float]:
        positions = await self.get_agent_positions(agent_id)
        count = len(positions)
        return {
            "total_positions": count,
            "total_unrealized_pnl": sum(p.unrealized_pnl for p in positions),
            "profitable_positions": sum(1 for p in positions if p.unrealized_pnl > 0),
            "losing_positions": sum(1 for p in positions if p.unrealized_pnl < 0),
            "avg_pnl_percent": sum(p.unrealized_pnl_percent for p in positions) / count if count else 0.0,
        }
