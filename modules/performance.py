"""
performance.py
--------------
Rolling per-agent performance from realised trade results.

Every filled closing order is recorded once (keyed by venue order id) in the
document store; the agent's metrics are then recomputed with pandas, cached
briefly and written back to the agent document.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import pandas as pd

from models.events import OrderCompleted
from models.metrics import PerformanceMetrics
from utils.event_bus import BUS, IdempotentHandler

PERFORMANCE_PREFIX = "agent_performance:"


def compute_metrics(trades: pd.DataFrame, now: Optional[float] = None) -> PerformanceMetrics:
    """
    Metrics over a frame with ``pnl``, ``price`` and ``quantity`` columns,
    ordered by time.

    * win rate      – percent of trades with positive P&L
    * max drawdown  – largest fall of cumulative P&L, in percent of the
                      running peak (only once the peak is above zero)
    * sharpe ratio  – mean / sample std of per-trade returns (pnl / notional)
    """
    now = now if now is not None else time.time()
    if trades.empty:
        return PerformanceMetrics(last_updated=now)

    pnl = trades["pnl"].astype(float)
    total = len(pnl)
    win_rate = (pnl > 0).sum() / total * 100

    cumulative = pnl.cumsum()
    peak = cumulative.cummax().clip(lower=0)
    drawdown = (peak - cumulative) / peak.where(peak > 0) * 100
    max_drawdown = drawdown.max()

    notional = trades["price"].astype(float) * trades["quantity"].astype(float)
    returns = (pnl / notional.where(notional > 0)).fillna(0.0)
    std = returns.std(ddof=1)
    sharpe = returns.mean() / std if total > 1 and std > 0 else 0.0

    return PerformanceMetrics(
        total_trades=total,
        win_rate=round(float(win_rate), 2),
        total_pnl=round(float(pnl.sum()), 2),
        max_drawdown=round(float(max_drawdown), 2) if not pd.isna(max_drawdown) else 0.0,
        sharpe_ratio=round(float(sharpe), 3),
        last_updated=now,
    )


class PerformanceTracker:
    def __init__(self, store, persistence, *, bus=BUS, cache_ttl: float = 30.0,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.persistence = persistence
        self.cache_ttl = cache_ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        bus.subscribe(OrderCompleted, IdempotentHandler(self.on_order_completed, clock=clock))

    async def on_order_completed(self, event: OrderCompleted) -> Optional[PerformanceMetrics]:
        if event.status != "filled" or not event.agent_id or event.realized_pnl is None:
            return None
        recorded = self.persistence.record_performance_trade(
            order_id=event.order_id,
            agent_id=event.agent_id,
            symbol=event.symbol,
            side=event.side,
            quantity=event.amount,
            price=event.actual_fill_price or 0.0,
            pnl=event.realized_pnl,
            ts=event.completed_at,
        )
        if not recorded:
            self.logger.debug("Trade result for order %s already recorded", event.order_id)
            return None
        return await self.refresh(event.agent_id)

    async def refresh(self, agent_id: str) -> PerformanceMetrics:
        metrics = compute_metrics(self.persistence.performance_frame(agent_id), now=self._clock())
        payload = metrics.model_dump(mode="json")
        await self.store.set(f"{PERFORMANCE_PREFIX}{agent_id}", payload, ttl=self.cache_ttl)
        self.persistence.update_agent_performance(agent_id, payload)
        self.logger.info("📊 Agent %s: %d trades, win %.2f%%, pnl %.2f, dd %.2f%%, sharpe %.3f",
                         agent_id, metrics.total_trades, metrics.win_rate, metrics.total_pnl,
                         metrics.max_drawdown, metrics.sharpe_ratio)
        return metrics

    async def get_agent_performance(self, agent_id: str) -> PerformanceMetrics:
        cached = await self.store.get(f"{PERFORMANCE_PREFIX}{agent_id}")
        if cached is not None:
            return PerformanceMetrics.model_validate(cached)
        stored = self.persistence.get_agent_performance(agent_id)
        if stored is not None:
            metrics = PerformanceMetrics.model_validate(stored)
            await self.store.set(f"{PERFORMANCE_PREFIX}{agent_id}", stored, ttl=self.cache_ttl)
            return metrics
        return PerformanceMetrics(last_updated=self._clock())
