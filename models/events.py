# --------------------------------------------------------------------
# models/events.py
# Closed set of events broadcast on the bus.  Each one is immutable and
# exposes `key`, which consumers use to drop re-deliveries.
# --------------------------------------------------------------------
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

from models.position import Position


@dataclass(frozen=True)
class SignalGenerated:
    signal_id: str
    agent_id: str
    symbol: str
    priority: float
    queue: str
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.signal_id


@dataclass(frozen=True)
class SignalFailed:
    signal_id: str
    agent_id: str
    symbol: str
    status: str  # failed | cancelled
    reason: str
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.signal_id}:{self.status}"


@dataclass(frozen=True)
class OrderExecuted:
    preview_id: str
    order_id: str
    user_id: str
    agent_id: Optional[str]
    signal_id: Optional[str]
    symbol: str
    side: str
    amount: float
    estimated_cost: float
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class OrderCompleted:
    order_id: str
    user_id: str
    agent_id: Optional[str]
    symbol: str
    side: str
    amount: float
    status: str  # filled | canceled | failed
    actual_fill_price: Optional[float]
    fees: Optional[float]
    profit: Optional[float]
    realized_pnl: Optional[float] = None
    closes_trade_id: Optional[str] = None
    completed_at: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class TrackingTimedOut:
    order_id: str
    user_id: str
    symbol: str
    last_status: str
    attempts: int
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class PnLChanged:
    agent_id: str
    trade_id: str
    position: Position
    previous_pnl: float
    current_pnl: float
    change_percent: float
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.agent_id}:{self.trade_id}:{self.timestamp}"


@dataclass(frozen=True)
class ExitDecided:
    agent_id: str
    trade_id: str
    action: str
    urgency: str
    confidence: float
    reasoning: str
    exit_quantity: float = 0.0
    order_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.trade_id}:{self.timestamp}"


@dataclass(frozen=True)
class PreviewClosed:
    preview_id: str
    user_id: str
    signal_id: Optional[str]
    status: str  # cancelled | expired
    reason: str
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return f"{self.preview_id}:{self.status}"


@dataclass(frozen=True)
class TrackingFailed:
    order_id: str
    user_id: str
    symbol: str
    error: str
    attempts: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return self.order_id
