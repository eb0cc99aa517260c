from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.order import OrderType, Side


class TradeStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    CLOSED = "closed"


OPEN_TRADE_STATUSES = (TradeStatus.PENDING, TradeStatus.FILLED)


class TradeRecord(BaseModel):
    """Durable trade document; the SQLite store is the source of truth."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: Optional[str] = None
    user_id: str
    signal_id: Optional[str] = None
    order_id: Optional[str] = None
    symbol: str
    side: Side
    order_type: OrderType = "market"
    quantity: float
    price: Optional[float] = None
    filled_price: Optional[float] = None
    filled_quantity: Optional[float] = None
    fees: Optional[float] = None
    pnl: Optional[float] = None
    status: TradeStatus = TradeStatus.PENDING
    reason: Optional[str] = None
    closes_trade_id: Optional[str] = None
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    created_at: float = Field(default_factory=time.time)
    closed_at: Optional[float] = None

    @property
    def entry_price(self) -> Optional[float]:
        return self.filled_price or self.price

    @property
    def open_quantity(self) -> float:
        return self.filled_quantity or self.quantity
