from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from models.order import Side


class Position(BaseModel):
    agent_id: str
    trade_id: str
    user_id: str
    symbol: str
    side: Side
    entry_price: float
    current_price: float
    quantity: float
    unrealized_pnl: float
    unrealized_pnl_percent: float
    entry_time: float
    last_checked: float = Field(default_factory=time.time)
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None

    @classmethod
    def from_prices(cls, *, side: Side, entry_price: float, current_price: float,
                    quantity: float, **fields) -> "Position":
        if side == "buy":
            pnl = (current_price - entry_price) * quantity
        else:
            pnl = (entry_price - current_price) * quantity
        notional = entry_price * quantity
        pnl_percent = (pnl / notional) * 100 if notional else 0.0
        return cls(
            side=side,
            entry_price=entry_price,
            current_price=current_price,
            quantity=quantity,
            unrealized_pnl=pnl,
            unrealized_pnl_percent=pnl_percent,
            **fields,
        )


class ExitAction(str, Enum):
    HOLD = "HOLD"
    PARTIAL_EXIT = "PARTIAL_EXIT"
    EXIT_NOW = "EXIT_NOW"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ExitDecision(BaseModel):
    action: ExitAction = ExitAction.HOLD
    confidence: float = Field(default=0.0, ge=0, le=1)
    urgency: Urgency = Urgency.LOW
    reasoning: str = ""
    exit_percentage: Optional[float] = Field(default=None, gt=0, le=100)

    @property
    def wants_exit(self) -> bool:
        return self.action in (ExitAction.EXIT_NOW, ExitAction.PARTIAL_EXIT)
