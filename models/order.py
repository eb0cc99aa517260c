"""
models/order.py
---------------
Order request, pre-trade validation result, time-boxed preview and the
venue-tracked order.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

Side = Literal["buy", "sell"]
OrderType = Literal["market", "limit"]


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class PreviewStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    EXECUTED = "executed"


TERMINAL_PREVIEW_STATUSES = frozenset(
    {PreviewStatus.CANCELLED, PreviewStatus.EXPIRED, PreviewStatus.EXECUTED}
)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.FAILED}
)


class OrderRequest(BaseModel):
    user_id: str
    agent_id: Optional[str] = None
    signal_id: Optional[str] = None
    symbol: str = Field(..., min_length=1)
    side: Side
    order_type: OrderType = "market"
    amount: float = Field(..., gt=0)
    price: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    closes_trade_id: Optional[str] = None

    @model_validator(mode="after")
    def limit_needs_price(self):
        if self.order_type == "limit" and self.price is None:
            raise ValueError("limit orders require a price")
        return self


class ValidationResult(BaseModel):
    is_valid: bool = True
    adjusted_amount: Optional[float] = None
    estimated_cost: float = 0.0
    estimated_fees: float = 0.0
    slippage_estimate: Optional[float] = None  # percent
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def fail(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False


class OrderPreview(BaseModel):
    id: str
    user_id: str
    agent_id: Optional[str] = None
    signal_id: Optional[str] = None
    symbol: str
    side: Side
    order_type: OrderType = "market"
    amount: float
    price: Optional[float] = None
    estimated_cost: float = 0.0
    estimated_fees: float = 0.0
    slippage_estimate: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    risk_level: RiskLevel = RiskLevel.LOW
    validation: ValidationResult = Field(default_factory=ValidationResult)
    created_at: float = Field(default_factory=time.time)
    expires_at: float
    status: PreviewStatus = PreviewStatus.PENDING
    auto_confirmed: bool = False
    order_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PREVIEW_STATUSES

    def is_past_ttl(self, now: float) -> bool:
        return now > self.expires_at

    def to_request(self) -> OrderRequest:
        return OrderRequest(
            user_id=self.user_id,
            agent_id=self.agent_id,
            signal_id=self.signal_id,
            symbol=self.symbol,
            side=self.side,
            order_type=self.order_type,
            amount=self.amount,
            price=self.price,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
        )


class TrackedOrder(BaseModel):
    order_id: str
    user_id: str
    agent_id: Optional[str] = None
    signal_id: Optional[str] = None
    trade_id: Optional[str] = None
    symbol: str
    side: Side
    amount: float
    expected_price: Optional[float] = None
    actual_fill_price: Optional[float] = None
    filled_amount: float = 0.0
    status: OrderStatus = OrderStatus.PENDING
    timestamp: float = Field(default_factory=time.time)
    completed_at: Optional[float] = None
    profit: Optional[float] = None
    fees: Optional[float] = None
    closes_trade_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES
