from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from core.errors import SignalStateError


class Recommendation(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class SignalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_SIGNAL_STATUSES = frozenset(
    {SignalStatus.EXECUTED, SignalStatus.CANCELLED, SignalStatus.FAILED}
)


class Signal(BaseModel):
    """Opaque recommendation produced by the external signal source."""

    symbol: str = Field(..., min_length=1)
    recommendation: Recommendation
    confidence: float = Field(..., ge=0, le=1)
    target_price: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    reasoning: str = ""

    @field_validator("recommendation", mode="before")
    @classmethod
    def upper_recommendation(cls, v):
        return v.upper() if isinstance(v, str) else v


class TradingSignal(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str
    symbol: str = Field(..., min_length=1)
    recommendation: Recommendation
    confidence: float = Field(..., ge=0, le=1)
    target_price: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    reasoning: str = ""
    priority: float = Field(default=0.0, ge=0, le=100)
    created_at: float = Field(default_factory=time.time)
    status: SignalStatus = SignalStatus.PENDING
    failure_reason: Optional[str] = None
    preview_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def normalize_ts(cls, v):
        if v > 10**12:
            v /= 1000
        if v <= 0:
            raise ValueError("created_at must be positive")
        return v

    @classmethod
    def from_signal(cls, agent_id: str, signal: Signal, **extra) -> "TradingSignal":
        return cls(
            agent_id=agent_id,
            symbol=signal.symbol,
            recommendation=signal.recommendation,
            confidence=signal.confidence,
            target_price=signal.target_price,
            stop_loss=signal.stop_loss,
            reasoning=signal.reasoning,
            **extra,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SIGNAL_STATUSES

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def transition(self, status: SignalStatus, reason: Optional[str] = None) -> "TradingSignal":
        """Move to ``status``; terminal signals are immutable."""
        if self.is_terminal:
            raise SignalStateError(
                f"signal {self.id} is already {self.status.value}; cannot move to {status.value}"
            )
        self.status = status
        if reason:
            self.failure_reason = reason
        return self
