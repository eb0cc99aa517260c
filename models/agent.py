from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ManualTrigger = Literal["HIGH_RISK", "LARGE_POSITION", "HIGH_VOLATILITY", "HIGH_SLIPPAGE"]


class AgentConfig(BaseModel):
    id: str
    user_id: str
    name: str = ""
    symbol: str
    is_active: bool = True
    risk_percentage: float = Field(default=2.0, ge=0, le=10)
    risk_level: int = Field(default=3, ge=1, le=5)
    stop_loss_percentage: Optional[float] = Field(default=None, gt=0)
    take_profit_percentage: Optional[float] = Field(default=None, gt=0)
    max_position_size: float = Field(default=1000.0, gt=0)  # quote currency
    max_open_positions: int = Field(default=5, ge=1)
    analysis_interval: int = Field(default=60, gt=0)  # seconds


class ConfirmationSettings(BaseModel):
    require_confirmation: bool = True
    confirmation_timeout: int = 300
    auto_confirm_below_amount: float = 50.0
    manual_confirmation_required: List[ManualTrigger] = Field(
        default_factory=lambda: ["HIGH_RISK", "LARGE_POSITION", "HIGH_VOLATILITY", "HIGH_SLIPPAGE"]
    )
