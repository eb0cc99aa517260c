from __future__ import annotations

import time

from pydantic import BaseModel, Field


class PerformanceMetrics(BaseModel):
    total_trades: int = 0
    win_rate: float = 0.0        # percent
    total_pnl: float = 0.0
    max_drawdown: float = 0.0    # percent of running peak
    sharpe_ratio: float = 0.0
    last_updated: float = Field(default_factory=time.time)
