from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class VenueOrderAck(BaseModel):
    order_id: str
    status: str = "open"


class VenueOrderStatus(BaseModel):
    """Order state as reported by the venue (status not yet normalised)."""

    order_id: str
    status: str
    filled: float = 0.0
    remaining: float = 0.0
    avg_fill_price: Optional[float] = None
    fee: Optional[float] = None


class Ticker(BaseModel):
    symbol: str
    last_price: float = Field(..., gt=0)
    change_percent_24h: float = 0.0
    quote_volume: Optional[float] = None


class OrderBook(BaseModel):
    symbol: str
    bids: List[Tuple[float, float]] = Field(default_factory=list)  # (price, qty)
    asks: List[Tuple[float, float]] = Field(default_factory=list)


class Balance(BaseModel):
    free: Dict[str, float] = Field(default_factory=dict)
