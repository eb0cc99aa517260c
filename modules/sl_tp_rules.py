"""
sl_tp_rules.py
--------------
Rule-based stop-loss / take-profit check for an open position.

Thresholds come from the agent when it defines them, otherwise from the
risk-level tables below (index = risk level 1..5).  Absolute stop / target
prices carried from the signal are honoured as well.
"""
from __future__ import annotations

from typing import Optional, Tuple

from models.agent import AgentConfig
from models.position import ExitAction, ExitDecision, Position, Urgency

# percent P&L, risk level 1 (conservative) .. 5 (aggressive)
STOP_LOSS_TABLE = [-2.0, -3.0, -4.0, -5.0, -7.0]
TAKE_PROFIT_TABLE = [3.0, 2.5, 2.0, 1.5, 1.0]


def thresholds_for(agent: AgentConfig) -> Tuple[float, float]:
    """Return ``(stop_loss_pct, take_profit_pct)``; stop loss is negative."""
    idx = min(max(agent.risk_level, 1), 5) - 1
    stop = -abs(agent.stop_loss_percentage) if agent.stop_loss_percentage else STOP_LOSS_TABLE[idx]
    take = abs(agent.take_profit_percentage) if agent.take_profit_percentage else TAKE_PROFIT_TABLE[idx]
    return stop, take


def _price_breach(position: Position) -> Optional[str]:
    price = position.current_price
    if position.stop_loss:
        if (position.side == "buy" and price <= position.stop_loss) or \
           (position.side == "sell" and price >= position.stop_loss):
            return f"price {price} crossed stop {position.stop_loss}"
    if position.target_price:
        if (position.side == "buy" and price >= position.target_price) or \
           (position.side == "sell" and price <= position.target_price):
            return f"price {price} reached target {position.target_price}"
    return None


def check_sl_tp(position: Position, agent: AgentConfig) -> ExitDecision:
    stop, take = thresholds_for(agent)
    pnl_pct = position.unrealized_pnl_percent

    if pnl_pct <= stop:
        return ExitDecision(
            action=ExitAction.EXIT_NOW, confidence=1.0, urgency=Urgency.CRITICAL,
            reasoning=f"Stop loss hit: {pnl_pct:.2f}% <= {stop:.2f}%",
        )
    if pnl_pct >= take:
        return ExitDecision(
            action=ExitAction.EXIT_NOW, confidence=1.0, urgency=Urgency.HIGH,
            reasoning=f"Take profit hit: {pnl_pct:.2f}% >= {take:.2f}%",
        )
    breach = _price_breach(position)
    if breach:
        return ExitDecision(action=ExitAction.EXIT_NOW, confidence=1.0,
                            urgency=Urgency.HIGH, reasoning=breach)
    return ExitDecision(action=ExitAction.HOLD, reasoning="within stop/target band")
