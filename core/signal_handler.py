from __future__ import annotations
from typing import Any, Dict, List, Optional

from core.errors import AgentNotFound, SignalRejected
from models.signal import Signal, TradingSignal
from utils.logger import setup_logger

logger = setup_logger(__name__)


def _same_symbol(a: str, b: str) -> bool:
    norm = lambda s: s.upper().replace("/", "").replace("_", "").replace("-", "")
    return norm(a) == norm(b)


async def generate_and_queue_signal(
    agent_id: str,
    symbol: Optional[str] = None,
    *,
    persistence,
    source,
    dispatcher,
) -> TradingSignal:
    """Ask the signal source about ``symbol`` for one agent and queue the result."""
    agent = persistence.get_agent(agent_id)
    if agent is None or not agent.is_active:
        raise AgentNotFound(f"agent {agent_id} not found or inactive")

    signal = await source.generate_signal(agent, symbol or agent.symbol)
    trading = await dispatcher.enqueue(agent, signal)
    logger.info("🧠 %s → %s %s (%.0f%%)", agent.name or agent.id,
                signal.recommendation.value, signal.symbol, signal.confidence * 100)
    return trading


async def broadcast_signal(signal: Signal, *, persistence, dispatcher) -> Dict[str, Any]:
    """
    Offer one externally produced signal to every eligible agent on its symbol.

    An agent is excluded when it already holds ``max_open_positions`` open
    trades; a refused enqueue (HOLD / weak signal) counts as rejected.
    """
    queued: List[str] = []
    excluded: Dict[str, str] = {}
    rejected: Dict[str, str] = {}

    agents = [a for a in persistence.list_active_agents() if _same_symbol(a.symbol, signal.symbol)]
    for agent in agents:
        open_trades = len(persistence.list_open_trades(agent.id))
        if open_trades >= agent.max_open_positions:
            excluded[agent.id] = f"max open positions reached ({open_trades}/{agent.max_open_positions})"
            continue
        try:
            trading = await dispatcher.enqueue(agent, signal)
        except SignalRejected as exc:
            rejected[agent.id] = exc.reason
            continue
        queued.append(trading.id)

    logger.info("📣 Broadcast %s %s: %d agents, %d queued, %d excluded, %d rejected",
                signal.recommendation.value, signal.symbol, len(agents),
                len(queued), len(excluded), len(rejected))
    return {
        "total_agents": len(agents),
        "queued": queued,
        "excluded": excluded,
        "rejected": rejected,
    }
