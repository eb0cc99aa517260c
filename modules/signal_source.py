"""
signal_source.py
----------------
Common interface for whatever produces trading signals for an agent
(a model ensemble, a rule set, a replay file ...).
"""

from __future__ import annotations
from abc import ABC, abstractmethod

from models.agent import AgentConfig
from models.signal import Signal


class SignalSource(ABC):
    """Abstract signal producer with a single entry point."""

    @abstractmethod
    async def generate_signal(self, agent: AgentConfig, symbol: str) -> Signal:
        """
        Analyse ``symbol`` for ``agent`` and return a recommendation.

        Returned fields
        ---------------
        symbol          : str   – trading pair (e.g. 'BTC/USDT')
        recommendation  : str   – 'BUY', 'SELL' or 'HOLD'
        confidence      : float – 0..1
        target_price    : float – optional take-profit price
        stop_loss       : float – optional stop price
        """
        raise NotImplementedError
