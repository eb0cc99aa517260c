"""
signal_dispatcher.py
--------------------
Priority queueing of trading signals and the queue workers that turn a
viable signal into an order preview.

Flow per signal:
    enqueue()  →  priority / standard queue  →  process_queue()
               →  should_execute()  →  size_position()
               →  OrderConfirmationService.create_preview()

A signal yields at most one preview: the worker claims
``signal_preview:{signal_id}`` in the store before creating it.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Dict, Optional, Tuple

from core.errors import PipelineError, SignalRejected
from models.agent import AgentConfig
from models.events import OrderExecuted, PreviewClosed, SignalFailed, SignalGenerated
from models.order import OrderRequest, PreviewStatus
from models.signal import Recommendation, Signal, SignalStatus, TradingSignal
from modules.sl_tp_rules import thresholds_for
from modules.venue_client import BaseVenueClient, split_symbol
from utils.event_bus import BUS, IdempotentHandler
from utils.logger import with_context

PRIORITY_QUEUE = "priority_signals"
SIGNAL_QUEUE = "trading_signals"
SIGNAL_PREFIX = "trading_signal:"


class SignalDispatcher:
    def __init__(
        self,
        store,
        persistence,
        venue: BaseVenueClient,
        confirmation,
        *,
        bus=BUS,
        batch_size: int = 5,
        min_confidence: float = 0.6,
        max_signal_age: float = 300.0,
        priority_threshold: float = 80.0,
        signal_ttl: float = 24 * 60 * 60,
        queue_ttl: float = 60 * 60,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.venue = venue
        self.confirmation = confirmation
        self.bus = bus
        self.batch_size = batch_size
        self.min_confidence = min_confidence
        self.max_signal_age = max_signal_age
        self.priority_threshold = priority_threshold
        self.signal_ttl = signal_ttl
        self.queue_ttl = queue_ttl
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        bus.subscribe(OrderExecuted, IdempotentHandler(self._on_order_executed, clock=clock))
        bus.subscribe(PreviewClosed, IdempotentHandler(self._on_preview_closed, clock=clock))

    # ------------------------------------------------------------------ #
    @staticmethod
    def calculate_priority(confidence: float, risk_percentage: float) -> float:
        score = confidence * 100 * 0.7 + (10 - risk_percentage) * 5 * 0.3
        return min(100.0, max(0.0, score))

    async def _save(self, signal: TradingSignal) -> None:
        await self.store.set(f"{SIGNAL_PREFIX}{signal.id}", signal.model_dump(mode="json"),
                             ttl=self.signal_ttl)
        self.persistence.upsert_signal(signal)

    async def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        raw = await self.store.get(f"{SIGNAL_PREFIX}{signal_id}")
        if raw is not None:
            return TradingSignal.model_validate(raw)
        return self.persistence.get_signal(signal_id)

    async def enqueue(self, agent: AgentConfig, signal: Signal) -> TradingSignal:
        """Queue a fresh signal for ``agent``; HOLD and weak signals are refused."""
        if signal.recommendation == Recommendation.HOLD:
            raise SignalRejected(f"HOLD signal for {signal.symbol} is not tradable")
        if signal.confidence < self.min_confidence:
            raise SignalRejected(
                f"confidence {signal.confidence:.2f} below {self.min_confidence:.2f} for {signal.symbol}"
            )

        trading = TradingSignal.from_signal(
            agent.id, signal,
            priority=self.calculate_priority(signal.confidence, agent.risk_percentage),
            created_at=self._clock(),
        )
        queue = PRIORITY_QUEUE if trading.priority >= self.priority_threshold else SIGNAL_QUEUE
        await self._save(trading)
        await self.store.enqueue(queue, {"id": trading.id, "priority": trading.priority},
                                 ttl=self.queue_ttl)
        self.bus.publish(SignalGenerated(
            signal_id=trading.id, agent_id=agent.id, symbol=trading.symbol,
            priority=trading.priority, queue=queue,
        ))
        self.logger.info("📥 Signal %s %s %s queued on %s (priority %.1f)", trading.id,
                         trading.recommendation.value, trading.symbol, queue, trading.priority)
        return trading

    # ------------------------------------------------------------------ #
    def should_execute(self, signal: TradingSignal, now: Optional[float] = None) -> Tuple[bool, str]:
        if signal.recommendation == Recommendation.HOLD:
            return False, "HOLD signals are never executed"
        if signal.confidence < self.min_confidence:
            return False, f"confidence {signal.confidence:.2f} too low"
        age = signal.age(now if now is not None else self._clock())
        if age > self.max_signal_age:
            return False, f"signal too old: {age:.0f}s"
        return True, ""

    async def size_position(self, signal: TradingSignal, agent: AgentConfig) -> float:
        """Risk-percentage sizing, capped by the agent's max position value."""
        ticker = await self.venue.get_ticker(signal.symbol)
        balance = await self.venue.get_balance()
        price = ticker.last_price
        _, quote = split_symbol(signal.symbol)
        available = balance.free.get(quote, 0.0)

        if agent.stop_loss_percentage:
            stop_pct = agent.stop_loss_percentage
        elif signal.stop_loss:
            stop_pct = abs(price - signal.stop_loss) / price * 100
        else:
            stop_pct = abs(thresholds_for(agent)[0])
        stop_pct = stop_pct or abs(thresholds_for(agent)[0])

        risk_amount = available * agent.risk_percentage / 100
        quantity = risk_amount / (price * stop_pct / 100)
        quantity = min(quantity, agent.max_position_size / price)
        return math.floor(quantity * 1e6) / 1e6

    async def _fail(self, signal: TradingSignal, reason: str,
                    status: SignalStatus = SignalStatus.FAILED) -> None:
        signal.transition(status, reason)
        await self._save(signal)
        self.bus.publish(SignalFailed(
            signal_id=signal.id, agent_id=signal.agent_id, symbol=signal.symbol,
            status=status.value, reason=reason,
        ))
        with_context(self.logger, agent_id=signal.agent_id, symbol=signal.symbol,
                     signal_id=signal.id).info("Signal %s: %s", status.value, reason)

    async def process_queue(self) -> Dict[str, int]:
        """One batch from the priority queue, then one from the standard queue."""
        stats = {"processed": 0, "previews": 0, "failed": 0}
        for queue in (PRIORITY_QUEUE, SIGNAL_QUEUE):
            for _ in range(self.batch_size):
                item = await self.store.dequeue(queue)
                if item is None:
                    break
                stats["processed"] += 1
                outcome = await self._process_item(item["id"])
                if outcome in stats:
                    stats[outcome] += 1
        return stats

    async def _process_item(self, signal_id: str) -> Optional[str]:
        signal = await self.get_signal(signal_id)
        if signal is None:
            self.logger.warning("Queued signal %s vanished from the store", signal_id)
            return None
        if signal.is_terminal:
            return None

        log = with_context(self.logger, agent_id=signal.agent_id, symbol=signal.symbol,
                           signal_id=signal.id)
        try:
            signal.transition(SignalStatus.PROCESSING)
            await self._save(signal)

            viable, reason = self.should_execute(signal)
            if not viable:
                await self._fail(signal, reason)
                return "failed"

            agent = self.persistence.get_agent(signal.agent_id)
            if agent is None or not agent.is_active:
                await self._fail(signal, f"agent {signal.agent_id} not found or inactive")
                return "failed"

            if not await self.store.set_if_absent(f"signal_preview:{signal.id}", self._clock(),
                                                  ttl=self.signal_ttl):
                log.info("Preview for signal already claimed; skipping duplicate")
                return None

            quantity = await self.size_position(signal, agent)
            if quantity <= 0:
                await self._fail(signal, "position size too small")
                return "failed"

            preview = await self.confirmation.create_preview(OrderRequest(
                user_id=agent.user_id,
                agent_id=agent.id,
                signal_id=signal.id,
                symbol=signal.symbol,
                side="buy" if signal.recommendation == Recommendation.BUY else "sell",
                order_type="market",
                amount=quantity,
                stop_loss=signal.stop_loss,
                take_profit=signal.target_price,
            ))
        except PipelineError as exc:
            if not signal.is_terminal:
                await self._fail(signal, exc.reason)
            return "failed"
        except Exception as exc:  # keep the worker alive
            log.exception("Unexpected error processing signal")
            if not signal.is_terminal:
                await self._fail(signal, str(exc) or exc.__class__.__name__)
            return "failed"

        signal.preview_id = preview.id
        if preview.status == PreviewStatus.EXECUTED:
            signal.transition(SignalStatus.EXECUTED)
        elif preview.status in (PreviewStatus.CANCELLED, PreviewStatus.EXPIRED):
            signal.transition(SignalStatus.CANCELLED, preview.failure_reason)
        await self._save(signal)
        log.info("Preview %s created (%s)", preview.id, preview.status.value)
        return "previews"

    # ------------------------------------------------------------------ #
    async def _on_order_executed(self, event: OrderExecuted) -> None:
        if not event.signal_id:
            return
        signal = await self.get_signal(event.signal_id)
        if signal is None or signal.is_terminal:
            return
        signal.preview_id = event.preview_id
        signal.transition(SignalStatus.EXECUTED)
        await self._save(signal)

    async def _on_preview_closed(self, event: PreviewClosed) -> None:
        if not event.signal_id:
            return
        signal = await self.get_signal(event.signal_id)
        if signal is None or signal.is_terminal:
            return
        signal.preview_id = event.preview_id
        signal.transition(SignalStatus.CANCELLED, event.reason or f"preview {event.status}")
        await self._save(signal)

    # ------------------------------------------------------------------ #
    async def get_queue_stats(self) -> Dict[str, int]:
        priority = await self.store.queue_length(PRIORITY_QUEUE)
        standard = await self.store.queue_length(SIGNAL_QUEUE)
        return {"priority_queue": priority, "signal_queue": standard, "total_queued": priority + standard}

    async def cancel_signal(self, signal_id: str, reason: str = "cancelled by user") -> bool:
        signal = await self.get_signal(signal_id)
        if signal is None or signal.is_terminal:
            return False
        for queue in (PRIORITY_QUEUE, SIGNAL_QUEUE):
            for item in await self.store.queue_items(queue):
                if item.get("id") == signal_id:
                    await self.store.remove_from_queue(queue, item)
        await self._fail(signal, reason, SignalStatus.CANCELLED)
        if signal.preview_id:
            await self.confirmation.cancel_order_preview(signal.preview_id, reason)
        return True

    async def cleanup_old_signals(self, max_age: float = 24 * 60 * 60) -> int:
        """Forget terminal signals older than ``max_age`` in cache and store."""
        cutoff = self._clock() - max_age
        removed = 0
        for key in await self.store.keys(f"{SIGNAL_PREFIX}*"):
            raw = await self.store.get(key)
            if raw is None:
                continue
            signal = TradingSignal.model_validate(raw)
            if signal.is_terminal and signal.created_at < cutoff:
                await self.store.delete(key)
                removed += 1
        removed_db = self.persistence.delete_signals_before(cutoff)
        self.logger.info("Old signals cleanup: %d cached, %d stored", removed, removed_db)
        return removed
