"""
order_execution.py
------------------
Submits confirmed previews (and closing orders) to the venue and follows
each venue order until it reaches a terminal state.

``OrderExecutor``  – venue submission + durable trade record.
``OrderTracker``   – single-owner, bounded polling reconciliation.  A poll
                     run ends with a ``TrackingResult`` whose outcome is
                     ``terminal``, ``timeout`` or ``error``; a timeout leaves
                     the order non-terminal and is reported, not raised; so
                     does a crashed poll run (``TrackingFailed``).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from core.errors import ExecutionError, VenueError
from models.events import OrderCompleted, TrackingFailed, TrackingTimedOut
from models.order import OrderPreview, OrderStatus, TrackedOrder
from models.position import Position
from models.trade import TradeRecord, TradeStatus
from models.venue import VenueOrderStatus
from modules.venue_client import BaseVenueClient, normalize_venue_status
from utils.event_bus import BUS
from utils.logger import with_context

ACTIVE_ORDERS_KEY = "active_orders"
HISTORY_TTL = 30 * 24 * 60 * 60
USER_HISTORY_LIMIT = 1000
AGENT_HISTORY_LIMIT = 1000
SYMBOL_HISTORY_LIMIT = 500


def _tracking_key(order_id: str) -> str:
    return f"order_tracking:{order_id}"


def _symbol_key(symbol: str) -> str:
    return symbol.upper().replace("/", "").replace("_", "").replace("-", "")


class PollOutcome(str, Enum):
    TERMINAL = "terminal"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class TrackingResult:
    outcome: PollOutcome
    order: Optional[TrackedOrder]
    attempts: int
    error: Optional[str] = None


# ---------------------------------------------------------------------------#
class OrderTracker:
    """Follows venue orders to completion and keeps order history."""

    def __init__(
        self,
        venue: BaseVenueClient,
        store,
        persistence,
        *,
        bus=BUS,
        poll_interval: float = 3.0,
        max_duration: float = 300.0,
        max_attempts: Optional[int] = None,
        tracking_ttl: float = 3600.0,
        stale_after: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.venue = venue
        self.store = store
        self.persistence = persistence
        self.bus = bus
        self.poll_interval = poll_interval
        self.max_duration = max_duration
        self.max_attempts = max_attempts
        self.tracking_ttl = tracking_ttl
        self.stale_after = stale_after
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    async def track_order(self, order: TrackedOrder) -> bool:
        """
        Store the tracking record and start a poll run for ``order``.

        Returns False when another worker already owns the order.
        """
        lock_key = f"order_lock:{order.order_id}"
        if not await self.store.set_if_absent(lock_key, self._clock(), ttl=self.max_duration + 60):
            self.logger.info("Order %s already tracked elsewhere", order.order_id)
            return False

        await self.store.set(_tracking_key(order.order_id), order.model_dump(mode="json"),
                             ttl=self.tracking_ttl)
        await self.store.sadd(ACTIVE_ORDERS_KEY, order.order_id)
        self.logger.info("🔎 Tracking order %s (%s %s %s)",
                         order.order_id, order.side, order.amount, order.symbol)

        task = asyncio.create_task(self._run(order.order_id, lock_key))
        self._tasks[order.order_id] = task
        return True

    async def _run(self, order_id: str, lock_key: str) -> TrackingResult:
        try:
            return await self.poll_until_terminal(order_id)
        except Exception as exc:
            return await self._report_failure(order_id, exc)
        finally:
            await self.store.delete(lock_key)
            self._tasks.pop(order_id, None)

    async def _report_failure(self, order_id: str, exc: Exception) -> TrackingResult:
        """Polling crashed: log it, publish ``TrackingFailed``; the order stays active."""
        error = f"{exc.__class__.__name__}: {exc}"
        try:
            order = await self._load(order_id)
        except Exception as load_exc:
            self.logger.debug("Tracking record for %s unreadable: %s", order_id, load_exc)
            order = None
        with_context(self.logger, order_id=order_id, symbol=order.symbol if order else None,
                     user_id=order.user_id if order else None).error(
            "❌ Polling aborted: %s", error, exc_info=exc
        )
        self.bus.publish(TrackingFailed(
            order_id=order_id,
            user_id=order.user_id if order else "",
            symbol=order.symbol if order else "",
            error=error,
        ))
        return TrackingResult(PollOutcome.ERROR, order, 0, error)

    async def wait_for(self, order_id: str) -> Optional[TrackingResult]:
        """Await the running poll task for ``order_id`` (None if not running)."""
        task = self._tasks.get(order_id)
        return await task if task is not None else None

    async def poll_until_terminal(self, order_id: str) -> TrackingResult:
        """Immediate check, then one check every ``poll_interval`` inside the window."""
        started = self._clock()
        attempts = 0
        last: Optional[TrackedOrder] = None
        last_error: Optional[str] = None

        while True:
            attempts += 1
            try:
                current = await self.check_order_status(order_id)
            except VenueError as exc:
                last_error = exc.reason
                with_context(self.logger, order_id=order_id).warning(
                    "Status check %d failed: %s", attempts, exc.reason
                )
            else:
                if current is None:
                    return TrackingResult(PollOutcome.ERROR, last, attempts, "no tracking data")
                last = current
                if current.is_terminal:
                    return TrackingResult(PollOutcome.TERMINAL, current, attempts)

            elapsed = self._clock() - started
            if elapsed >= self.max_duration or (self.max_attempts and attempts >= self.max_attempts):
                self.logger.warning("⏱️ Order %s still %s after %.0fs; polling stopped",
                                    order_id, last.status.value if last else "unknown", elapsed)
                self.bus.publish(TrackingTimedOut(
                    order_id=order_id,
                    user_id=last.user_id if last else "",
                    symbol=last.symbol if last else "",
                    last_status=last.status.value if last else "unknown",
                    attempts=attempts,
                ))
                return TrackingResult(PollOutcome.TIMEOUT, last, attempts, last_error)

            await self._sleep(self.poll_interval)

    # ------------------------------------------------------------------ #
    async def _load(self, order_id: str) -> Optional[TrackedOrder]:
        raw = await self.store.get(_tracking_key(order_id))
        if raw is not None:
            return TrackedOrder.model_validate(raw)
        # cache miss: rebuild from the trade record
        trade = self.persistence.get_trade_by_order_id(order_id)
        if trade is None:
            return None
        return TrackedOrder(
            order_id=order_id,
            user_id=trade.user_id,
            agent_id=trade.agent_id,
            signal_id=trade.signal_id,
            trade_id=trade.id,
            symbol=trade.symbol,
            side=trade.side,
            amount=trade.quantity,
            expected_price=trade.price,
            timestamp=trade.created_at,
            closes_trade_id=trade.closes_trade_id,
        )

    async def check_order_status(self, order_id: str) -> Optional[TrackedOrder]:
        order = await self._load(order_id)
        if order is None or order.is_terminal:
            return order

        status = await self.venue.get_order_status(order.symbol, order_id)
        if status is None:
            self.logger.info("Order %s not found on venue", order_id)
            return order

        updated = self.update_tracking_data(order, status)
        await self.store.set(_tracking_key(order_id), updated.model_dump(mode="json"),
                             ttl=self.tracking_ttl)
        if updated.is_terminal:
            await self._process_completed_order(updated)
        return updated

    def update_tracking_data(self, order: TrackedOrder, status: VenueOrderStatus) -> TrackedOrder:
        """Fold one venue status report into the tracked order."""
        new_status = normalize_venue_status(status.status, status.filled)
        changes: Dict[str, object] = {"status": new_status}
        if new_status in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.FAILED):
            changes["completed_at"] = self._clock()
        if status.filled:
            changes["filled_amount"] = status.filled
        elif new_status == OrderStatus.FILLED:
            changes["filled_amount"] = order.amount
        if status.avg_fill_price:
            changes["actual_fill_price"] = status.avg_fill_price
            if order.expected_price:
                sign = 1 if order.side == "buy" else -1
                changes["profit"] = (status.avg_fill_price - order.expected_price) * order.amount * sign
        if status.fee is not None:
            changes["fees"] = status.fee
        return order.model_copy(update=changes)

    async def _process_completed_order(self, order: TrackedOrder) -> None:
        log = with_context(self.logger, agent_id=order.agent_id, symbol=order.symbol,
                           order_id=order.order_id)
        await self.store.srem(ACTIVE_ORDERS_KEY, order.order_id)

        entry = order.model_dump(mode="json")
        await self.store.push_history(f"order_history:{order.user_id}", order.timestamp, entry,
                                      USER_HISTORY_LIMIT, ttl=HISTORY_TTL)
        if order.agent_id:
            await self.store.push_history(f"agent_history:{order.agent_id}", order.timestamp, entry,
                                          AGENT_HISTORY_LIMIT, ttl=HISTORY_TTL)
        await self.store.push_history(f"symbol_history:{_symbol_key(order.symbol)}", order.timestamp,
                                      entry, SYMBOL_HISTORY_LIMIT, ttl=HISTORY_TTL)

        realized = self._update_trade_records(order)

        self.bus.publish(OrderCompleted(
            order_id=order.order_id,
            user_id=order.user_id,
            agent_id=order.agent_id,
            symbol=order.symbol,
            side=order.side,
            amount=order.filled_amount or order.amount,
            status=order.status.value,
            actual_fill_price=order.actual_fill_price,
            fees=order.fees,
            profit=order.profit,
            realized_pnl=realized,
            closes_trade_id=order.closes_trade_id,
            completed_at=order.completed_at or self._clock(),
        ))
        log.info("✅ Order %s: fill %s profit %s", order.status.value,
                 order.actual_fill_price, order.profit)

    def _update_trade_records(self, order: TrackedOrder) -> Optional[float]:
        """Mirror the terminal state onto the trade record; returns realised P&L for closing fills."""
        trade = self.persistence.get_trade_by_order_id(order.order_id)
        if trade is None:
            self.logger.warning("No trade record for order %s", order.order_id)
            return None

        now = self._clock()
        if order.status != OrderStatus.FILLED:
            trade.status = TradeStatus.CANCELLED
            trade.reason = f"venue order {order.status.value}"
            self.persistence.save_trade(trade)
            return None

        trade.status = TradeStatus.FILLED
        trade.filled_price = order.actual_fill_price or trade.price
        trade.filled_quantity = order.filled_amount or order.amount
        trade.fees = order.fees

        realized: Optional[float] = None
        if trade.closes_trade_id:
            original = self.persistence.get_trade(trade.closes_trade_id)
            if original is not None and original.entry_price and trade.filled_price:
                sign = 1 if original.side == "buy" else -1
                closed_qty = min(trade.filled_quantity, original.open_quantity)
                realized = (trade.filled_price - original.entry_price) * closed_qty * sign
                remaining = original.open_quantity - closed_qty
                original.pnl = (original.pnl or 0.0) + realized
                if remaining <= 1e-12:
                    original.status = TradeStatus.CLOSED
                    original.closed_at = now
                else:
                    original.filled_quantity = remaining
                self.persistence.save_trade(original)
            trade.pnl = realized
            trade.status = TradeStatus.CLOSED
            trade.closed_at = now
        self.persistence.save_trade(trade)
        return realized

    # ------------------------------------------------------------------ #
    async def get_order_fill_price(self, order_id: str, symbol: Optional[str] = None) -> Optional[float]:
        """Tracked record first, then one venue status call, then a history scan."""
        order = await self._load(order_id)
        if order is not None and order.actual_fill_price:
            return order.actual_fill_price

        symbol = symbol or (order.symbol if order else None)
        if symbol is None:
            return None
        try:
            status = await self.venue.get_order_status(symbol, order_id)
            if status is not None and status.avg_fill_price:
                return status.avg_fill_price
            for past in await self.venue.get_order_history(symbol):
                if past.order_id == order_id and past.avg_fill_price:
                    return past.avg_fill_price
        except VenueError as exc:
            with_context(self.logger, symbol=symbol, order_id=order_id).warning(
                "Fill price lookup failed: %s", exc.reason
            )
        return None

    async def get_order_history(self, user_id: str, limit: int = 50) -> List[TrackedOrder]:
        return [TrackedOrder.model_validate(o)
                for o in await self.store.history(f"order_history:{user_id}", limit)]

    async def get_agent_order_history(self, agent_id: str, limit: int = 50) -> List[TrackedOrder]:
        return [TrackedOrder.model_validate(o)
                for o in await self.store.history(f"agent_history:{agent_id}", limit)]

    async def get_symbol_order_history(self, symbol: str, limit: int = 100) -> List[TrackedOrder]:
        return [TrackedOrder.model_validate(o)
                for o in await self.store.history(f"symbol_history:{_symbol_key(symbol)}", limit)]

    async def get_active_orders(self) -> List[str]:
        return await self.store.smembers(ACTIVE_ORDERS_KEY)

    async def cleanup_old_data(self) -> int:
        """Drop stale or orphaned ids from the active set."""
        removed = 0
        now = self._clock()
        for order_id in await self.get_active_orders():
            raw = await self.store.get(_tracking_key(order_id))
            if raw is None or now - float(raw.get("timestamp", 0)) > self.stale_after:
                await self.store.srem(ACTIVE_ORDERS_KEY, order_id)
                removed += 1
        if removed:
            self.logger.info("Removed %d stale orders from active tracking", removed)
        return removed

    async def stop(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()


# ---------------------------------------------------------------------------#
class OrderExecutor:
    """Venue submission; every attempt leaves a trade record behind."""

    def __init__(self, venue: BaseVenueClient, persistence, tracker: OrderTracker,
                 *, logger: Optional[logging.Logger] = None) -> None:
        self.venue = venue
        self.persistence = persistence
        self.tracker = tracker
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def _submit(self, trade: TradeRecord, *, expected_price: Optional[float]) -> TrackedOrder:
        log = with_context(self.logger, agent_id=trade.agent_id, user_id=trade.user_id,
                           symbol=trade.symbol, signal_id=trade.signal_id, trade_id=trade.id)
        try:
            if trade.order_type == "limit":
                ack = await self.venue.submit_limit_order(trade.symbol, trade.side,
                                                          trade.quantity, trade.price)
            else:
                ack = await self.venue.submit_market_order(trade.symbol, trade.side, trade.quantity)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, VenueError) else f"{exc.__class__.__name__}: {exc}"
            trade.status = TradeStatus.REJECTED
            trade.reason = reason
            self.persistence.save_trade(trade)
            log.error("❌ Venue rejected %s %s: %s", trade.side, trade.quantity, reason)
            raise ExecutionError(reason, trade_id=trade.id) from exc

        trade.order_id = ack.order_id
        self.persistence.save_trade(trade)
        order = TrackedOrder(
            order_id=ack.order_id,
            user_id=trade.user_id,
            agent_id=trade.agent_id,
            signal_id=trade.signal_id,
            trade_id=trade.id,
            symbol=trade.symbol,
            side=trade.side,
            amount=trade.quantity,
            expected_price=expected_price,
            closes_trade_id=trade.closes_trade_id,
        )
        await self.tracker.track_order(order)
        log.info("📤 Submitted %s %s %s → order %s", trade.side, trade.quantity, trade.symbol, ack.order_id)
        return order

    async def submit_order(self, preview: OrderPreview) -> TrackedOrder:
        """Place the order described by a confirmed preview."""
        expected = preview.price or (preview.estimated_cost / preview.amount if preview.amount else None)
        trade = TradeRecord(
            agent_id=preview.agent_id,
            user_id=preview.user_id,
            signal_id=preview.signal_id,
            symbol=preview.symbol,
            side=preview.side,
            order_type=preview.order_type,
            quantity=preview.amount,
            price=preview.price or expected,
            target_price=preview.take_profit,
            stop_loss=preview.stop_loss,
        )
        return await self._submit(trade, expected_price=expected)

    async def submit_closing_order(self, position: Position, quantity: float, reason: str) -> TrackedOrder:
        """Market order on the opposite side, linked to the trade it closes."""
        trade = TradeRecord(
            agent_id=position.agent_id,
            user_id=position.user_id,
            symbol=position.symbol,
            side="sell" if position.side == "buy" else "buy",
            order_type="market",
            quantity=quantity,
            price=position.current_price,
            reason=reason,
            closes_trade_id=position.trade_id,
        )
        return await self._submit(trade, expected_price=position.current_price)
