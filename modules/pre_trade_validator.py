"""
pre_trade_validator.py
----------------------
Default pre-trade validator used by order confirmation.

``validate(request)`` never raises for a bad order: every problem becomes an
error (order refused) or a warning (order allowed, risk level raised) on the
returned ``ValidationResult``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Tuple

from core.errors import VenueError
from models.order import OrderRequest, ValidationResult
from models.venue import OrderBook, Ticker
from modules.venue_client import BaseVenueClient, split_symbol

DAILY_VOLUME_TTL = 2 * 24 * 60 * 60


def estimate_slippage(levels: List[Tuple[float, float]], amount: float,
                      reference_price: float) -> Optional[float]:
    """
    Walk the book side until ``amount`` is filled.

    Returns the percent distance between the average fill price and
    ``reference_price``, or ``None`` when the visible depth cannot fill it.
    """
    remaining = amount
    cost = 0.0
    for price, qty in levels:
        take = min(remaining, qty)
        cost += take * price
        remaining -= take
        if remaining <= 0:
            break
    if remaining > 1e-12:
        return None
    avg_price = cost / amount
    return abs(avg_price - reference_price) / reference_price * 100


class PreTradeValidator:
    def __init__(
        self,
        venue: BaseVenueClient,
        store,
        *,
        agent_lookup: Optional[Callable] = None,
        fee_rate: float = 0.001,
        min_order_value: float = 10.0,
        max_position_value: float = 1000.0,
        max_daily_volume: float = 10000.0,
        max_slippage: float = 0.5,
        max_spread: float = 0.1,
        movement_warning_pct: float = 10.0,
        balance_warning_ratio: float = 0.9,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.venue = venue
        self.store = store
        self.agent_lookup = agent_lookup
        self.fee_rate = fee_rate
        self.min_order_value = min_order_value
        self.max_position_value = max_position_value
        self.max_daily_volume = max_daily_volume
        self.max_slippage = max_slippage
        self.max_spread = max_spread
        self.movement_warning_pct = movement_warning_pct
        self.balance_warning_ratio = balance_warning_ratio
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    # -------------------------------------------------------------------- #
    def _daily_key(self, user_id: str) -> str:
        day = time.strftime("%Y-%m-%d", time.gmtime(self._clock()))
        return f"daily_volume:{user_id}:{day}"

    async def get_daily_volume(self, user_id: str) -> float:
        return float(await self.store.get(self._daily_key(user_id)) or 0.0)

    async def update_daily_stats(self, user_id: str, value: float) -> float:
        """Add an executed order's value to the user's daily volume."""
        key = self._daily_key(user_id)
        total = float(await self.store.get(key) or 0.0) + value
        await self.store.set(key, total, ttl=DAILY_VOLUME_TTL)
        return total

    def _max_position_for(self, agent_id: Optional[str]) -> float:
        if agent_id and self.agent_lookup is not None:
            agent = self.agent_lookup(agent_id)
            if agent is not None:
                return agent.max_position_size
        return self.max_position_value

    # -------------------------------------------------------------------- #
    async def validate(self, request: OrderRequest) -> ValidationResult:
        result = ValidationResult()

        try:
            base, quote = split_symbol(request.symbol)
        except ValueError:
            result.fail(f"Invalid trading symbol format: {request.symbol}")
            return result

        try:
            ticker = await self.venue.get_ticker(request.symbol)
        except VenueError as exc:
            result.fail(f"Unable to retrieve market data: {exc.reason}")
            return result

        price = request.price or ticker.last_price
        result.estimated_cost = request.amount * price
        result.estimated_fees = result.estimated_cost * self.fee_rate

        self._check_limits(request, result)
        await self._check_daily_volume(request, result)
        await self._check_balance(request, result, base, quote, price)
        self._check_movement(ticker, result)
        if request.order_type == "market":
            await self._check_book(request, result, ticker)

        if not result.is_valid:
            self.logger.info(
                "Order %s %s %s refused: %s",
                request.side, request.amount, request.symbol, "; ".join(result.errors),
            )
        return result

    def _check_limits(self, request: OrderRequest, result: ValidationResult) -> None:
        cost = result.estimated_cost
        if cost < self.min_order_value:
            result.fail(f"Trade value ${cost:.2f} below minimum ${self.min_order_value:.2f}")
            price = cost / request.amount
            result.adjusted_amount = self.min_order_value / price
        limit = self._max_position_for(request.agent_id)
        if cost > limit:
            result.fail(f"Position size ${cost:.2f} exceeds limit of ${limit:.2f}")

    async def _check_daily_volume(self, request: OrderRequest, result: ValidationResult) -> None:
        used = await self.get_daily_volume(request.user_id)
        if used + result.estimated_cost > self.max_daily_volume:
            result.fail(
                f"Daily volume limit exceeded. Current: ${used:.2f}, Limit: ${self.max_daily_volume:.2f}"
            )

    async def _check_balance(self, request: OrderRequest, result: ValidationResult,
                             base: str, quote: str, price: float) -> None:
        try:
            balance = await self.venue.get_balance()
        except VenueError as exc:
            result.fail(f"Unable to validate account balance: {exc.reason}")
            return

        if request.side == "buy":
            available = balance.free.get(quote, 0.0)
            needed = result.estimated_cost + result.estimated_fees
            unit = quote
        else:
            available = balance.free.get(base, 0.0)
            needed = request.amount
            unit = base

        if needed > available:
            result.fail(f"Insufficient {unit} balance. Required: {needed:.8g}, Available: {available:.8g}")
        elif needed > available * self.balance_warning_ratio:
            result.warnings.append(
                f"Using more than {self.balance_warning_ratio:.0%} of available {unit} balance"
            )

    def _check_movement(self, ticker: Ticker, result: ValidationResult) -> None:
        change = abs(ticker.change_percent_24h)
        if change > self.movement_warning_pct:
            result.warnings.append(f"Rapid price movement: {change:.2f}% in 24h")

    async def _check_book(self, request: OrderRequest, result: ValidationResult,
                          ticker: Ticker) -> None:
        try:
            book: OrderBook = await self.venue.get_order_book(request.symbol)
        except VenueError as exc:
            result.warnings.append(f"Unable to retrieve order book: {exc.reason}")
            return

        if book.bids and book.asks:
            best_bid, best_ask = book.bids[0][0], book.asks[0][0]
            spread = (best_ask - best_bid) / best_bid * 100
            if spread > self.max_spread:
                result.warnings.append(f"Wide spread detected: {spread:.3f}%")

        side = book.asks if request.side == "buy" else book.bids
        slippage = estimate_slippage(side, request.amount, ticker.last_price)
        if slippage is None:
            result.warnings.append("Insufficient order book depth for market order")
            return
        result.slippage_estimate = slippage
        if slippage > self.max_slippage:
            result.warnings.append(f"High slippage estimate: {slippage:.3f}%")
