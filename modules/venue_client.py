"""
venue_client.py
---------------
Exchange venue access for the execution layer.

``BaseVenueClient`` is the contract every venue adapter satisfies;
``RestVenueClient`` talks to the LBank REST API over aiohttp with
HMAC-signed private calls and a sliding-window rate limiter.

Venue order states are reported as ``open | closed | canceled | failed``
and turned into pipeline ``OrderStatus`` values by ``normalize_venue_status``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from core.errors import VenueError
from models.order import OrderStatus
from models.venue import Balance, OrderBook, Ticker, VenueOrderAck, VenueOrderStatus
from utils import signing


# ---------------------------- helpers ------------------------------------- #
def split_symbol(symbol: str) -> Tuple[str, str]:
    """``"BTC/USDT"``, ``"btc_usdt"`` or ``"BTC-USDT"`` → ``("BTC", "USDT")``."""
    for sep in ("/", "_", "-"):
        if sep in symbol:
            base, quote = symbol.split(sep, 1)
            return base.upper(), quote.upper()
    raise ValueError(f"cannot split symbol {symbol!r} into base/quote")


def normalize_venue_status(status: str, filled: float = 0.0) -> OrderStatus:
    """Venue state → pipeline order state (an open order with fills is partial)."""
    status = (status or "").lower()
    if status == "closed":
        return OrderStatus.FILLED
    if status == "canceled":
        return OrderStatus.CANCELED
    if status == "open":
        return OrderStatus.PARTIALLY_FILLED if filled > 0 else OrderStatus.PENDING
    return OrderStatus.FAILED


# ---------------------------- rate limiter -------------------------------- #
class RateLimiter:
    """Simple sliding-window limiter (max N requests per window)."""

    def __init__(self, max_requests: int, window: float = 10.0) -> None:
        self.max_requests = max_requests
        self.window = window
        self.timestamps: deque[float] = deque()

    async def acquire(self) -> None:
        now = time.time()
        while self.timestamps and now - self.timestamps[0] > self.window:
            self.timestamps.popleft()
        if len(self.timestamps) >= self.max_requests:
            await asyncio.sleep(self.window - (now - self.timestamps[0]))
        self.timestamps.append(time.time())


# ---------------------------- contract ------------------------------------ #
class BaseVenueClient(ABC):
    """What the execution layer needs from an exchange."""

    @abstractmethod
    async def submit_market_order(self, symbol: str, side: str, amount: float) -> VenueOrderAck: ...

    @abstractmethod
    async def submit_limit_order(self, symbol: str, side: str, amount: float,
                                 price: float) -> VenueOrderAck: ...

    @abstractmethod
    async def get_order_status(self, symbol: str, order_id: str) -> Optional[VenueOrderStatus]: ...

    @abstractmethod
    async def get_order_history(self, symbol: str, limit: int = 100) -> List[VenueOrderStatus]: ...

    @abstractmethod
    async def get_balance(self) -> Balance: ...

    @abstractmethod
    async def get_ticker(self, symbol: str) -> Ticker: ...

    @abstractmethod
    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook: ...

    async def close(self) -> None:
        return None


# ---------------------------- LBank REST ---------------------------------- #
class RestVenueClient(BaseVenueClient):
    """aiohttp client for the LBank v2 REST API."""

    # LBank numeric order states
    _STATUS_MAP: Dict[str, str] = {
        "-1": "canceled",
        "0": "open",
        "1": "open",
        "2": "closed",
        "3": "canceled",  # partially filled, rest cancelled
        "4": "open",      # cancelling
    }

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = "https://api.lbkex.com",
        *,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._api_key = api_key
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.rate_limiter = rate_limiter or RateLimiter(max_requests=200)
        self.timeout = timeout
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.metrics = {"requests_sent": 0, "errors": 0}

    # -------------------------------------------------------------------- #
    @staticmethod
    def _venue_symbol(symbol: str) -> str:
        base, quote = split_symbol(symbol)
        return f"{base}_{quote}".lower()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(self, method: str, endpoint: str, params: Dict[str, Any],
                       *, signed: bool = True) -> Any:
        """Send one request and return the ``data`` payload (raises ``VenueError``)."""
        await self.rate_limiter.acquire()
        url = f"{self._base_url}{endpoint}"
        if signed:
            params = signing.sign_params(params, self._api_key, self._secret_key)
        kwargs = {"data": params} if method == "POST" else {"params": params}
        try:
            async with self._get_session().request(
                method, url, timeout=aiohttp.ClientTimeout(total=self.timeout), **kwargs
            ) as resp:
                self.metrics["requests_sent"] += 1
                if resp.status != 200:
                    raise VenueError(f"HTTP {resp.status} from {endpoint}", status=resp.status)
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.metrics["errors"] += 1
            raise VenueError(f"{endpoint} request failed: {exc}") from exc
        except ValueError as exc:
            # body was not JSON (json.JSONDecodeError is a ValueError)
            self.metrics["errors"] += 1
            raise VenueError(f"{endpoint} returned an unreadable body: {exc}") from exc
        except VenueError:
            self.metrics["errors"] += 1
            raise

        self.logger.debug("LBANK %s %s -> %s", method, endpoint, body)
        if isinstance(body, dict) and str(body.get("result", "true")).lower() == "false":
            self.metrics["errors"] += 1
            raise VenueError(f"{endpoint} rejected: error_code {body.get('error_code')}")
        return body.get("data", body) if isinstance(body, dict) else body

    # -------------------------------------------------------------------- #
    async def _create_order(self, symbol: str, order_type: str, *,
                            amount: Optional[float] = None,
                            price: Optional[float] = None) -> VenueOrderAck:
        params: Dict[str, Any] = {"symbol": self._venue_symbol(symbol), "type": order_type}
        if price is not None:
            params["price"] = price
        if amount is not None:
            params["amount"] = amount
        data = await self._request("POST", "/v2/supplement/create_order.do", params)
        oid = (data or {}).get("order_id") if isinstance(data, dict) else None
        if not oid:
            raise VenueError(f"create_order returned no order id for {symbol}")
        return VenueOrderAck(order_id=str(oid))

    async def submit_market_order(self, symbol: str, side: str, amount: float) -> VenueOrderAck:
        side = side.lower()
        if side == "buy":
            # market buys are sized in quote currency on this venue
            ticker = await self.get_ticker(symbol)
            return await self._create_order(symbol, "buy_market", price=amount * ticker.last_price)
        return await self._create_order(symbol, f"{side}_market", amount=amount)

    async def submit_limit_order(self, symbol: str, side: str, amount: float,
                                 price: float) -> VenueOrderAck:
        return await self._create_order(symbol, side.lower(), amount=amount, price=price)

    def _parse_order(self, raw: Dict[str, Any]) -> VenueOrderStatus:
        amount = float(raw.get("origQty") or raw.get("amount") or 0)
        filled = float(raw.get("executedQty") or raw.get("deal_amount") or 0)
        avg = raw.get("avgPrice") or raw.get("avg_price")
        fee = raw.get("fee") or raw.get("cummulativeFee")
        state = self._STATUS_MAP.get(str(raw.get("status")), "failed")
        return VenueOrderStatus(
            order_id=str(raw.get("orderId") or raw.get("order_id")),
            status=state,
            filled=filled,
            remaining=max(0.0, amount - filled),
            avg_fill_price=float(avg) if avg not in (None, "", 0, "0") else None,
            fee=abs(float(fee)) if fee not in (None, "") else None,
        )

    async def get_order_status(self, symbol: str, order_id: str) -> Optional[VenueOrderStatus]:
        data = await self._request(
            "POST", "/v2/supplement/orders_info.do",
            {"symbol": self._venue_symbol(symbol), "orderId": order_id},
        )
        if isinstance(data, list):
            data = data[0] if data else None
        return self._parse_order(data) if data else None

    async def get_order_history(self, symbol: str, limit: int = 100) -> List[VenueOrderStatus]:
        data = await self._request(
            "POST", "/v2/supplement/orders_info_history.do",
            {"symbol": self._venue_symbol(symbol), "current_page": 1, "page_length": limit},
        )
        orders = data.get("orders", []) if isinstance(data, dict) else (data or [])
        return [self._parse_order(o) for o in orders]

    async def get_balance(self) -> Balance:
        data = await self._request("POST", "/v2/supplement/user_info.do", {})
        free: Dict[str, float] = {}
        for item in (data or {}).get("balances", []) if isinstance(data, dict) else data or []:
            free[str(item.get("asset", "")).upper()] = float(item.get("free", 0) or 0)
        return Balance(free=free)

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._request(
            "GET", "/v2/ticker/24hr.do", {"symbol": self._venue_symbol(symbol)}, signed=False
        )
        row = data[0] if isinstance(data, list) and data else data
        tick = (row or {}).get("ticker", {})
        try:
            return Ticker(
                symbol=symbol,
                last_price=float(tick["latest"]),
                change_percent_24h=float(tick.get("change", 0) or 0),
                quote_volume=float(tick["turnover"]) if tick.get("turnover") else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise VenueError(f"malformed ticker for {symbol}: {exc}") from exc

    async def get_order_book(self, symbol: str, depth: int = 20) -> OrderBook:
        data = await self._request(
            "GET", "/v2/depth.do", {"symbol": self._venue_symbol(symbol), "size": depth}, signed=False
        ) or {}
        return OrderBook(
            symbol=symbol,
            bids=[(float(p), float(q)) for p, q in data.get("bids", [])],
            asks=[(float(p), float(q)) for p, q in data.get("asks", [])],
        )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
