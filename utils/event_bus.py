# --------------------------------------------------------------------
# utils/event_bus.py
# --------------------------------------------------------------------
"""A light, asyncio-based pub/sub that the whole pipeline can import.

Subscribers register against an event *type* (see models/events.py).
Delivery is at-least-once: a handler may see the same event twice, so
handlers that change state are wrapped in `IdempotentHandler`."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type, Union

logger = logging.getLogger(__name__)

_Handler = Callable[[object], Union[Awaitable[None], None]]


class EventBus:
    def __init__(self) -> None:
        self._subs: Dict[type, List[_Handler]] = defaultdict(list)
        self._q: asyncio.Queue[Tuple[type, object]] = asyncio.Queue()
        # background task started lazily on first publish
        self._task: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failures = 0

    # -------------------------------------------------------------- #
    def subscribe(self, event_type: Type, fn: _Handler) -> None:
        self._subs[event_type].append(fn)

    def publish(self, event: object) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._worker())
        self._q.put_nowait((type(event), event))

    async def drain(self) -> None:
        """Wait until every queued event has been handed to its handlers."""
        await self._q.join()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # -------------------------------------------------------------- #
    async def _worker(self) -> None:
        while True:
            event_type, payload = await self._q.get()
            try:
                for fn in list(self._subs.get(event_type, [])):
                    try:
                        res = fn(payload)
                        if asyncio.iscoroutine(res):
                            await res
                        self.delivered += 1
                    except Exception:  # keep bus alive
                        self.failures += 1
                        logger.exception(
                            "[event_bus] %s handler %s failed",
                            event_type.__name__, getattr(fn, "__name__", fn),
                        )
            finally:
                self._q.task_done()


class IdempotentHandler:
    """
    Drop re-delivered events by their ``key``.

    Seen keys are remembered for ``ttl`` seconds and pruned on each call so
    the memory footprint stays bounded by the event rate.
    """

    def __init__(self, fn: _Handler, ttl: float = 3600.0,
                 clock: Callable[[], float] = time.time) -> None:
        self._fn = fn
        self._ttl = ttl
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self.__name__ = getattr(fn, "__name__", self.__class__.__name__)

    async def __call__(self, event) -> None:
        now = self._clock()
        self._seen = {k: exp for k, exp in self._seen.items() if exp > now}
        key = event.key
        if key in self._seen:
            logger.debug("duplicate %s %s dropped", type(event).__name__, key)
            return
        res = self._fn(event)
        if asyncio.iscoroutine(res):
            await res
        # only successful deliveries count as seen
        self._seen[key] = now + self._ttl


# singleton – import this everywhere
BUS = EventBus()

# convenience shims so callers don't care about the BUS name
subscribe = BUS.subscribe
publish = BUS.publish
