"""
core/pipeline.py
----------------
Facade over the wired components: the operations an outer surface (API,
CLI, notebook) calls, plus the recurring jobs that keep the pipeline moving.

    pipeline = TradingPipeline.from_config(load_configuration())
    await pipeline.start()
    ...
    await pipeline.stop()
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from core import signal_handler
from core.initialization import initialize_components
from models.metrics import PerformanceMetrics
from models.order import OrderPreview, OrderRequest, TrackedOrder
from models.position import Position
from models.signal import Signal, TradingSignal


class TradingPipeline:
    def __init__(self, components: Dict[str, Any]) -> None:
        self.components = components
        self.config = components["config"]
        self.logger = components["logger"]
        self.bus = components["bus"]
        self._clock = components["clock"]
        self.store = components["store"]
        self.persistence = components["persistence"]
        self.venue = components["venue"]
        self.tracker = components["tracker"]
        self.confirmation = components["confirmation"]
        self.dispatcher = components["dispatcher"]
        self.monitor = components["monitor"]
        self.exits = components["exits"]
        self.performance = components["performance"]
        self.scheduler = components["scheduler"]
        self.source = components.get("source")
        self._last_analysis: Dict[str, float] = {}
        self._register_jobs()

    @classmethod
    def from_config(cls, config: Dict, overrides: Optional[Dict[str, object]] = None,
                    logger=None) -> "TradingPipeline":
        return cls(initialize_components(config, overrides, logger))

    # ------------------------------------------------------------------ #
    # Signals
    # ------------------------------------------------------------------ #
    async def generate_and_queue_signal(self, agent_id: str,
                                        symbol: Optional[str] = None) -> TradingSignal:
        if self.source is None:
            raise RuntimeError("no signal source configured")
        return await signal_handler.generate_and_queue_signal(
            agent_id, symbol, persistence=self.persistence,
            source=self.source, dispatcher=self.dispatcher,
        )

    async def broadcast_signal(self, signal: Signal) -> Dict[str, Any]:
        return await signal_handler.broadcast_signal(
            signal, persistence=self.persistence, dispatcher=self.dispatcher,
        )

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.dispatcher.get_queue_stats()

    # ------------------------------------------------------------------ #
    # Previews
    # ------------------------------------------------------------------ #
    async def create_order_preview(self, request: Union[OrderRequest, Dict[str, Any]]) -> OrderPreview:
        if not isinstance(request, OrderRequest):
            request = OrderRequest.model_validate(request)
        return await self.confirmation.create_preview(request)

    async def confirm_order(self, preview_id: str) -> OrderPreview:
        return await self.confirmation.confirm_order(preview_id)

    async def cancel_order_preview(self, preview_id: str,
                                   reason: str = "cancelled by user") -> OrderPreview:
        return await self.confirmation.cancel_order_preview(preview_id, reason)

    # ------------------------------------------------------------------ #
    # Orders, positions, performance
    # ------------------------------------------------------------------ #
    async def get_order_history(self, user_id: str, limit: int = 50) -> List[TrackedOrder]:
        return await self.tracker.get_order_history(user_id, limit)

    async def get_agent_positions(self, agent_id: str) -> List[Position]:
        return await self.monitor.get_agent_positions(agent_id)

    async def get_agent_performance(self, agent_id: str) -> PerformanceMetrics:
        return await self.performance.get_agent_performance(agent_id)

    # ------------------------------------------------------------------ #
    # Recurring jobs
    # ------------------------------------------------------------------ #
    def _register_jobs(self) -> None:
        self.scheduler.every("signal_queue", self.config.get_queue_interval(),
                             self.dispatcher.process_queue)
        self.scheduler.every("position_monitor", self.config.get_monitor_interval(),
                             self.monitor.monitor_all_active_agents)
        self.scheduler.every("preview_expiry", self.config.get_expiry_interval(),
                             self.confirmation.cancel_expired_previews)
        self.scheduler.every("cleanup", self.config.get_cleanup_interval(), self.cleanup)
        if self.source is not None:
            self.scheduler.every("market_analysis", self.config.get_analysis_tick(),
                                 self.run_due_analyses, retries=0)

    async def run_due_analyses(self) -> int:
        """Generate a signal for every active agent whose analysis interval has elapsed."""
        now = self._clock()
        ran = 0
        for agent in self.persistence.list_active_agents():
            last = self._last_analysis.get(agent.id)
            if last is not None and now - last < agent.analysis_interval:
                continue
            self._last_analysis[agent.id] = now
            try:
                await self.generate_and_queue_signal(agent.id)
            except Exception as exc:
                self.logger.warning("Analysis for agent %s failed: %s", agent.id, exc)
                continue
            ran += 1
        return ran

    async def cleanup(self) -> Dict[str, int]:
        signal_ttl = self.config.get_signal_ttl()
        # sweep first: key scans below evict expired entries on their own
        expired = await self.store.sweep()
        result = {
            "signals": await self.dispatcher.cleanup_old_signals(signal_ttl),
            "tracking": await self.tracker.cleanup_old_data(),
            "expired_keys": expired,
        }
        self.logger.info("🧹 Cleanup: %s", result)
        return result

    # ------------------------------------------------------------------ #
    async def start(self) -> None:
        self.scheduler.start()
        self.logger.info("🚀 Pipeline started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.tracker.stop()
        await self.bus.stop()
        await self.venue.close()
        await self.store.close()
        self.persistence.close()
        self.logger.info("Pipeline stopped")
