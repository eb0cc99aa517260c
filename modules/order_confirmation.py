"""
order_confirmation.py
---------------------
Time-boxed order previews and their confirmation.

A preview is created for every order request, valid or not (an invalid
one is stored already ``cancelled`` with the validator's reasons).  It is
either auto-confirmed at creation or waits for ``confirm_order`` until its
``expires_at``; reads past that point flip it to ``expired``.

Confirmation always re-validates, and a per-preview lock plus a store
claim guarantee the venue sees at most one submission per preview.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from core.errors import ExecutionError, PreviewNotFound
from models.agent import ConfirmationSettings
from models.events import OrderExecuted, PreviewClosed
from models.order import OrderPreview, OrderRequest, PreviewStatus, RiskLevel, ValidationResult
from utils.event_bus import BUS
from utils.logger import with_context

PREVIEW_PREFIX = "order_preview:"
SETTINGS_PREFIX = "confirmation_settings:"
SETTINGS_TTL = 30 * 24 * 60 * 60
VOLATILITY_WORDS = ("volatility", "movement")


def determine_risk_level(validation: ValidationResult) -> RiskLevel:
    if validation.errors or len(validation.warnings) >= 3:
        return RiskLevel.HIGH
    if validation.warnings:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class OrderConfirmationService:
    def __init__(
        self,
        store,
        validator,
        executor,
        *,
        bus=BUS,
        default_settings: Optional[ConfirmationSettings] = None,
        retention: float = 3600.0,
        large_position_value: float = 1000.0,
        high_slippage_pct: float = 0.5,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.validator = validator
        self.executor = executor
        self.bus = bus
        self.default_settings = default_settings or ConfirmationSettings()
        self.retention = retention
        self.large_position_value = large_position_value
        self.high_slippage_pct = high_slippage_pct
        self._clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------ #
    async def _save(self, preview: OrderPreview) -> None:
        ttl = max(preview.expires_at - self._clock(), 0) + self.retention
        await self.store.set(f"{PREVIEW_PREFIX}{preview.id}", preview.model_dump(mode="json"), ttl=ttl)

    async def _load(self, preview_id: str) -> Optional[OrderPreview]:
        raw = await self.store.get(f"{PREVIEW_PREFIX}{preview_id}")
        return OrderPreview.model_validate(raw) if raw is not None else None

    def _closed(self, preview: OrderPreview) -> None:
        self.bus.publish(PreviewClosed(
            preview_id=preview.id,
            user_id=preview.user_id,
            signal_id=preview.signal_id,
            status=preview.status.value,
            reason=preview.failure_reason or "",
        ))

    async def _expire_if_due(self, preview: OrderPreview) -> OrderPreview:
        if preview.status == PreviewStatus.PENDING and preview.is_past_ttl(self._clock()):
            preview.status = PreviewStatus.EXPIRED
            preview.failure_reason = "confirmation window elapsed"
            await self._save(preview)
            self._closed(preview)
            self.logger.info("⌛ Preview %s expired", preview.id)
        return preview

    # ---------------------------- settings ----------------------------- #
    async def get_confirmation_settings(self, user_id: str) -> ConfirmationSettings:
        raw = await self.store.get(f"{SETTINGS_PREFIX}{user_id}")
        if raw is None:
            return self.default_settings.model_copy(deep=True)
        return ConfirmationSettings.model_validate(raw)

    async def update_confirmation_settings(self, user_id: str, **changes) -> ConfirmationSettings:
        current = await self.get_confirmation_settings(user_id)
        updated = ConfirmationSettings.model_validate({**current.model_dump(), **changes})
        await self.store.set(f"{SETTINGS_PREFIX}{user_id}", updated.model_dump(mode="json"),
                             ttl=SETTINGS_TTL)
        return updated

    # ---------------------------- previews ----------------------------- #
    def should_auto_confirm(self, preview: OrderPreview, settings: ConfirmationSettings) -> bool:
        """
        Cost gate AND no manual trigger.

        The cost gate passes when confirmation is switched off or the order
        is cheaper than ``auto_confirm_below_amount``.
        """
        if not preview.validation.is_valid:
            return False
        if settings.require_confirmation and preview.estimated_cost > settings.auto_confirm_below_amount:
            return False

        triggers = set(settings.manual_confirmation_required)
        if "HIGH_RISK" in triggers and preview.risk_level == RiskLevel.HIGH:
            return False
        if "LARGE_POSITION" in triggers and preview.estimated_cost > self.large_position_value:
            return False
        if "HIGH_VOLATILITY" in triggers and any(
            word in w.lower() for w in preview.validation.warnings for word in VOLATILITY_WORDS
        ):
            return False
        if ("HIGH_SLIPPAGE" in triggers and preview.slippage_estimate is not None
                and preview.slippage_estimate > self.high_slippage_pct):
            return False
        return True

    async def create_preview(self, request: OrderRequest) -> OrderPreview:
        log = with_context(self.logger, agent_id=request.agent_id, user_id=request.user_id,
                           symbol=request.symbol, signal_id=request.signal_id)
        settings = await self.get_confirmation_settings(request.user_id)
        validation = await self.validator.validate(request)
        now = self._clock()

        preview = OrderPreview(
            id=f"{request.user_id}_{uuid.uuid4().hex}",
            user_id=request.user_id,
            agent_id=request.agent_id,
            signal_id=request.signal_id,
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            amount=request.amount,
            price=request.price,
            estimated_cost=validation.estimated_cost,
            estimated_fees=validation.estimated_fees,
            slippage_estimate=validation.slippage_estimate,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
            risk_level=determine_risk_level(validation),
            validation=validation,
            created_at=now,
            expires_at=now + settings.confirmation_timeout,
        )
        if not validation.is_valid:
            preview.status = PreviewStatus.CANCELLED
            preview.failure_reason = "; ".join(validation.errors)
            await self._save(preview)
            self._closed(preview)
            log.warning("Preview %s refused: %s", preview.id, preview.failure_reason)
            return preview

        preview.auto_confirmed = self.should_auto_confirm(preview, settings)
        await self._save(preview)
        log.info("📝 Preview %s created (cost %.2f, risk %s, auto=%s)", preview.id,
                 preview.estimated_cost, preview.risk_level.value, preview.auto_confirmed)

        if preview.auto_confirmed:
            return await self.confirm_order(preview.id)
        return preview

    async def confirm_order(self, preview_id: str) -> OrderPreview:
        """
        Re-validate and execute a pending preview.

        Terminal previews are returned unchanged.  Failures (re-validation or
        venue) leave the preview ``cancelled`` with a reason; nothing is raised
        except ``PreviewNotFound``.
        """
        lock = self._locks.setdefault(preview_id, asyncio.Lock())
        try:
            async with lock:
                return await self._confirm_locked(preview_id)
        finally:
            if not lock.locked():
                self._locks.pop(preview_id, None)

    async def _confirm_locked(self, preview_id: str) -> OrderPreview:
        preview = await self.get_order_preview(preview_id)
        if preview is None:
            raise PreviewNotFound(f"order preview {preview_id} not found")
        if preview.status != PreviewStatus.PENDING:
            return preview

        if not await self.store.set_if_absent(f"preview_claim:{preview_id}", self._clock(),
                                              ttl=self.retention):
            self.logger.info("Preview %s already claimed by another worker", preview_id)
            return await self._load(preview_id) or preview

        log = with_context(self.logger, agent_id=preview.agent_id, user_id=preview.user_id,
                           symbol=preview.symbol, preview_id=preview.id)

        validation = await self.validator.validate(preview.to_request())
        preview.validation = validation
        if not validation.is_valid:
            preview.status = PreviewStatus.CANCELLED
            preview.failure_reason = "; ".join(validation.errors)
            await self._save(preview)
            self._closed(preview)
            log.warning("Re-validation failed: %s", preview.failure_reason)
            return preview

        preview.status = PreviewStatus.CONFIRMED
        await self._save(preview)

        try:
            order = await self.executor.submit_order(preview)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, ExecutionError) else f"{exc.__class__.__name__}: {exc}"
            preview.status = PreviewStatus.CANCELLED
            preview.failure_reason = reason
            await self._save(preview)
            self._closed(preview)
            log.error("Execution failed: %s", reason, exc_info=not isinstance(exc, ExecutionError))
            return preview

        preview.status = PreviewStatus.EXECUTED
        preview.order_id = order.order_id
        await self._save(preview)
        await self.validator.update_daily_stats(preview.user_id, preview.estimated_cost)

        self.bus.publish(OrderExecuted(
            preview_id=preview.id,
            order_id=order.order_id,
            user_id=preview.user_id,
            agent_id=preview.agent_id,
            signal_id=preview.signal_id,
            symbol=preview.symbol,
            side=preview.side,
            amount=preview.amount,
            estimated_cost=preview.estimated_cost,
        ))
        log.info("🚀 Preview executed as order %s", order.order_id)
        return preview

    async def cancel_order_preview(self, preview_id: str, reason: str = "cancelled by user") -> OrderPreview:
        lock = self._locks.setdefault(preview_id, asyncio.Lock())
        try:
            async with lock:
                preview = await self.get_order_preview(preview_id)
                if preview is None:
                    raise PreviewNotFound(f"order preview {preview_id} not found")
                if preview.status != PreviewStatus.PENDING:
                    return preview
                preview.status = PreviewStatus.CANCELLED
                preview.failure_reason = reason
                await self._save(preview)
                self._closed(preview)
                return preview
        finally:
            if not lock.locked():
                self._locks.pop(preview_id, None)

    async def get_order_preview(self, preview_id: str) -> Optional[OrderPreview]:
        preview = await self._load(preview_id)
        if preview is None:
            return None
        return await self._expire_if_due(preview)

    async def get_user_pending_previews(self, user_id: str) -> List[OrderPreview]:
        pending = []
        for key in await self.store.keys(f"{PREVIEW_PREFIX}{user_id}_*"):
            preview = await self.get_order_preview(key[len(PREVIEW_PREFIX):])
            if preview is not None and preview.status == PreviewStatus.PENDING:
                pending.append(preview)
        return sorted(pending, key=lambda p: p.created_at, reverse=True)

    async def cancel_expired_previews(self) -> int:
        """Sweep every stored preview and expire the overdue pending ones."""
        expired = 0
        for key in await self.store.keys(f"{PREVIEW_PREFIX}*"):
            preview = await self._load(key[len(PREVIEW_PREFIX):])
            if preview is None or preview.status != PreviewStatus.PENDING:
                continue
            if (await self._expire_if_due(preview)).status == PreviewStatus.EXPIRED:
                expired += 1
        if expired:
            self.logger.info("Expired %d overdue previews", expired)
        return expired

    async def get_system_stats(self) -> Dict[str, float]:
        counts = {"total": 0, "pending": 0, "expired": 0, "cancelled": 0, "confirmed": 0, "auto": 0}
        for key in await self.store.keys(f"{PREVIEW_PREFIX}*"):
            preview = await self._load(key[len(PREVIEW_PREFIX):])
            if preview is None:
                continue
            counts["total"] += 1
            if preview.status == PreviewStatus.PENDING:
                counts["pending"] += 1
            elif preview.status == PreviewStatus.EXPIRED:
                counts["expired"] += 1
            elif preview.status == PreviewStatus.CANCELLED:
                counts["cancelled"] += 1
            else:
                counts["confirmed"] += 1
                counts["auto"] += int(preview.auto_confirmed)
        return {
            "total_previews": counts["total"],
            "pending_previews": counts["pending"],
            "expired_previews": counts["expired"],
            "cancelled_previews": counts["cancelled"],
            "confirmed_previews": counts["confirmed"],
            "auto_confirm_rate": counts["auto"] / counts["confirmed"] * 100 if counts["confirmed"] else 0.0,
        }
