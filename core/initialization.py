"""
core/initialization.py
----------------------
Loads configuration from .env and wires all runtime components with simple
dependency-injection (DI) overrides.
"""

from __future__ import annotations

import os
import logging
import time
from typing import Dict, Optional

from dotenv import load_dotenv

from models.agent import ConfirmationSettings
from module.persistence.sqlite import SQLitePersistence
from modules.exit_decision import ExitCoordinator
from modules.order_confirmation import OrderConfirmationService
from modules.order_execution import OrderExecutor, OrderTracker
from modules.performance import PerformanceTracker
from modules.position_monitor import PositionMonitor
from modules.pre_trade_validator import PreTradeValidator
from modules.signal_dispatcher import SignalDispatcher
from modules.venue_client import RateLimiter, RestVenueClient
from core.scheduler import JobScheduler
from utils.cache import MemoryStore, RedisStore
from utils.config_manager import ConfigManager
from utils.event_bus import BUS


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or default)


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or default)


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_configuration(env_path: str = "config.env") -> Dict:
    """
    Load settings from an .env-style file and return a structured config dict.
    """
    log = logging.getLogger(__name__)
    load_dotenv(dotenv_path=env_path)

    conf: Dict[str, Dict[str, object]] = {
        "VENUE": {
            "api_key": os.getenv("VENUE_API_KEY", ""),
            "api_secret": os.getenv("VENUE_API_SECRET", ""),
            "base_url": os.getenv("VENUE_BASE_URL", "https://api.lbkex.com"),
            "max_requests_per_10s": _int("VENUE_MAX_REQUESTS_PER_10S", 200),
            "timeout": _float("VENUE_TIMEOUT", 10.0),
        },
        "SIGNALS": {
            "batch_size": _int("SIGNAL_BATCH_SIZE", 5),
            "min_confidence": _float("SIGNAL_MIN_CONFIDENCE", 0.6),
            "max_signal_age": _float("SIGNAL_MAX_AGE", 300),
            "priority_threshold": _float("SIGNAL_PRIORITY_THRESHOLD", 80),
            "signal_ttl": _int("SIGNAL_TTL", 24 * 60 * 60),
            "queue_interval": _float("SIGNAL_QUEUE_INTERVAL", 30),
            "analysis_tick": _float("SIGNAL_ANALYSIS_TICK", 10),
        },
        "CONFIRMATION": {
            "require_confirmation": _bool("CONFIRM_REQUIRE", True),
            "confirmation_timeout": _int("CONFIRM_TIMEOUT", 300),
            "auto_confirm_below_amount": _float("CONFIRM_AUTO_BELOW", 50),
            "large_position_value": _float("CONFIRM_LARGE_POSITION", 1000),
            "high_slippage_pct": _float("CONFIRM_HIGH_SLIPPAGE", 0.5),
            "retention": _float("CONFIRM_RETENTION", 3600),
            "expiry_sweep_interval": _float("CONFIRM_SWEEP_INTERVAL", 60),
        },
        "EXECUTION": {
            "poll_interval": _float("EXEC_POLL_INTERVAL", 3),
            "max_tracking_duration": _float("EXEC_MAX_TRACKING", 300),
            "tracking_ttl": _float("EXEC_TRACKING_TTL", 3600),
        },
        "MONITOR": {
            "interval": _float("MONITOR_INTERVAL", 10),
            "change_threshold": _float("MONITOR_CHANGE_THRESHOLD", 0.5),
            "price_ttl": _float("MONITOR_PRICE_TTL", 5),
            "position_ttl": _float("MONITOR_POSITION_TTL", 300),
            "pnl_ttl": _float("MONITOR_PNL_TTL", 3600),
            "exit_lock_ttl": _float("MONITOR_EXIT_LOCK_TTL", 300),
            "performance_cache_ttl": _float("PERFORMANCE_CACHE_TTL", 30),
        },
        "LIMITS": {
            "fee_rate": _float("LIMIT_FEE_RATE", 0.001),
            "min_order_value": _float("LIMIT_MIN_ORDER_VALUE", 10),
            "max_position_value": _float("LIMIT_MAX_POSITION_VALUE", 1000),
            "max_daily_volume": _float("LIMIT_MAX_DAILY_VOLUME", 10000),
            "max_slippage": _float("LIMIT_MAX_SLIPPAGE", 0.5),
            "movement_warning_pct": _float("LIMIT_MOVEMENT_WARNING", 10),
        },
        "CACHE": {
            "backend": os.getenv("CACHE_BACKEND", "memory").lower(),
            "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            "prefix": os.getenv("CACHE_PREFIX", "pipeline:"),
            "default_ttl": _int("CACHE_DEFAULT_TTL", 24 * 60 * 60),
            "cleanup_interval": _float("CLEANUP_INTERVAL", 6 * 60 * 60),
        },
        "DATABASE": {
            "path": os.getenv("DATABASE_PATH", "data/pipeline.db"),
        },
    }

    log.debug("Parsed config sections: %s", list(conf))
    return conf


def initialize_components(
    config: Dict,
    overrides: Optional[Dict[str, object]] = None,
    logger: Optional[object] = None
    ) -> Dict[str, object]:
    """
    Construct and wire together all runtime components (supports DI via overrides).

    Keys you can override:
    {"logger", "bus", "clock", "sleep", "store", "persistence", "venue",
     "validator", "source", "advisor"}
    """
    overrides = overrides or {}
    config = config if isinstance(config, ConfigManager) else ConfigManager(config)

    # 1) Logger, bus, time
    from utils.logger import setup_logger
    logger = overrides.get("logger") or logger or setup_logger("pipeline")
    bus = overrides.get("bus") or BUS
    clock = overrides.get("clock") or time.time
    sleep_kw = {"sleep": overrides["sleep"]} if "sleep" in overrides else {}

    # 2) Storage
    cache_cfg = config.section("CACHE")
    store = overrides.get("store")
    if store is None:
        if cache_cfg.get("backend") == "redis":
            store = RedisStore(url=cache_cfg["redis_url"], prefix=cache_cfg.get("prefix", "pipeline:"),
                               default_ttl=cache_cfg.get("default_ttl", 86400))
        else:
            store = MemoryStore(default_ttl=cache_cfg.get("default_ttl", 86400), clock=clock)
    persistence = overrides.get("persistence") or SQLitePersistence(config.get_db_path())

    # 3) Venue
    venue = overrides.get("venue")
    if venue is None:
        venue_cfg = config.section("VENUE")
        venue = RestVenueClient(
            api_key=venue_cfg.get("api_key", ""),
            secret_key=venue_cfg.get("api_secret", ""),
            base_url=venue_cfg.get("base_url", "https://api.lbkex.com"),
            rate_limiter=RateLimiter(max_requests=venue_cfg.get("max_requests_per_10s", 200)),
            timeout=venue_cfg.get("timeout", 10.0),
            logger=logger.getChild("venue"),
        )

    # 4) Validation → execution → confirmation
    limits = config.section("LIMITS")
    validator = overrides.get("validator") or PreTradeValidator(
        venue, store, agent_lookup=persistence.get_agent, clock=clock,
        logger=logger.getChild("validator"), **limits,
    )
    exe_cfg = config.section("EXECUTION")
    tracker = OrderTracker(
        venue, store, persistence, bus=bus,
        poll_interval=exe_cfg.get("poll_interval", 3.0),
        max_duration=exe_cfg.get("max_tracking_duration", 300.0),
        tracking_ttl=exe_cfg.get("tracking_ttl", 3600.0),
        clock=clock, logger=logger.getChild("tracker"), **sleep_kw,
    )
    executor = OrderExecutor(venue, persistence, tracker, logger=logger.getChild("executor"))

    conf_cfg = config.section("CONFIRMATION")
    confirmation = OrderConfirmationService(
        store, validator, executor, bus=bus,
        default_settings=ConfirmationSettings(
            require_confirmation=conf_cfg.get("require_confirmation", True),
            confirmation_timeout=conf_cfg.get("confirmation_timeout", 300),
            auto_confirm_below_amount=conf_cfg.get("auto_confirm_below_amount", 50.0),
        ),
        retention=conf_cfg.get("retention", 3600.0),
        large_position_value=conf_cfg.get("large_position_value", 1000.0),
        high_slippage_pct=conf_cfg.get("high_slippage_pct", 0.5),
        clock=clock, logger=logger.getChild("confirmation"),
    )

    # 5) Signals
    sig_cfg = config.section("SIGNALS")
    dispatcher = SignalDispatcher(
        store, persistence, venue, confirmation, bus=bus,
        batch_size=sig_cfg.get("batch_size", 5),
        min_confidence=sig_cfg.get("min_confidence", 0.6),
        max_signal_age=sig_cfg.get("max_signal_age", 300.0),
        priority_threshold=sig_cfg.get("priority_threshold", 80.0),
        signal_ttl=sig_cfg.get("signal_ttl", 86400),
        clock=clock, logger=logger.getChild("signals"),
    )

    # 6) Monitoring, exits, performance
    mon_cfg = config.section("MONITOR")
    monitor = PositionMonitor(
        store, persistence, venue, bus=bus,
        change_threshold=mon_cfg.get("change_threshold", 0.5),
        price_ttl=mon_cfg.get("price_ttl", 5.0),
        pnl_ttl=mon_cfg.get("pnl_ttl", 3600.0),
        position_ttl=mon_cfg.get("position_ttl", 300.0),
        clock=clock, logger=logger.getChild("monitor"),
    )
    exits = ExitCoordinator(
        store, persistence, venue, executor, overrides.get("advisor"), bus=bus,
        lock_ttl=mon_cfg.get("exit_lock_ttl", 300.0),
        clock=clock, logger=logger.getChild("exits"),
    )
    performance = PerformanceTracker(
        store, persistence, bus=bus,
        cache_ttl=mon_cfg.get("performance_cache_ttl", 30.0),
        clock=clock, logger=logger.getChild("performance"),
    )
    scheduler = JobScheduler(logger=logger.getChild("scheduler"), **sleep_kw)

    logger.info("✅ Store initialized: %s", store.__class__.__name__)
    logger.info("✅ Venue client initialized: %s", venue.__class__.__name__)
    logger.info("✅ Pipeline components wired.")

    return {
        "config": config,
        "logger": logger,
        "bus": bus,
        "clock": clock,
        "store": store,
        "persistence": persistence,
        "venue": venue,
        "validator": validator,
        "tracker": tracker,
        "executor": executor,
        "confirmation": confirmation,
        "dispatcher": dispatcher,
        "monitor": monitor,
        "exits": exits,
        "performance": performance,
        "scheduler": scheduler,
        "source": overrides.get("source"),
    }
