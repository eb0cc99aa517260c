# utils/logger.py
import logging
import os
from logging import LoggerAdapter
from logging.handlers import RotatingFileHandler

_DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
_DEFAULT_FILE  = os.getenv("LOG_FILE", "logs/pipeline.log")
_DEFAULT_MAX_MB = int(os.getenv("LOG_MAX_MB", "5"))      # 5 MB
_DEFAULT_BACKUPS = int(os.getenv("LOG_BACKUPS", "5"))    # keep 5 rotated files

# order matters: this is the order fields appear in the log prefix
_CONTEXT_FIELDS = ("agent_id", "user_id", "symbol", "signal_id", "preview_id", "order_id", "trade_id")


def setup_logger(name: str,
                 level=_DEFAULT_LEVEL,
                 log_file=_DEFAULT_FILE,
                 to_console: bool = True) -> logging.Logger:
    """
    Create/get a logger with both console and rotating-file handlers.
    Re-using the same name returns the same configured logger (no duplicate handlers).
    """
    logger = logging.getLogger(name)
    if logger.handlers:  # already configured
        return logger

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=_DEFAULT_MAX_MB * 1024 * 1024,
            backupCount=_DEFAULT_BACKUPS,
            encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    if to_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(level)
        logger.addHandler(stream_handler)

    # quiet noisy libs
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logger


class _ContextAdapter(LoggerAdapter):
    """Prefix every message with ``[agent=.. symbol=.. order=..]``."""

    def process(self, msg, kwargs):
        parts = [
            f"{field.replace('_id', '')}={self.extra[field]}"
            for field in _CONTEXT_FIELDS
            if self.extra.get(field) is not None
        ]
        if parts:
            msg = f"[{' '.join(parts)}] {msg}"
        return msg, kwargs


def with_context(logger: logging.Logger, **context) -> LoggerAdapter:
    """
    Bind operational context (agent id, symbol, order id, ...) to a logger.

    Failures anywhere in the pipeline are logged through one of these so a
    single log line is enough for triage.
    """
    return _ContextAdapter(logger, context)
