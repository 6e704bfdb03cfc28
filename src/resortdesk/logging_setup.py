"""Logging setup for resortdesk.

Log lines written while a scheduled check runs are tagged with the check name
and, inside the per-invoice loop, the invoice number, e.g.::

    2024-01-01 10:00:02 ERROR [resortdesk.billing_scheduler ] [reminders INV-0042] Failed to send ...

The tags come from ``log_context()``, which sets context variables. They
follow the work into asyncio tasks and ``asyncio.to_thread`` workers, so a
line logged from the SMTP worker still names its invoice.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator

from .config import Config, LoggingConfig

_current_check: ContextVar[str | None] = ContextVar("resortdesk_check", default=None)
_current_invoice: ContextVar[str | None] = ContextVar("resortdesk_invoice", default=None)

LINE_FORMAT = "%(levelname)-5s [%(name)-28s]%(billing_context)s %(message)s"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Track whether logging has been initialized to prevent double-init
_initialized = False


@contextmanager
def log_context(check: str | None = None, invoice: str | None = None) -> Iterator[None]:
    """Tag every log line emitted inside the block with a check name and/or invoice number."""
    tokens = []
    if check is not None:
        tokens.append((_current_check, _current_check.set(check)))
    if invoice is not None:
        tokens.append((_current_invoice, _current_invoice.set(invoice)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class BillingContextFilter(logging.Filter):
    """Adds ``billing_context`` (" [check invoice]" or "") to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [p for p in (_current_check.get(), _current_invoice.get()) if p]
        record.billing_context = f" [{' '.join(parts)}]" if parts else ""
        return True


def _handler(handler: logging.Handler, level: int, timestamps: bool) -> logging.Handler:
    fmt = f"%(asctime)s {LINE_FORMAT}" if timestamps else LINE_FORMAT
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=TIMESTAMP_FORMAT if timestamps else None))
    handler.addFilter(BillingContextFilter())
    return handler


def _file_handler(log_config: LoggingConfig) -> logging.Handler:
    file_path = Path(log_config.file)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_config.rotate:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
    return logging.FileHandler(file_path)


def setup_logging(
    config: Config,
    verbose: bool = False,
    daemon_mode: bool = False,
) -> None:
    """
    Configure logging for the resortdesk application.

    Args:
        config: Application configuration with logging settings
        verbose: If True, override config level to DEBUG
        daemon_mode: If True, include timestamps in console output
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    log_config = config.logging
    level_str = "DEBUG" if verbose else log_config.level.upper()
    level = getattr(logging, level_str, logging.INFO)

    logger = logging.getLogger("resortdesk")
    logger.setLevel(level)
    logger.handlers.clear()

    if log_config.output in ("console", "both"):
        logger.addHandler(_handler(logging.StreamHandler(sys.stderr), level, timestamps=daemon_mode))

    if log_config.output in ("file", "both") and log_config.file:
        logger.addHandler(_handler(_file_handler(log_config), level, timestamps=True))

    # Suppress noisy third-party loggers
    for noisy_logger in ("httpx", "httpcore"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def reset_logging() -> None:
    """Reset logging state for testing purposes."""
    global _initialized
    _initialized = False
    logger = logging.getLogger("resortdesk")
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
