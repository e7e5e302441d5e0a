"""Centralized logging helpers for the payments backend."""
from __future__ import annotations

import logging
from typing import Optional

from pythonjsonlogger import jsonlogger

from app.core.log_shipping import HttpLogFlusher, LogBatchQueue, QueueLogHandler


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging with a JSON formatter."""

    root_logger = logging.getLogger()
    # Remove existing handlers to avoid duplicate logs when reloading.
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())

    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def attach_log_shipping(
    url: str | None, token: str | None, *, environment: str
) -> tuple[LogBatchQueue, HttpLogFlusher] | None:
    """Route log records to ``url`` through a batch queue; ``None`` when unset."""

    if not url:
        return None
    flusher = HttpLogFlusher(url, token)
    queue = LogBatchQueue(flusher)
    logging.getLogger().addHandler(QueueLogHandler(queue, environment=environment))
    return queue, flusher


def detach_log_shipping() -> None:
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler, QueueLogHandler):
            root_logger.removeHandler(handler)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a logger configured with the shared root settings."""

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    return logger


__all__ = ["attach_log_shipping", "detach_log_shipping", "get_logger", "setup_logging"]
