"""Logging setup and an in-memory buffer of recent log lines for the CLI view."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Deque

LOGGER_NAME = "kasina_timer"

# Circular buffer of recent log entries (max 100)
log_buffer: Deque[dict] = deque(maxlen=100)


class LogBufferHandler(logging.Handler):
    """Captures log records into a bounded buffer."""

    def __init__(self, buffer: Deque[dict] | None = None):
        super().__init__()
        self.buffer = log_buffer if buffer is None else buffer

    def emit(self, record: logging.LogRecord):
        try:
            self.buffer.append({
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


def configure_logging(verbose: bool = False, stream: bool = False) -> logging.Logger:
    """Attach the buffer handler (once) to the package logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    if not any(isinstance(h, LogBufferHandler) for h in logger.handlers):
        handler = LogBufferHandler()
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    if stream and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(console)

    return logger


def recent_logs(limit: int = 5) -> list[dict]:
    return list(log_buffer)[-limit:]
