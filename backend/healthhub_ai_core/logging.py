"""Structured logging for the orchestration layer."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any


class StructuredFormatter(logging.Formatter):
    """key=value formatter; context fields come from ``extra_data``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)
        parts = [f"{key}={value}" for key, value in log_data.items()]
        if record.exc_info:
            parts.append(f"exc={self.formatException(record.exc_info)!r}")
        return " ".join(parts)


def _parse_level(level_name: str | None) -> int:
    level = logging.getLevelName((level_name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


_level = _parse_level(os.getenv("HEALTHHUB_LOG_LEVEL"))
_configured: list[logging.Logger] = []


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level)
        _configured.append(logger)
    return logger


def set_log_level(level_name: str) -> None:
    """Apply the configured level to every logger handed out so far and to later ones."""
    global _level
    _level = _parse_level(level_name)
    for logger in _configured:
        logger.setLevel(_level)


def log_with_context(logger: logging.Logger, level: int, msg: str, **fields: Any) -> None:
    logger.log(level, msg, extra={"extra_data": {k: v for k, v in fields.items() if v is not None}})
