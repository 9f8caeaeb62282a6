"""
Application logging setup.

Configures the Flask app logger from ``LOG_LEVEL``, ``LOG_FORMAT``, ``LOG_DIR``,
``ENABLE_FILE_LOGGING`` and ``ENABLE_CONSOLE_LOGGING``. The JSON formatter
carries the ``extra=`` fields the importer attaches to its log calls.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from flask import Flask

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_NAME = "app.log"

_RESERVED_LOG_RECORD_FIELDS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
    }
)

# Marks handlers installed here so repeated setup_logging calls replace them
_HANDLER_MARKER = "_training_app_handler"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_LOG_RECORD_FIELDS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def build_formatter(log_format: str) -> logging.Formatter:
    if str(log_format).strip().lower() == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT)


def _resolve_level(value) -> int:
    if isinstance(value, int):
        return value
    return getattr(logging, str(value or "INFO").strip().upper(), logging.INFO)


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(app: Flask) -> None:
    """(Re)configure ``app.logger``; safe to call again after config changes."""
    level = _resolve_level(app.config.get("LOG_LEVEL", "INFO"))
    formatter = build_formatter(app.config.get("LOG_FORMAT", "json"))

    logger = app.logger
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console = _mark(logging.StreamHandler(stream=sys.stdout))
        console.setLevel(level)
        console.setFormatter(formatter)
        logger.addHandler(console)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = Path(app.config.get("LOG_DIR") or "logs")
        if not log_dir.is_absolute():
            log_dir = Path(app.root_path) / log_dir
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = _mark(
            RotatingFileHandler(
                log_dir / LOG_FILE_NAME,
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                encoding="utf-8",
            )
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.setLevel(level)
    logger.debug(
        "Logging configured",
        extra={
            "log_level": logging.getLevelName(level),
            "log_format": app.config.get("LOG_FORMAT"),
            "log_file_enabled": bool(app.config.get("ENABLE_FILE_LOGGING", False)),
        },
    )
