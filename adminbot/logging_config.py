"""Structured logging for the booking bot.

Every record is one JSON line. Call sites attach structured data with
``extra={"context": {...}}``; turn code uses ``conversation_logger`` so
tenant and subscriber ride along on every line of a turn.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")
PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s %(context)s"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack"] = self.formatStack(record.stack_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class PlainFormatter(logging.Formatter):
    """Human-readable lines for local debugging."""

    def format(self, record: logging.LogRecord) -> str:
        record.context = getattr(record, "context", None) or ""
        return super().format(record)


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PlainFormatter(PLAIN_FORMAT))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"adminbot.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges fixed fields into each record's context.

    Accepts both ``context=...`` and ``extra={"context": ...}`` at call sites.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        context = {**(extra.pop("context", None) or {}), **(kwargs.pop("context", None) or {})}
        if context or self.extra:
            extra["context"] = {**self.extra, **context}
        kwargs["extra"] = extra
        return msg, kwargs


def conversation_logger(logger: logging.Logger, key) -> LoggerAdapter:
    return LoggerAdapter(logger, {"tenant_id": key.tenant_id, "subscriber_id": key.subscriber_id})
