"""JSON logging for the leadflow API.

Every record goes to stdout as one JSON object. Pipeline code attaches
structured context (provider, provider_message_id, conversation_id, job_id)
through ``extra={"context": {...}}`` or a :class:`PipelineLogger` bound to an
inbound event, so a single delivery can be traced across stages.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            payload["context"] = context

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger (idempotent)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"leadflow.{name}")


class PipelineLogger(logging.LoggerAdapter):
    """Adapter that merges bound context with per-call ``context=`` kwargs."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        merged = {**(self.extra or {}), **(context or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs

    def bind(self, **context: Any) -> "PipelineLogger":
        return PipelineLogger(self.logger, {**(self.extra or {}), **context})
