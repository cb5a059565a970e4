"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Code running inside an
orchestration should log through ``ReplayAwareLogger`` so that replays do not
repeat every record.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

_RESERVED_LOG_RECORD_ATTRS: set[str] = {
    "args",
    "asctime",
    "created",
    "exc_info",
    "exc_text",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "msg",
    "name",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "taskName",
    "thread",
    "threadName",
}

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter for logging records."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def build_formatter(fmt: str = "json") -> logging.Formatter:
    if fmt == "text":
        return logging.Formatter(TEXT_FORMAT)
    return JsonFormatter()


def configure_logging(level: str, fmt: str = "json") -> logging.Handler:
    """Configure root logging and return the handler so the durabletask
    client and worker can share it."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(build_formatter(fmt))

    root.addHandler(handler)
    root.setLevel(level.upper())

    # gRPC and the HTTP client are chatty at DEBUG.
    logging.getLogger("grpc").setLevel(max(root.level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
    return handler


class ReplayAwareLogger(logging.LoggerAdapter):
    """
    Logger adapter for orchestration code.

    Records emitted while the orchestration context is replaying history are
    dropped. Every record carries the workflow ID as ``workflow_id``.
    """

    def __init__(self, logger: logging.Logger, orchestration_ctx, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})
        self._ctx = orchestration_ctx

    def isEnabledFor(self, level: int) -> bool:
        if getattr(self._ctx, "is_replaying", False):
            return False
        return super().isEnabledFor(level)

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs
