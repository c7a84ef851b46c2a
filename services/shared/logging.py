"""
One-line JSON logs for the portal API, evaluator and health monitor.

Every entry carries the service name, the request trace id and whatever
alerting context is bound for the current task (tenant, device, alert), on
top of the `extra` fields given at the call site:

    with log_context(tenant_id=3, device_id=100):
        logger.info("Readings stored", extra={"count": 4})
"""
from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
_bound_context: ContextVar[dict] = ContextVar("log_context", default={})

# Attributes every LogRecord has; anything else on a record came from `extra`.
_BUILTIN_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}

# Client libraries that log every outbound request (SMS provider URLs) at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach `fields` to every record logged inside the block, nesting allowed."""
    token = _bound_context.set({**_bound_context.get(), **fields})
    try:
        yield
    finally:
        _bound_context.reset(token)


def _timestamp(record: logging.LogRecord) -> str:
    created = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": trace_id_var.get(""),
        }
        entry.update(_bound_context.get())
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _BUILTIN_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(service: str, level: str | None = None) -> None:
    """Install the JSON handler on the root logger. Call once per process."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(os.getenv("SERVICE_NAME", service)))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if root.level > logging.DEBUG:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def log_event(logger: logging.Logger, msg: str, level: str = "INFO", **context) -> None:
    emit = getattr(logger, level.lower(), logger.info)
    emit(msg, extra=context)


def log_exception(
    logger: logging.Logger,
    message: str,
    exception: Exception,
    context: Optional[dict] = None,
) -> None:
    """Error line naming the exception type, without a traceback."""
    logger.error(
        message,
        extra={"error_type": type(exception).__name__, "error": str(exception), **(context or {})},
    )
