"""Logging helpers for the engine.

Provides configure_logging (text or JSON output with request correlation),
track_performance, and the request-id context variable shared with the
HTTP middleware.  Delegates to Python's standard logging library.
"""

import asyncio
import functools
import json
import logging
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

# Context variable to store request ID across async contexts
request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class RequestIdFilter(logging.Filter):
    """Stamp every record with the current request id (or ``-``)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_context.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install a single stream handler on the ``facet_core`` logger tree."""
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
        ))

    root = logging.getLogger("facet_core")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.2fms", op, elapsed * 1000
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.2fms", op, elapsed * 1000
                )

        if asyncio.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
