"""
Structured logging.

Every record carries the correlation id of the webhook or Celery job that
produced it. While a message is routed through a flow, the masked sender
and the flow/step are attached too, so one conversation can be followed
across the inline path and the workers.

Usage:
    logger = get_logger(__name__)
    logger.info("Catch matched", extra_data={"catch_id": 7, "distance_km": 2.48})
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# sender ממוסך, flow, step של השיחה שבניתוב כרגע
conversation_context_var: ContextVar[dict[str, str] | None] = ContextVar(
    "conversation_context", default=None
)

# ספריות רועשות שמספיק לראות מהן אזהרות
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "pywa")

_TEXT_FORMAT = (
    "%(asctime)s | {app} | %(levelname)-8s | %(name)s | "
    "[%(correlation_id)s] %(conversation_label)s%(message)s"
)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ContextFilter(logging.Filter):
    """Copies the correlation id and conversation onto the record for text output"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        conversation = conversation_context_var.get()
        record.conversation_label = (
            f"{conversation['sender']} {conversation['flow']}/{conversation['step']} | "
            if conversation else ""
        )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; non-ASCII text (Malayalam, Hebrew) is kept as is"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        conversation = conversation_context_var.get()
        if conversation:
            entry["conversation"] = conversation

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """
    Logger that accepts `extra_data=` on every level method (including
    `exception`), stored on the record as a single dict.
    """

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False,
             stacklevel=1, extra_data: dict[str, Any] | None = None):
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(level, msg, args, exc_info=exc_info, extra=extra,
                     stack_info=stack_info, stacklevel=stacklevel + 1)


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "nearbuy-bot") -> None:
    """
    Configure the root logger once, at process start (API and workers).

    JSON lines in production; a readable one-line format when `json_format`
    is off (local development).
    """
    numeric_level = logging.getLevelName(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(ContextFilter())
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(_TEXT_FORMAT.format(app=app_name), datefmt="%Y-%m-%d %H:%M:%S")
        )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id to the current context (a fresh one when None)"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    cid = correlation_id_var.get()
    return cid or set_correlation_id()


@contextmanager
def conversation_context(sender: str, flow: str, step: str) -> Iterator[None]:
    """Attach a conversation to every record logged in the block. `sender` must already be masked."""
    token = conversation_context_var.set({"sender": sender, "flow": flow, "step": step})
    try:
        yield
    finally:
        conversation_context_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log start, outcome and duration of an async job step"""

    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.monotonic()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "duration_seconds": round(time.monotonic() - started, 3),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise
            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "duration_seconds": round(time.monotonic() - started, 3),
                },
            )
            return result

        return wrapper

    return decorator
