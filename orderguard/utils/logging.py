"""
Structured JSON logging with correlation IDs and order-scoped context.

Every log line is JSON with: timestamp, level, correlation_id, module, message,
plus whichever of STRUCTURED_FIELDS apply. Fields come from two places:
- `extra={...}` on the individual call
- `log_context(order_id=..., event_id=...)`, which binds them for every line
  logged inside the block (handlers, locks, cache, alerts) without threading
  ids through each call.
Per-call extras win over bound context.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Context variable holding the current request's correlation ID
correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Fields bound by log_context() for the current task
log_context_ctx: ContextVar[dict] = ContextVar("log_context", default={})

STRUCTURED_FIELDS = ("order_id", "event_id", "event_type", "payment_intent_id", "operation", "error_code")


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID from context."""
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    """Set the correlation ID in the current context."""
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 hex, 32 chars)."""
    return uuid.uuid4().hex


def get_log_context() -> dict:
    return dict(log_context_ctx.get())


@contextmanager
def log_context(**fields) -> Iterator[dict]:
    """
    Bind structured fields (order_id, event_id, ...) for the duration of the block.
    Nested blocks add to the outer binding; None values are ignored.
    Unknown field names raise, so typos do not silently vanish from the logs.
    """
    unknown = set(fields) - set(STRUCTURED_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {sorted(unknown)}")

    bound = {**log_context_ctx.get()}
    bound.update({k: str(v) for k, v in fields.items() if v is not None})
    token = log_context_ctx.set(bound)
    try:
        yield bound
    finally:
        log_context_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.%fZ"
            ),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(log_context_ctx.get())
        for key in STRUCTURED_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Replace default logging with structured JSON logging.
    Call once at application startup before any log calls.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(StructuredJsonFormatter())
    root_logger.addHandler(stream_handler)

    # Stripe logs every request at INFO
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
