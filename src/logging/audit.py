"""Structured JSON audit logging for the gateway.

One JSON object per line on stdout, optionally mirrored to a file
(AUDIT_LOG_FILE). Every proxied request produces one line carrying the
key id, account, backend, model, upstream status and latency.

Credentials never reach the log: known secret-bearing fields are
scrubbed by the formatter, and presented keys are logged only as a
masked hint.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from src.config.settings import Settings, get_settings

AUDIT_LOGGER = "gateway.audit"

# Request-scoped context for correlating log entries
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_SECRET_FIELDS = {"authorization", "backend_secret", "secret_value", "api_key"}
_REDACTED = "[redacted]"


def mask_secret(value: str | None) -> str:
    """Keep just enough of a key to correlate log lines: ``sk-c...aaa``."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-3:]}"


def _scrub(data: dict) -> dict:
    return {
        name: _REDACTED if name.lower() in _SECRET_FIELDS else value
        for name, value in data.items()
    }


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
        }
        # Fields passed via extra={"audit_data": {...}}
        audit_data = getattr(record, "audit_data", None)
        if isinstance(audit_data, dict):
            entry.update(_scrub(audit_data))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """(Re)configure the audit logger. Safe to call more than once."""
    settings = settings or get_settings()

    logger = logging.getLogger(AUDIT_LOGGER)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.audit_log_file:
        handlers.append(logging.FileHandler(settings.audit_log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Our handlers already emit; don't duplicate through the root logger
    logger.propagate = False
    return logger


def get_audit_logger() -> logging.Logger:
    return logging.getLogger(AUDIT_LOGGER)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


class RequestTimer:
    """Wall-clock latency of one request in milliseconds.

    Buffered responses stop the timer once the upstream body is read;
    streamed responses stop it when the relay closes.
    """

    def __init__(self):
        self._started: float | None = None
        self.elapsed_ms: float = 0.0

    def start(self) -> "RequestTimer":
        self._started = time.perf_counter()
        return self

    def stop(self) -> float:
        if self._started is None:
            raise RuntimeError("RequestTimer.stop() called before start()")
        self.elapsed_ms = round((time.perf_counter() - self._started) * 1000, 2)
        return self.elapsed_ms

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.stop()
