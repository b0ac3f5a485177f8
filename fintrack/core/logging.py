"""
Structured logging for the fintrack backend.

- One application logger, "fintrack"; module loggers propagate into it.
- JSON lines in production, a single readable line elsewhere.
- request_id and session_id are bound per request (see RequestIdMiddleware)
  and stamped onto every record, so a forced sign-out can be traced back to
  the poll tick or push that caused it.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

APP_LOGGER = "fintrack"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_ctx_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

# Copied into JSON output when present on the record
STRUCTURED_FIELDS = (
    "session_id",
    "user_id",
    "event_type",
    "error_code",
    "state",
    "reason",
    "payment_id",
    "actor",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def get_session_id(default: Optional[str] = None) -> Optional[str]:
    sid = session_id_ctx_var.get()
    return sid if sid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestContextFilter(logging.Filter):
    """Fill request_id / session_id from the request context unless set explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "session_id", None) is None:
            record.session_id = get_session_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = ""
        for label, field in (("rid", "request_id"), ("session", "session_id"), ("user", "user_id")):
            value = getattr(record, field, None)
            if value:
                tags += f" [{label}={value}]"
        line = f"{_timestamp(record)} {record.levelname} [{APP_LOGGER}]{tags} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install the single stdout handler on the application logger."""
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; do not duplicate its lines through the root logger
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log `msg` on the application logger with correlation ids and truncated extras."""
    logger = logging.getLogger(APP_LOGGER)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "request_id": request_id or get_request_id(),
        "session_id": session_id or get_session_id(),
        "user_id": user_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    for key, value in (extra or {}).items():
        payload[key] = _safe_truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
