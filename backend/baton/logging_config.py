"""
Structured JSON logging configuration (Monolog-style).

Provides structured logging with channels (http, db, chain, trace,
attendance, realtime), request ID tracking, and context-rich log entries.
All log output is valid JSON written to stdout for container log
aggregation.
"""

import logging
import json
import os
import uuid
from datetime import datetime, timezone
from contextvars import ContextVar

# ──────────────────────────────────────────────────────────────
# Context variable to track request ID across async operations.
# Each incoming HTTP request gets a unique UUID, which is then
# attached to every log entry produced during that request.
# ──────────────────────────────────────────────────────────────
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CHANNELS = ["http", "db", "chain", "trace", "attendance", "realtime"]


class StructuredJsonFormatter(logging.Formatter):
    """
    Logging formatter that outputs one JSON object per log line.

    Each entry contains:
    - timestamp: ISO 8601 timestamp in UTC
    - level: Log severity (INFO, WARNING, ERROR, DEBUG)
    - message: Human-readable log message
    - channel: Log source category (http, db, chain, trace, attendance, realtime)
    - context: Business context (request_id, session_id, chain_id, etc.)
    - extra: Additional metadata (duration_ms, counts, etc.)
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "message": record.getMessage(),
            "channel": getattr(record, "channel", record.name.split(".")[-1] if "." in record.name else "app"),
            "context": {
                "request_id": request_id_var.get(""),
                **(getattr(record, "context", {}) or {})
            },
            "extra": getattr(record, "extra_data", {}) or {}
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging():
    """
    Configure the root logger and all channel-specific loggers.

    All output goes to stdout through a single handler carrying the JSON
    formatter; channel loggers only differ by name so entries can be
    filtered per channel.
    """
    formatter = StructuredJsonFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    root_logger.handlers = [handler]

    for channel in CHANNELS:
        logger = logging.getLogger(f"baton.{channel}")
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    return root_logger


def get_logger(channel: str) -> logging.Logger:
    """
    Get a channel-specific logger.

    Args:
        channel: Log channel name (http, db, chain, trace, attendance, realtime)

    Returns:
        Logger instance for the specified channel
    """
    return logging.getLogger(f"baton.{channel}")


def log_with_context(logger: logging.Logger, level: str, message: str,
                     context: dict = None, extra_data: dict = None):
    """
    Emit a structured log entry with business context and extra metadata.

    This is the primary logging function used throughout the application.

    Args:
        logger: The channel logger to use
        level: Log level string (INFO, WARNING, ERROR, DEBUG)
        message: Human-readable log message
        context: Business context dict (session_id, chain_id, student_id)
        extra_data: Additional metadata dict (duration_ms, reason, counts)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(
        log_level,
        message,
        extra={"context": context or {}, "extra_data": extra_data or {}, "channel": logger.name.split(".")[-1]}
    )


def generate_request_id() -> str:
    """Generate a new UUID for request tracking."""
    return str(uuid.uuid4())
