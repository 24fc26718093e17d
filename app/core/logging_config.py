"""
Structured JSON logging configuration.

Each record is one JSON object with timestamp, level, service, logger,
trace_id (OpenTelemetry) and request_id (HTTP middleware). Realtime code
passes ``user_id`` / ``connection_id`` through ``extra=``; they land as
top-level keys next to the message.

Usage:
    logger = logging.getLogger(__name__)
    logger.info("User connected", extra={"user_id": "...", "connection_id": "..."})
"""
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Any
from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

# Set by RequestIDMiddleware for the duration of an HTTP request
request_id_var: ContextVar[str] = ContextVar("request_id", default="no-request")

NO_TRACE = "no-trace"


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter stamping service identity and correlation ids on every record."""

    def __init__(self, service_name: str = "teamhub-realtime", *args, **kwargs):
        self.service_name = service_name
        super().__init__(*args, **kwargs)

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name
        log_record["logger"] = record.name
        log_record["location"] = f"{record.module}:{record.lineno}"
        log_record.setdefault("trace_id", getattr(record, "trace_id", NO_TRACE))
        log_record.setdefault("request_id", getattr(record, "request_id", request_id_var.get()))


class LogContextFilter(logging.Filter):
    """Copies the active span's trace id and the current request id onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else NO_TRACE
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get()
        return True


def configure_logging(
    service_name: str = "teamhub-realtime",
    level: str = "INFO",
    enable_json: bool = True
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        service_name: Value of the ``service`` field
        level: Root log level name
        enable_json: JSON lines when True, a plain text line otherwise (local runs, tests)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(LogContextFilter())
    if enable_json:
        handler.setFormatter(CustomJsonFormatter(
            service_name=service_name,
            fmt="%(message)s"
        ))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s [%(request_id)s %(trace_id)s] %(message)s"
        ))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # Per-frame and per-query chatter
    for noisy in ("sqlalchemy.engine", "uvicorn.access", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
