"""Netbinder logging configuration.

Log sites attach attachment context through ``extra=``:

    logger.info("Attached pod", extra={"pod": pod.key, "network": net.name})

The JSON formatter lifts the well-known context keys (CONTEXT_FIELDS) to
top-level fields so a log pipeline can filter on pod, network or tenant
without parsing messages. Any other extra keys land under "extra".
"""
from __future__ import annotations

import json
import logging
import socket
import sys
from datetime import datetime, timezone
from typing import Any

from netbinder.config import settings

# Context keys promoted to top-level JSON fields, in output order
CONTEXT_FIELDS = (
    "pod", "sandbox_id", "network", "tenant_id", "port", "operation", "error_category",
)

# Attributes every LogRecord carries
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def record_context(record: logging.LogRecord) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a record's user-supplied attributes into (context, other extra)."""
    context: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRS:
            continue
        if key in CONTEXT_FIELDS:
            context[key] = _jsonable(value)
        else:
            extra[key] = _jsonable(value)
    ordered = {k: context[k] for k in CONTEXT_FIELDS if k in context}
    return ordered, extra


class NetbinderJSONFormatter(logging.Formatter):
    """One JSON object per record.

    Always present: timestamp, level, logger, message, service. Then node,
    the promoted context fields, exception and extra when they apply.
    """

    def __init__(self, node_name: str = ""):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "netbinder",
        }
        if self.node_name:
            entry["node"] = self.node_name

        context, extra = record_context(record)
        entry.update(context)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if extra:
            entry["extra"] = extra

        return json.dumps(entry)


class NetbinderTextFormatter(logging.Formatter):
    """Human-readable formatter for development.

    [timestamp] LEVEL [node] logger: message {pod=.. network=..}
    """

    def __init__(self, node_name: str = ""):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        node_part = f" [{self.node_name}]" if self.node_name else ""

        message = f"[{timestamp}] {record.levelname:8}{node_part} {record.name}: {record.getMessage()}"

        context, _ = record_context(record)
        if context:
            message += " {" + " ".join(f"{k}={v}" for k, v in context.items()) + "}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_logging(node_name: str | None = None) -> None:
    """Install the configured formatter on the root logger.

    Args:
        node_name: Node identifier for log entries (defaults to hostname)
    """
    if node_name is None:
        node_name = socket.gethostname()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(NetbinderJSONFormatter(node_name))
    else:
        handler.setFormatter(NetbinderTextFormatter(node_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    for noisy in ("uvicorn.access", "docker", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
