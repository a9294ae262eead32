"""
Ledger Reconciliation - Structured Logging

JSON log lines for aggregation (Datadog, CloudWatch, etc.) in production,
plain text locally. Every record is tagged with the reconciliation run being
processed, if any, so a run's lines can be pulled out of the stream.

The active run lives in a context variable: concurrent runs in one event
loop each see their own run id.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

_run_context: ContextVar[Tuple[Optional[str], Optional[str]]] = ContextVar(
    "reconciliation_run_context", default=(None, None)
)

# LogRecord attributes that are not caller-supplied extras
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Audit fields lifted to the top level of a JSON line
_AUDIT_FIELDS = ("event", "run_id", "scope", "actor", "details")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    Audit fields (event, run_id, scope, actor, details) are top-level keys;
    any other extras go under "extra".
    """

    def __init__(self, service_name: str = "ledger-reconciliation"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "location": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            if key in _AUDIT_FIELDS:
                if value is not None:
                    log_data[key] = value
            else:
                extra_fields[key] = value
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


class RunContextFilter(logging.Filter):
    """
    Tags records with the active run id and scope.

    Values passed explicitly through `extra` are left alone.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        run_id, scope = _run_context.get()
        if getattr(record, "run_id", None) is None:
            record.run_id = run_id
        if getattr(record, "scope", None) is None:
            record.scope = scope
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "ledger-reconciliation"
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [run=%(run_id)s] %(message)s"
        ))
    handler.addFilter(RunContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def set_run_context(run_id: Optional[str] = None, scope: Optional[str] = None):
    """Tag subsequent log records in this context with a run."""
    _run_context.set((run_id, scope))


def clear_run_context():
    _run_context.set((None, None))


def current_run_context() -> Tuple[Optional[str], Optional[str]]:
    """(run_id, scope) of the active run."""
    return _run_context.get()
