"""
Structured logging configuration.

- Development / testing: human-readable colored lines
- Production: one JSON object per line
- Level: LOG_LEVEL from config, then environment

Services pass workflow context through ``extra=`` (project_id,
line_item_id, alert_id, rule_key, event_type). Both formatters surface it.
``buildtrack.ops`` is the operations channel: template inconsistencies,
failed sweep projects and configuration errors.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

OPS_LOGGER = "buildtrack.ops"

REQUEST_KEYS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")
WORKFLOW_KEYS = ("project_id", "line_item_id", "alert_id", "rule_key", "event_type")

_SCOPE_LABELS = (
    ("project_id", "project"),
    ("line_item_id", "item"),
    ("alert_id", "alert"),
    ("rule_key", "rule"),
)


def _present(record: logging.LogRecord, keys) -> dict:
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production / log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(_present(record, REQUEST_KEYS))
        entry.update(_present(record, WORKFLOW_KEYS))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line formatter; workflow ids shown as ``[project=1 item=2]``."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _scope(record: logging.LogRecord) -> str:
        parts = [f"{label}={getattr(record, key)}" for key, label in _SCOPE_LABELS
                 if getattr(record, key, None) is not None]
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        timing = f" [{duration:.0f}ms]" if duration is not None else ""
        line = (f"{color}{ts} {record.levelname:<8}{self.RESET} "
                f"{record.name}:{self._scope(record)} {record.getMessage()}{timing}")
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    JSON in production, readable otherwise. The root handlers are replaced
    on every call so repeated ``create_app`` in tests does not stack them.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO" if is_prod else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    # ops events are never filtered below WARNING
    logging.getLogger(OPS_LOGGER).setLevel(min(level, logging.WARNING))
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "JSON" if is_prod else "readable")
