"""
Logging configuration for the procurement suite.

configure_logging(app) is called once from create_app(). Modules log through
logging.getLogger(__name__); durable traceability of data changes lives in audit_logs,
not in log files.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from flask import Flask, has_request_context, request


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if has_request_context():
            entry["method"] = request.method
            entry["path"] = request.path
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        for key in ("entity", "entity_id", "action", "user"):
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Readable console format."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.utcnow().strftime("%H:%M:%S")
        line = f"{ts} [{record.levelname[0]}] {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0]:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(app: Flask) -> None:
    """
    Attach a single console handler to the package logger.

    app.logger shares the package name (Flask uses the import name), so route-level
    app.logger calls and module loggers end up on the same handler.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = JSONFormatter() if app.config.get("LOG_JSON") else HumanFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    logger = logging.getLogger(app.import_name)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(handler)
