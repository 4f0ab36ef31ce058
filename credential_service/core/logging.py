"""Logging configuration for credential-service.

Everything goes to stdout through one handler; LOG_JSON picks the format.

  LOG_JSON=false  one human-readable line per record:

    2025-10-09T08:53:20.123+0000 WARNING  credential_service.services.workflow  [approve case=1f3c..] Approval lost a race  [workflow.py:212]

  LOG_JSON=true   one JSON object per record (JSON Lines), with the
                  operation context as top-level keys so an aggregator
                  can filter on ``operation == "approve"`` without regex.

The operation context itself (operation, case_id, credential_id, actor)
comes from OperationContextFilter; formatters only read it.

NEVER LOGGED
-------------
The signing key.  Settings keeps it out of its repr and SigningKey redacts
itself, so even an accidental ``%r`` of either is safe.  Signatures appear
only as an 8-char prefix.
"""

from __future__ import annotations

import datetime
import json
import logging
import sys

from credential_service.core.context import OperationContextFilter

# Record attributes copied into JSON output when set.
_CONTEXT_FIELDS = ("operation", "case_id", "credential_id", "actor", "outcome")


def _timestamp(record: logging.LogRecord) -> str:
    """ISO-8601 UTC with milliseconds: 2025-10-09T08:53:20.123+0000."""
    moment = datetime.datetime.fromtimestamp(record.created, datetime.UTC)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{int(record.msecs):03d}+0000"


def _context_prefix(record: logging.LogRecord) -> str:
    operation = getattr(record, "operation", None)
    if not operation:
        return ""
    parts = [operation]
    for key, label in (("case_id", "case"), ("credential_id", "credential")):
        value = getattr(record, key, None)
        if value:
            parts.append(f"{label}={value}")
    return f"[{' '.join(parts)}] "


class _ContainerFormatter(logging.Formatter):
    """Single line per record; WARNING+ gets the source location appended."""

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{_timestamp(record)} {record.levelname:<8} {record.name}  "
            f"{_context_prefix(record)}{record.getMessage()}"
        )
        if record.levelno >= logging.WARNING:
            line += f"  [{record.filename}:{record.lineno}]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Route the root logger to stdout.

    Replaces any existing root handlers, so calling it twice is safe.
    Unknown level names fall back to INFO.  SQLAlchemy, asyncio and redis
    stay at WARNING or above even when the service runs at DEBUG.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(OperationContextFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in ("sqlalchemy.engine", "asyncio", "redis"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
