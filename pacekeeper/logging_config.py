"""Structured JSON logging configuration.

Configures Python logging to emit JSON-formatted log entries with the
fields timestamp, level, logger and message. Controller-specific fields are
added contextually through ``extra``: category, action_id, proxy_used,
classification, attempt, denial_reason, detection_score.

SECURITY: Never logs API keys, tokens, passwords, or credentials embedded
in proxy URLs.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timezone
from pathlib import Path

# Patterns that should be redacted from log output
_SENSITIVE_PATTERNS = re.compile(
    r"(client.?key|api.key|secret|password|token|credential|authorization)"
    r"[\s]*[=:]\s*\S+",
    re.IGNORECASE,
)
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/\s:@]+(?::[^/\s@]*)?@", re.IGNORECASE)

_CONTEXT_FIELDS = (
    "category",
    "action_id",
    "proxy_used",
    "classification",
    "attempt",
    "denial_reason",
    "detection_score",
)


def redact(text: str) -> str:
    """Remove secrets and URL-embedded credentials from *text*."""
    text = _URL_CREDENTIALS.sub(r"\g<scheme>***@", text)
    return _SENSITIVE_PATTERNS.sub("[REDACTED]", text)


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON with structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                value = getattr(record, name)
                entry[name] = redact(value) if isinstance(value, str) else value

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = redact(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


def log_file_path(log_dir: str | Path, day: date | None = None) -> Path:
    """Dated log file, e.g. ``logs/pacekeeper-2024-05-01.log``."""
    day = day or date.today()
    return Path(log_dir) / f"pacekeeper-{day.isoformat()}.log"


def configure_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Configure the root logger with JSON formatting.

    Parameters
    ----------
    level:
        Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    log_dir:
        When set, entries are also written to a dated file in this directory.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()

    formatter = JsonFormatter()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if log_dir:
        path = log_file_path(log_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
