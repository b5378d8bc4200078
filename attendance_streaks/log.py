"""Logging setup: JSON lines in production, readable lines in development.

Engine code logs with ``extra={"event": ..., ...}``; both formatters render
those fields.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Dict

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def record_extras(record: logging.LogRecord) -> Dict[str, object]:
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS and not k.startswith("_")}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **record_extras(record),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        extras = record_extras(record)
        event = extras.pop("event", None)
        event_part = f" [{event}]" if event else ""
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        line = f"{_format_timestamp(record)} {record.levelname} [{record.name}]{event_part} {record.getMessage()}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", fmt: str = "pretty") -> None:
    """Install one stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if fmt.lower() == "json" else PrettyFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = [handler]
