"""Logging configuration for the collector and branch commands."""

from __future__ import annotations

import json
import logging
import sys

from branch_ledger.config import LoggingSettings

_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
}


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Install a single stderr handler on the ``branch_ledger`` logger.

    Calling this more than once replaces the previous handler rather than
    stacking duplicates.

    Returns:
        The package root logger.
    """
    root = logging.getLogger("branch_ledger")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    if settings.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_FORMATS[settings.format]))

    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.level.upper(), logging.INFO))
    return root
