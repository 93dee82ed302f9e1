from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from modules.common.logging import sanitize_text, sanitize_value

LOGGER_NAME = "orderbook_solver"

# attributes every LogRecord carries; anything else arrived through ``extra``
RESERVED_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord(LOGGER_NAME, logging.INFO, __file__, 0, "", None, None))
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, event, message, then event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None),
            "message": sanitize_text(record.getMessage()),
        }

        for key, value in record.__dict__.items():
            if key in RESERVED_RECORD_FIELDS or key.startswith("_") or key in payload:
                continue
            payload[key] = sanitize_value(value, field=key)

        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))

        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(level: str = "INFO", *, stream: TextIO | None = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False

    return logger
