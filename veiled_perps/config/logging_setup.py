"""Root logger configuration with text or JSON output."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOG_EXTRA_FIELDS: tuple[str, ...] = ("computation_offset", "position_id", "operation_kind")


class JsonLogFormatter(logging.Formatter):
    """Single-line JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Render one record as a JSON object with its `extra` fields."""

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key in LOG_EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, separators=(",", ":"), default=str)


def config_configure_logging(log_format: str = "text", log_level: str = "INFO") -> logging.Handler:
    """Install one stdout handler on the root logger.

    Existing root handlers are removed so repeated calls do not duplicate output.

    Args:
        log_format: `json` or `text`.
        log_level: Root logger level name.

    Returns:
        logging.Handler: Installed handler.

    Raises:
        ValueError: Raised when the format is unsupported.
    """

    normalized_format = log_format.strip().lower()
    if normalized_format not in {"text", "json"}:
        raise ValueError("log_format must be one of: text, json")

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level.strip().upper())
    for existing_handler in list(root_logger.handlers):
        root_logger.removeHandler(existing_handler)

    handler = logging.StreamHandler(sys.stdout)
    if normalized_format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    return handler
