"""
JSON logging for the orchestrator.

Every entry is one JSON object on stdout. Context such as ``task_id``,
``tenant_id``, ``node`` or ``handle`` is passed as keyword arguments and
written as top-level keys; anything that looks like a credential is masked,
including inside nested mappings.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict


SENSITIVE_MARKERS = ("password", "token", "secret")
MASK = "***"

# Attributes of every LogRecord; context keys may not overwrite them
RESERVED_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def mask_value(key: str, value: Any) -> Any:
    """Mask a credential value, descending into dicts and lists."""
    if value is None:
        return None
    if is_sensitive(key):
        return MASK
    if isinstance(value, dict):
        return {k: mask_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask_value(key, item) for item in value]
    return value


class StructuredLogger:
    """Orchestrator logger writing JSON entries with keyword context."""

    def __init__(self, name: str, level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # one stdout handler per named logger, even if constructed twice
        self.logger.handlers.clear()
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            entry: Dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if record.exc_info:
                entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key not in RESERVED_FIELDS:
                    entry[key] = mask_value(key, value)

            return json.dumps(entry, default=str)

    @staticmethod
    def _context(fields: Dict[str, Any]) -> Dict[str, Any]:
        return {
            (f"ctx_{key}" if key in RESERVED_FIELDS else key): value
            for key, value in fields.items()
        }

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=self._context(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=self._context(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=self._context(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=self._context(kwargs))

    def critical(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=self._context(kwargs))


logger = StructuredLogger("pve_orchestrator")
