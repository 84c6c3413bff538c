from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from gestionale.context import get_actor_user_id, get_correlation_id
from gestionale.core.config import get_settings


# Structured extras copied into the JSON "fields" object; anything else passed via extra= is dropped.
STRUCTURED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "actor_user_id",
    "entity_type",
    "entity_id",
    "action",
    "step",
    "status",
    "error",
)
MAX_ERROR_LENGTH = 500
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


class RequestContextFilter(logging.Filter):
    """Stamp records with the correlation id and actor bound to the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "actor_user_id", None):
            record.actor_user_id = get_actor_user_id()
        return True


_default_record_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Records reach every handler (including test capture handlers) already stamped.
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            key: getattr(record, key) for key in STRUCTURED_FIELDS if getattr(record, key, None) is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "text":
        return logging.Formatter(TEXT_FORMAT)
    return JsonLogFormatter()


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Install a single stdout handler on the root logger. Safe to call more than once."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_gestionale_configured", False):
        return

    settings = get_settings()
    resolved_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved_level)
    handler.setFormatter(build_formatter(log_format or settings.log_format))
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(resolved_level)
    logging.setLogRecordFactory(_context_record_factory)
    root_logger.addHandler(handler)
    root_logger._gestionale_configured = True  # type: ignore[attr-defined]
