from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from orgsuite.context import get_actor_user_id, get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())

_HTTP_FIELDS = {"method", "path", "status_code", "duration_ms"}
_DOMAIN_FIELDS = {
    "tenant_id",
    "entity_id",
    "parent_entity_id",
    "user_id",
    "role_id",
    "invitation_id",
    "application",
    "amount",
    "status",
    "count",
    "event_name",
}
_KNOWN_FIELDS = _HTTP_FIELDS | _DOMAIN_FIELDS | {"error"}
_MAX_ERROR_LENGTH = 500


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "actor_user_id", None):
            record.actor_user_id = get_actor_user_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS and value is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "actor_user_id": getattr(record, "actor_user_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def _parse_level(name: str, fallback: int) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else fallback


def apply_logger_levels(spec: str | None) -> dict[str, int]:
    """Apply ``LOG_LEVELS`` overrides such as ``orgsuite.request=WARNING,orgsuite.authz=DEBUG``."""
    applied: dict[str, int] = {}
    for item in (spec or "").split(","):
        name, sep, level_name = item.partition("=")
        if not sep or not name.strip():
            continue
        level = _parse_level(level_name, logging.NOTSET)
        if level == logging.NOTSET:
            continue
        logging.getLogger(name.strip()).setLevel(level)
        applied[name.strip()] = level
    return applied


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_orgsuite_configured", False):
        return

    level = _parse_level(os.getenv("LOG_LEVEL", "INFO"), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    apply_logger_levels(os.getenv("LOG_LEVELS"))
    root_logger._orgsuite_configured = True  # type: ignore[attr-defined]
