from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from nexus_api.context import get_correlation_id, get_tenant_id
from nexus_api.core.config import get_settings


_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "tenant_id",
        "user_id",
        "proposal_id",
        "proposal_type",
        "status",
        "outcome",
        "count",
        "batch_id",
        "item_id",
        "processed",
        "total",
        "attempt",
        "wait_ms",
        "layer",
        "query",
        "error",
        "event_name",
        "entity_type",
        "entity_id",
        "action",
        "route_group",
    }
)
_MAX_ERROR_CHARS = 500


class CorrelationIdFilter(logging.Filter):
    """Fills request context the caller did not pass through ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "tenant_id", None):
            record.tenant_id = get_tenant_id()
        return True


_base_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # Only correlation_id is stamped here; makeRecord rejects extra keys already on the record.
    record = _base_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in vars(record).items()
        if key in _KNOWN_FIELDS and key not in _STANDARD_ATTRS and value is not None
    }
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_CHARS]
    if record.exc_info:
        fields["exception"] = logging.Formatter().formatException(record.exc_info)
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": _structured_fields(record),
            },
            default=str,
        )


def configure_logging(level_name: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_nexus_configured", False):
        return

    level = logging.getLevelName((level_name or get_settings().log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    logging.setLogRecordFactory(_record_factory)
    root.handlers = [handler]
    root.setLevel(level)
    root._nexus_configured = True  # type: ignore[attr-defined]
