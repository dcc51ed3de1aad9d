from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from nexus_api.context import get_correlation_id

logger = logging.getLogger("nexus_api.audit")

# In-process trail; durable storage is the proposal table itself.
audit_entries: deque[dict[str, Any]] = deque(maxlen=5000)


def record(
    *,
    actor_user_id: str,
    tenant_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "tenant_id": tenant_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.info(
        "audit.recorded",
        extra={"tenant_id": tenant_id, "entity_type": entity_type, "entity_id": entity_id, "action": action},
    )
    return entry
