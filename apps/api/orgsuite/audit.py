from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from orgsuite.context import get_actor_user_id, get_correlation_id

audit_entries: list[dict[str, Any]] = []

_VOLATILE_FIELDS = {"row_version", "updated_at"}


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return []
    keys = (set(before) | set(after)) - _VOLATILE_FIELDS
    return sorted(key for key in keys if before.get(key) != after.get(key))


def _tenant_of(before: dict[str, Any] | None, after: dict[str, Any] | None) -> str | None:
    for snapshot in (after, before):
        if snapshot and snapshot.get("tenant_id"):
            return str(snapshot["tenant_id"])
    return None


def record(
    actor_user_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Append an audit entry; the actor and correlation id fall back to the request context."""
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id or get_actor_user_id() or "system",
            "tenant_id": _tenant_of(before, after),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "changed_fields": _changed_fields(before, after),
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id]
