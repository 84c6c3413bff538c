from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from gestionale.context import get_correlation_id

# In-process audit trail; entries are appended only after the owning transaction commits.
audit_entries: list[dict[str, Any]] = []


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return sorted((after or before or {}).keys())
    keys = set(before) | set(after)
    return sorted(key for key in keys if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
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
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": _changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]
