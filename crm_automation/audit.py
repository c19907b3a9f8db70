"""In-process audit trail of accepted opportunity changes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from crm_automation.context import get_correlation_id, get_trigger_depth

audit_entries: list[dict[str, Any]] = []

# Bookkeeping columns that change on every write.
_IGNORED_FIELDS = frozenset({"updated_at", "row_version"})


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return []
    keys = (set(before) | set(after)) - _IGNORED_FIELDS
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
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "trigger_depth": get_trigger_depth(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry
