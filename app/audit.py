from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: uuid.UUID | str | None,
    entity_type: str,
    entity_id: uuid.UUID | str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    resolved_correlation_id = correlation_id or get_correlation_id()
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": str(actor_user_id) if actor_user_id is not None else None,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": resolved_correlation_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_type: str, entity_id: uuid.UUID | str) -> list[dict[str, Any]]:
    wanted = str(entity_id)
    return [entry for entry in audit_entries if entry["entity_type"] == entity_type and entry["entity_id"] == wanted]
