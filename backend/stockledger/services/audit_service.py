# Overview: Append-only audit trail for document status transitions.

from __future__ import annotations

import json
from typing import Any

from ..extensions import db
from ..models import InventoryAuditLog
"""
Inventory Audit Invariants

- Append-only: rows are inserted here and nowhere else; never updated or deleted.
- Written inside the same DB transaction as the transition they record, so a
  rolled-back operation leaves no audit row behind.
- changes holds a JSON object describing what moved (status, amounts, counts).
"""


def append_audit_event(
    *,
    entity_type: str,
    entity_id,
    action: str,
    changes: dict[str, Any] | None = None,
    actor_id: str | None = None,
) -> InventoryAuditLog:
    entry = InventoryAuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        changes=json.dumps(changes, default=str, sort_keys=True) if changes is not None else None,
        actor_id=actor_id,
    )
    db.session.add(entry)
    db.session.flush()  # ensures entry.id is assigned without committing
    return entry


def list_audit_events(*, entity_type: str, entity_id) -> list[InventoryAuditLog]:
    return (
        db.session.query(InventoryAuditLog)
        .filter_by(entity_type=entity_type, entity_id=str(entity_id))
        .order_by(InventoryAuditLog.id.asc())
        .all()
    )
