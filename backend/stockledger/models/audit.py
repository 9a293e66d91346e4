from __future__ import annotations

import json

from ..extensions import db
from ..time_utils import to_utc_z


class InventoryAuditLog(db.Model):
    """
    Append-only record of document status transitions.

    Written inside the same DB transaction as the transition it records.
    """
    __tablename__ = "inventory_audit_log"
    __table_args__ = (
        db.Index("ix_inventory_audit_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(64), nullable=False)
    # JSON-encoded dict of what changed
    changes = db.Column(db.Text, nullable=True)
    actor_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "changes": json.loads(self.changes) if self.changes else None,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }
