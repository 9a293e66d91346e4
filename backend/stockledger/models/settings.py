from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class InventorySettings(db.Model):
    """
    Single global row (id="default") holding the cost update policy.

    Read once per operation by settings_service and passed explicitly to
    the cost attribution engine; never cached in module state.
    """
    __tablename__ = "inventory_settings"

    id = db.Column(db.String(32), primary_key=True, default="default")
    # none, last_cost, weighted_average, fifo
    cost_update_method = db.Column(db.String(32), nullable=False, default="none")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cost_update_method": self.cost_update_method,
            "updated_at": to_utc_z(self.updated_at),
        }
