# Overview: Global inventory settings (cost update policy).

from __future__ import annotations

from flask import current_app

from ..errors import LedgerValidationError
from ..extensions import db
from ..models import InventorySettings
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_in_transaction


SETTINGS_ID = "default"

COST_METHOD_NONE = "none"
COST_METHOD_LAST_COST = "last_cost"
COST_METHOD_WEIGHTED_AVERAGE = "weighted_average"
COST_METHOD_FIFO = "fifo"
COST_METHODS = (
    COST_METHOD_NONE,
    COST_METHOD_LAST_COST,
    COST_METHOD_WEIGHTED_AVERAGE,
    COST_METHOD_FIFO,
)


def validate_cost_method(method: str) -> str:
    if method not in COST_METHODS:
        raise LedgerValidationError(
            f"Invalid cost update method: {method!r}",
            allowed=list(COST_METHODS),
        )
    return method


def _default_cost_method() -> str:
    return validate_cost_method(current_app.config.get("DEFAULT_COST_UPDATE_METHOD", COST_METHOD_NONE))


def get_cost_update_method() -> str:
    """
    Current policy, read once per operation by callers.

    Runs inside the caller's transaction; no write when the row is absent.
    """
    row = db.session.get(InventorySettings, SETTINGS_ID)
    if row is None:
        return _default_cost_method()
    return row.cost_update_method


def get_inventory_settings() -> dict:
    return {"cost_update_method": get_cost_update_method()}


def update_inventory_settings(cost_update_method: str, *, actor_id: str | None = None) -> dict:
    """Validate and upsert the cost update policy."""
    validate_cost_method(cost_update_method)

    def _op():
        row = lock_for_update(
            db.session.query(InventorySettings).filter_by(id=SETTINGS_ID)
        ).first()
        previous = row.cost_update_method if row else _default_cost_method()
        if row is None:
            row = InventorySettings(id=SETTINGS_ID, cost_update_method=cost_update_method)
            db.session.add(row)
        else:
            row.cost_update_method = cost_update_method
        db.session.flush()

        append_audit_event(
            entity_type="inventory_settings",
            entity_id=SETTINGS_ID,
            action="updated",
            changes={"cost_update_method": {"from": previous, "to": cost_update_method}},
            actor_id=actor_id,
        )
        return {"cost_update_method": row.cost_update_method}

    result = run_in_transaction(_op)
    current_app.logger.info("Inventory cost update method set to %s", cost_update_method)
    return result
