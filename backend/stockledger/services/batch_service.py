# backend/stockledger/services/batch_service.py
"""
Batch/lot tracking.

WHY: Perishable and regulated goods must be traceable to the receipt they
arrived in, and expired lots must leave stock through the ledger rather than
silently disappearing.

Batch status is never stored. derive_batch_status computes it from
remaining_quantity and expiration_date on every read:
1. depleted: remaining_quantity <= 0 (regardless of date)
2. expired: expiration_date <= now
3. expiring_soon: expiration_date <= now + horizon
4. active: otherwise
"""
from __future__ import annotations

from datetime import datetime

from flask import current_app

from ..errors import InvalidStateError, LedgerError, LedgerValidationError, NotFoundError
from ..extensions import db
from ..models import Batch, Product
from ..time_utils import add_days, normalize_datetime, utcnow
from . import costing_service
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_in_transaction
from .document_service import PREFIX_LOT, next_document_number
from .settings_service import COST_METHOD_FIFO, COST_METHOD_NONE, get_cost_update_method
from .stock_service import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_DAMAGED,
    MOVEMENT_EXPIRED,
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    REF_BATCH,
    REF_MANUAL_BATCH,
    Reference,
    apply_movement,
    total_on_hand,
)


BATCH_STATUS_ACTIVE = "active"
BATCH_STATUS_EXPIRING_SOON = "expiring_soon"
BATCH_STATUS_EXPIRED = "expired"
BATCH_STATUS_DEPLETED = "depleted"

DEFAULT_EXPIRY_HORIZON_DAYS = 30

CONSUMABLE_MOVEMENT_TYPES = (MOVEMENT_SALE, MOVEMENT_DAMAGED, MOVEMENT_ADJUSTMENT)

_UNSET = object()


def _horizon_days() -> int:
    return int(current_app.config.get("BATCH_EXPIRY_HORIZON_DAYS", DEFAULT_EXPIRY_HORIZON_DAYS))


def derive_batch_status(
    remaining_quantity: int,
    expiration_date: datetime | None,
    now: datetime | None = None,
    horizon_days: int | None = None,
) -> str:
    """Pure function of (remaining, expiry, now, horizon); see module docstring."""
    if remaining_quantity <= 0:
        return BATCH_STATUS_DEPLETED
    if expiration_date is None:
        return BATCH_STATUS_ACTIVE

    now = normalize_datetime(now, default_now=True)
    expiration_date = normalize_datetime(expiration_date)
    if horizon_days is None:
        horizon_days = DEFAULT_EXPIRY_HORIZON_DAYS

    if expiration_date <= now:
        return BATCH_STATUS_EXPIRED
    if expiration_date <= add_days(now, horizon_days):
        return BATCH_STATUS_EXPIRING_SOON
    return BATCH_STATUS_ACTIVE


def batch_status(batch: Batch, now: datetime | None = None) -> str:
    return derive_batch_status(
        batch.remaining_quantity,
        batch.expiration_date,
        now=now,
        horizon_days=_horizon_days(),
    )


def serialize_batch(batch: Batch, now: datetime | None = None) -> dict:
    return batch.to_dict(status=batch_status(batch, now))


def get_batch(batch_id: int) -> Batch:
    batch = db.session.get(Batch, batch_id)
    if batch is None:
        raise NotFoundError("batch", batch_id)
    return batch


def _lock_batch(batch_id: int) -> Batch:
    batch = lock_for_update(db.session.query(Batch).filter_by(id=batch_id)).first()
    if batch is None:
        raise NotFoundError("batch", batch_id)
    return batch


def _parse_expiration(value) -> datetime | None:
    try:
        return normalize_datetime(value)
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid expiration_date: {value!r}") from exc


def create_batch_record(
    *,
    product_id: int,
    variant_id: int | None,
    location_id: int | None,
    quantity: int,
    unit_cost_cents: int,
    lot_number: str | None = None,
    expiration_date=None,
    notes: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> Batch:
    """Insert a batch row only (no stock movement); used inside receipt flows."""
    batch = Batch(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        lot_number=lot_number or next_document_number(document_type=PREFIX_LOT),
        expiration_date=_parse_expiration(expiration_date),
        original_quantity=quantity,
        remaining_quantity=quantity,
        unit_cost_cents=unit_cost_cents,
        received_at=utcnow(),
        notes=notes,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.session.add(batch)
    db.session.flush()
    return batch


def create_batch(
    *,
    product_id: int,
    quantity: int,
    unit_cost_cents: int = 0,
    variant_id: int | None = None,
    location_id: int | None = None,
    lot_number: str | None = None,
    expiration_date=None,
    notes: str | None = None,
    actor_id: str | None = None,
) -> Batch:
    """
    Manual batch/lot receipt.

    Brings the units into stock through a purchase movement referencing the
    batch, and runs cost attribution like any other receipt. A LOT- number is
    allocated when none is supplied.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise LedgerValidationError("quantity must be a positive integer", quantity=quantity)
    if unit_cost_cents is None or unit_cost_cents < 0:
        raise LedgerValidationError("unit_cost_cents cannot be negative", unit_cost_cents=unit_cost_cents)

    def _op():
        if db.session.get(Product, product_id) is None:
            raise NotFoundError("product", product_id)

        cost_method = get_cost_update_method()
        if cost_method != COST_METHOD_NONE:
            costing_service.lock_cost_owners([(product_id, variant_id)])
        existing_quantity = total_on_hand(product_id, variant_id)

        batch = create_batch_record(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            lot_number=lot_number,
            expiration_date=expiration_date,
            notes=notes,
            reference_type=REF_MANUAL_BATCH,
        )

        apply_movement(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            movement_type=MOVEMENT_PURCHASE,
            delta=quantity,
            reason="Manual batch/lot receipt",
            reference=Reference(REF_MANUAL_BATCH, batch.id),
            unit_cost_cents=unit_cost_cents,
            actor_id=actor_id,
            notes=notes or f"Manual batch receipt, lot {batch.lot_number}",
            cost_method=cost_method,
        )
        costing_service.attribute_receipt_cost(
            cost_method=cost_method,
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            existing_quantity=existing_quantity,
            reference=Reference(REF_BATCH, batch.id),
            received_at=batch.received_at,
        )
        return batch

    batch = run_in_transaction(_op)
    current_app.logger.info("Created batch %s (lot %s) with %s units", batch.id, batch.lot_number, quantity)
    return batch


def update_batch(
    batch_id: int,
    *,
    lot_number=_UNSET,
    expiration_date=_UNSET,
    notes=_UNSET,
) -> Batch:
    """Edit descriptive fields. Quantities only change through movements."""
    def _op():
        batch = _lock_batch(batch_id)
        if lot_number is not _UNSET:
            if not lot_number:
                raise LedgerValidationError("lot_number cannot be empty")
            batch.lot_number = lot_number
        if expiration_date is not _UNSET:
            batch.expiration_date = _parse_expiration(expiration_date)
        if notes is not _UNSET:
            batch.notes = notes
        db.session.flush()
        return batch

    return run_in_transaction(_op)


def consume_batch(
    batch_id: int,
    *,
    quantity: int,
    movement_type: str = MOVEMENT_SALE,
    reason: str | None = None,
    reference: Reference | None = None,
    actor_id: str | None = None,
):
    """
    Outbound movement drawing down one specific batch.

    Expired batches cannot be sold; they leave stock through write_off_batch.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise LedgerValidationError("quantity must be a positive integer", quantity=quantity)
    if movement_type not in CONSUMABLE_MOVEMENT_TYPES:
        raise LedgerValidationError(
            f"Batch consumption cannot use movement type {movement_type!r}",
            allowed=list(CONSUMABLE_MOVEMENT_TYPES),
        )

    def _op():
        batch = _lock_batch(batch_id)
        status = batch_status(batch)
        if movement_type == MOVEMENT_SALE and status == BATCH_STATUS_EXPIRED:
            raise InvalidStateError("batch", batch_id, status, "sell from")
        if quantity > batch.remaining_quantity:
            raise LedgerValidationError(
                f"Batch {batch_id} has only {batch.remaining_quantity} units remaining",
                batch_id=batch_id,
                requested=quantity,
                remaining=batch.remaining_quantity,
            )

        movement = apply_movement(
            product_id=batch.product_id,
            variant_id=batch.variant_id,
            location_id=batch.location_id,
            movement_type=movement_type,
            delta=-quantity,
            reason=reason or f"Batch {batch.lot_number} consumption",
            reference=reference or Reference(REF_BATCH, batch.id),
            actor_id=actor_id,
            draw_batches=False,
        )
        batch.remaining_quantity -= quantity
        db.session.flush()
        return movement

    return run_in_transaction(_op)


def write_off_batch(batch_id: int, *, actor_id: str | None = None):
    """
    Remove an expired batch's full remainder from stock.

    Only legal when the derived status is expired (which implies
    remaining_quantity > 0). Writes one `expired` movement through
    apply_movement, zeroes the batch and records an audit event.
    """
    def _op():
        batch = _lock_batch(batch_id)
        status = batch_status(batch)
        if status != BATCH_STATUS_EXPIRED:
            raise InvalidStateError("batch", batch_id, status, "write off")

        written_off = batch.remaining_quantity
        cost_method = get_cost_update_method()
        # fifo prices the write-off from cost layers so they stay in step with stock
        unit_cost = None if cost_method == COST_METHOD_FIFO else batch.unit_cost_cents
        movement = apply_movement(
            product_id=batch.product_id,
            variant_id=batch.variant_id,
            location_id=batch.location_id,
            movement_type=MOVEMENT_EXPIRED,
            delta=-written_off,
            reason="Expired batch write-off",
            reference=Reference(REF_BATCH, batch.id),
            unit_cost_cents=unit_cost,
            actor_id=actor_id,
            cost_method=cost_method,
            notes=f"Write-off of expired batch {batch.lot_number}",
            draw_batches=False,
        )
        batch.remaining_quantity = 0
        db.session.flush()

        append_audit_event(
            entity_type="batch",
            entity_id=batch.id,
            action="written_off",
            changes={"quantity": written_off, "lot_number": batch.lot_number, "movement_id": movement.id},
            actor_id=actor_id,
        )
        return movement

    movement = run_in_transaction(_op)
    current_app.logger.info("Wrote off batch %s: %s units", batch_id, -movement.quantity)
    return movement


def find_expired_batches(now: datetime | None = None) -> list[Batch]:
    now = normalize_datetime(now, default_now=True)
    return (
        db.session.query(Batch)
        .filter(
            Batch.remaining_quantity > 0,
            Batch.expiration_date.isnot(None),
            Batch.expiration_date <= now,
        )
        .order_by(Batch.expiration_date.asc(), Batch.id.asc())
        .all()
    )


def find_expiring_batches(days: int | None = None, now: datetime | None = None) -> list[Batch]:
    """Batches with stock that expire after now but within `days`."""
    now = normalize_datetime(now, default_now=True)
    if days is None:
        days = _horizon_days()
    if days < 0:
        raise LedgerValidationError("days cannot be negative", days=days)
    return (
        db.session.query(Batch)
        .filter(
            Batch.remaining_quantity > 0,
            Batch.expiration_date.isnot(None),
            Batch.expiration_date > now,
            Batch.expiration_date <= add_days(now, days),
        )
        .order_by(Batch.expiration_date.asc(), Batch.id.asc())
        .all()
    )


def write_off_expired_batches(*, actor_id: str | None = None) -> dict:
    """Write off every expired batch, one transaction per batch."""
    written_off = []
    failed = []
    for batch_id in [b.id for b in find_expired_batches()]:
        try:
            movement = write_off_batch(batch_id, actor_id=actor_id)
            written_off.append({"batch_id": batch_id, "quantity": -movement.quantity})
        except LedgerError as exc:
            current_app.logger.warning("Could not write off batch %s: %s", batch_id, exc.message)
            failed.append({"batch_id": batch_id, **exc.to_dict()})
    return {"written_off": written_off, "failed": failed}
