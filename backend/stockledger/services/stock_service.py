# Overview: Stock level store and movement ledger; the single writer of StockLevel and StockMovement.

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import InsufficientStockError, LedgerValidationError, NotFoundError
from ..extensions import db
from ..models import Batch, Location, Product, ProductVariant, StockLevel, StockMovement, make_level_key
from ..time_utils import utcnow
from . import costing_service
from .concurrency import lock_for_update, run_in_transaction
from .document_service import PREFIX_TRANSFER, next_document_number
from .settings_service import COST_METHOD_FIFO, get_cost_update_method, validate_cost_method
"""
Stock Ledger Invariants (authoritative)

- apply_movement is the ONLY code path that writes StockLevel quantities or
  inserts StockMovement rows. Every caller (receiving, sales, returns,
  transfers, adjustments, cycle counts, batch write-offs) funnels through it.
- For every StockLevel: 0 <= reserved_quantity <= quantity and
  available_quantity == quantity - reserved_quantity.
- For every StockMovement: new_quantity == previous_quantity + quantity, and
  new_quantity equals the level's quantity at write time.
- Replaying a key's movements in (created_at, id) order from 0 reproduces the
  level's quantity exactly.
- Outbound movements never clamp: an impossible decrement raises
  InsufficientStockError and the whole transaction rolls back.
- Outbound movements draw down the key's open batches, so the batches'
  remaining quantities never sum to more than the level holds.
- The level row is read FOR UPDATE and carries version_id, so two concurrent
  writers against the same key serialize (or the loser retries and re-reads).
"""


MOVEMENT_PURCHASE = "purchase"
MOVEMENT_SALE = "sale"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_TRANSFER = "transfer"
MOVEMENT_RETURN = "return"
MOVEMENT_DAMAGED = "damaged"
MOVEMENT_EXPIRED = "expired"
MOVEMENT_CYCLE_COUNT = "cycle_count"
MOVEMENT_TYPES = frozenset({
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_TRANSFER,
    MOVEMENT_RETURN,
    MOVEMENT_DAMAGED,
    MOVEMENT_EXPIRED,
    MOVEMENT_CYCLE_COUNT,
})

# Outbound types whose units leave inventory value (consume FIFO layers)
COST_TRACKED_OUTBOUND_TYPES = frozenset({
    MOVEMENT_SALE,
    MOVEMENT_DAMAGED,
    MOVEMENT_EXPIRED,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_CYCLE_COUNT,
})

REF_PURCHASE_ORDER = "purchase_order"
REF_SALE = "sale"
REF_RETURN = "return"
REF_TRANSFER = "transfer"
REF_ADJUSTMENT = "adjustment"
REF_DAMAGE = "damage"
REF_CYCLE_COUNT = "cycle_count"
REF_BATCH = "batch"
REF_MANUAL_BATCH = "manual_batch"
REFERENCE_TYPES = frozenset({
    REF_PURCHASE_ORDER,
    REF_SALE,
    REF_RETURN,
    REF_TRANSFER,
    REF_ADJUSTMENT,
    REF_DAMAGE,
    REF_CYCLE_COUNT,
    REF_BATCH,
    REF_MANUAL_BATCH,
})


@dataclass(frozen=True)
class Reference:
    """
    Tagged link to the business event that caused a movement.

    The referenced row is not foreign-keyed (the target table varies by
    type); the writer is responsible for passing an id that exists.
    """
    type: str
    id: Optional[object] = None

    def __post_init__(self):
        if self.type not in REFERENCE_TYPES:
            raise LedgerValidationError(f"Unknown reference type: {self.type!r}")

    @property
    def id_str(self) -> str | None:
        return None if self.id is None else str(self.id)


def level_sort_key(key: tuple[int, int | None, int | None]) -> tuple[int, int, int]:
    """Total order over level keys; multi-row writers lock in this order."""
    product_id, variant_id, location_id = key
    return (
        product_id,
        -1 if variant_id is None else variant_id,
        -1 if location_id is None else location_id,
    )


def _key_filter(query, model, product_id: int, variant_id: int | None, location_id: int | None):
    query = query.filter(model.product_id == product_id)
    if variant_id is None:
        query = query.filter(model.variant_id.is_(None))
    else:
        query = query.filter(model.variant_id == variant_id)
    if location_id is None:
        query = query.filter(model.location_id.is_(None))
    else:
        query = query.filter(model.location_id == location_id)
    return query


def _ensure_target(product_id: int, variant_id: int | None, location_id: int | None) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    if variant_id is not None:
        variant = db.session.get(ProductVariant, variant_id)
        if variant is None:
            raise NotFoundError("product_variant", variant_id)
        if variant.product_id != product_id:
            raise LedgerValidationError(
                f"Variant {variant_id} does not belong to product {product_id}",
                product_id=product_id,
                variant_id=variant_id,
            )
    if location_id is not None and db.session.get(Location, location_id) is None:
        raise NotFoundError("location", location_id)
    return product


def lock_stock_level(product_id: int, variant_id: int | None, location_id: int | None) -> StockLevel:
    """
    Read the level row FOR UPDATE, creating it lazily on first use.

    The insert runs in a savepoint so losing a creation race to another
    transaction only discards the savepoint; the winner's row is then read
    with the lock.
    """
    level_key = make_level_key(product_id, variant_id, location_id)
    query = lock_for_update(
        db.session.query(StockLevel).filter_by(level_key=level_key)
    ).populate_existing()

    level = query.first()
    if level is not None:
        return level

    try:
        with db.session.begin_nested():
            level = StockLevel(
                level_key=level_key,
                product_id=product_id,
                variant_id=variant_id,
                location_id=location_id,
                quantity=0,
                reserved_quantity=0,
                available_quantity=0,
            )
            db.session.add(level)
        return level
    except IntegrityError:
        level = query.first()
        if level is None:
            raise
        return level


def lock_stock_levels(keys: Iterable[tuple[int, int | None, int | None]]) -> dict:
    """Lock several level rows in level_sort_key order; returns {key: level}."""
    unique = sorted(set(keys), key=level_sort_key)
    return {key: lock_stock_level(*key) for key in unique}


def _draw_down_batches(product_id: int, variant_id: int | None, location_id: int | None, quantity: int) -> int:
    """
    Reduce open batches for the key by up to quantity.

    Order is expiry date (undated last), then received_at, then id. Returns
    the units drawn; units beyond the batched stock are untracked and need
    no batch change.
    """
    batches = lock_for_update(
        _key_filter(db.session.query(Batch), Batch, product_id, variant_id, location_id)
        .filter(Batch.remaining_quantity > 0)
        .order_by(
            Batch.expiration_date.is_(None).asc(),
            Batch.expiration_date.asc(),
            Batch.received_at.asc(),
            Batch.id.asc(),
        )
    ).populate_existing().all()

    outstanding = quantity
    for batch in batches:
        if outstanding == 0:
            break
        take = min(batch.remaining_quantity, outstanding)
        batch.remaining_quantity -= take
        outstanding -= take
    return quantity - outstanding


def _sync_variant_quantity(variant_id: int) -> None:
    variant = db.session.get(ProductVariant, variant_id)
    if variant is None:
        return
    total = (
        db.session.query(func.coalesce(func.sum(StockLevel.quantity), 0))
        .filter(StockLevel.variant_id == variant_id)
        .scalar()
    )
    variant.stock_quantity = int(total or 0)


def apply_movement(
    *,
    product_id: int,
    variant_id: int | None = None,
    location_id: int | None = None,
    movement_type: str,
    delta: int,
    reason: str | None,
    reference: Reference | None = None,
    unit_cost_cents: int | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
    cost_method: str | None = None,
    release_reserved: int = 0,
    draw_batches: bool = True,
) -> StockMovement:
    """
    Apply one signed quantity change and record it in the ledger.

    Runs inside the caller's transaction: flushes, never commits.

    Args:
        delta: non-zero signed quantity change
        unit_cost_cents: cost recorded on the movement; when omitted, outbound
            movements of a cost-tracked type are priced from FIFO layers (fifo
            mode) or the current cost price (other modes)
        cost_method: policy fetched once by the caller; read from settings
            when omitted
        release_reserved: reserved units released by this same movement
            (e.g. a sale fulfilling an earlier reservation)
        draw_batches: outbound units also draw down the key's open batches,
            soonest expiry first; batch-specific callers pass False and
            adjust their own batch

    Raises:
        LedgerValidationError: zero/non-int delta, unknown type, bad release
        NotFoundError: product, variant or location missing
        InsufficientStockError: quantity would go negative or below reserved
    """
    if movement_type not in MOVEMENT_TYPES:
        raise LedgerValidationError(f"Unknown movement type: {movement_type!r}")
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise LedgerValidationError(
            "Movement quantity must be a non-zero integer",
            quantity=delta,
        )
    if release_reserved < 0:
        raise LedgerValidationError("release_reserved cannot be negative")
    if unit_cost_cents is not None and unit_cost_cents < 0:
        raise LedgerValidationError("unit_cost_cents cannot be negative")

    _ensure_target(product_id, variant_id, location_id)
    if cost_method is None:
        cost_method = get_cost_update_method()
    else:
        validate_cost_method(cost_method)

    level = lock_stock_level(product_id, variant_id, location_id)

    if release_reserved > level.reserved_quantity:
        raise LedgerValidationError(
            f"Cannot release {release_reserved} reserved units; only {level.reserved_quantity} reserved",
            reserved=level.reserved_quantity,
        )

    previous_quantity = level.quantity
    new_quantity = previous_quantity + delta
    new_reserved = level.reserved_quantity - release_reserved

    if new_quantity < 0 or new_quantity < new_reserved:
        raise InsufficientStockError(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            requested=-delta,
            available=previous_quantity - new_reserved,
        )

    total_cost_cents = None
    if unit_cost_cents is None and delta < 0 and movement_type in COST_TRACKED_OUTBOUND_TYPES:
        if cost_method == COST_METHOD_FIFO:
            consumption = costing_service.consume_cost_layers(
                product_id=product_id,
                variant_id=variant_id,
                location_id=location_id,
                quantity=-delta,
            )
            unit_cost_cents = consumption.unit_cost_cents
            total_cost_cents = consumption.total_cost_cents
        else:
            unit_cost_cents = costing_service.current_cost_price(product_id, variant_id)
    if unit_cost_cents is not None and total_cost_cents is None:
        total_cost_cents = abs(delta) * unit_cost_cents

    now = utcnow()
    level.quantity = new_quantity
    level.reserved_quantity = new_reserved
    level.available_quantity = new_quantity - new_reserved
    level.last_movement_at = now

    if delta < 0 and draw_batches:
        _draw_down_batches(product_id, variant_id, location_id, -delta)

    movement = StockMovement(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        type=movement_type,
        quantity=delta,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        unit_cost_cents=unit_cost_cents,
        total_cost_cents=total_cost_cents,
        reason=reason,
        notes=notes,
        reference_type=reference.type if reference else None,
        reference_id=reference.id_str if reference else None,
        actor_id=actor_id,
        created_at=now,
    )
    db.session.add(movement)
    db.session.flush()

    if variant_id is not None:
        _sync_variant_quantity(variant_id)
        db.session.flush()

    return movement


def total_on_hand(product_id: int, variant_id: int | None = None) -> int:
    """Quantity on hand for a product/variant summed across all locations."""
    query = db.session.query(func.coalesce(func.sum(StockLevel.quantity), 0)).filter(
        StockLevel.product_id == product_id
    )
    if variant_id is None:
        query = query.filter(StockLevel.variant_id.is_(None))
    else:
        query = query.filter(StockLevel.variant_id == variant_id)
    return int(query.scalar() or 0)


def _require_positive(quantity, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise LedgerValidationError(f"{field} must be a positive integer", **{field: quantity})
    return quantity


# =============================================================================
# Transactional entry points
# =============================================================================

def post_movement(**kwargs) -> StockMovement:
    """Generic single-movement transaction around apply_movement."""
    def _op():
        return apply_movement(**kwargs)

    movement = run_in_transaction(_op)
    current_app.logger.info(
        "Posted %s movement %s: product=%s variant=%s location=%s delta=%s",
        movement.type, movement.id, movement.product_id,
        movement.variant_id, movement.location_id, movement.quantity,
    )
    return movement


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    reason: str,
    variant_id: int | None = None,
    location_id: int | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    """Manual correction. A reason is mandatory for the audit trail."""
    if not reason or not reason.strip():
        raise LedgerValidationError("reason is required for a stock adjustment")
    return post_movement(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        movement_type=MOVEMENT_ADJUSTMENT,
        delta=quantity_delta,
        reason=reason.strip(),
        reference=Reference(REF_ADJUSTMENT),
        actor_id=actor_id,
        notes=notes,
    )


def record_sale(
    *,
    product_id: int,
    quantity: int,
    sale_id,
    variant_id: int | None = None,
    location_id: int | None = None,
    actor_id: str | None = None,
    release_reserved: int = 0,
) -> StockMovement:
    _require_positive(quantity)
    return post_movement(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        movement_type=MOVEMENT_SALE,
        delta=-quantity,
        reason="Sale",
        reference=Reference(REF_SALE, sale_id),
        actor_id=actor_id,
        release_reserved=release_reserved,
    )


def record_return(
    *,
    product_id: int,
    quantity: int,
    return_id,
    restockable: bool = True,
    variant_id: int | None = None,
    location_id: int | None = None,
    unit_cost_cents: int | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
) -> StockMovement | None:
    """
    Customer return. Non-restockable units never re-enter stock, so no
    movement is written for them and None is returned.
    """
    _require_positive(quantity)
    if not restockable:
        current_app.logger.info(
            "Return %s: %s units of product %s not restockable; no movement recorded",
            return_id, quantity, product_id,
        )
        return None
    return post_movement(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        movement_type=MOVEMENT_RETURN,
        delta=quantity,
        reason="Customer return",
        reference=Reference(REF_RETURN, return_id),
        unit_cost_cents=unit_cost_cents,
        actor_id=actor_id,
        notes=notes,
    )


def mark_damaged(
    *,
    product_id: int,
    quantity: int,
    reason: str | None = None,
    variant_id: int | None = None,
    location_id: int | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
) -> StockMovement:
    _require_positive(quantity)
    return post_movement(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        movement_type=MOVEMENT_DAMAGED,
        delta=-quantity,
        reason=reason or "Damaged",
        reference=Reference(REF_DAMAGE),
        actor_id=actor_id,
        notes=notes,
    )


def transfer_stock(
    *,
    product_id: int,
    quantity: int,
    from_location_id: int,
    to_location_id: int,
    variant_id: int | None = None,
    reason: str | None = None,
    actor_id: str | None = None,
    notes: str | None = None,
) -> dict:
    """
    Move units between two locations as two linked movements.

    Both legs share one TRF- reference and are written in one transaction:
    if either leg fails, neither is persisted. Both level rows are locked in
    level_sort_key order before either is touched. In fifo mode the source's
    oldest cost layers are relocated to the destination with their received_at
    preserved, and the blended cost is recorded on both legs.
    """
    _require_positive(quantity)
    if from_location_id == to_location_id:
        raise LedgerValidationError("Source and destination locations must differ")

    def _op():
        for location_id in (from_location_id, to_location_id):
            location = db.session.get(Location, location_id)
            if location is None:
                raise NotFoundError("location", location_id)
            if not location.is_active:
                raise LedgerValidationError(f"Location {location_id} is inactive", location_id=location_id)

        cost_method = get_cost_update_method()
        source_key = (product_id, variant_id, from_location_id)
        dest_key = (product_id, variant_id, to_location_id)
        levels = lock_stock_levels([source_key, dest_key])

        source = levels[source_key]
        if source.available_quantity < quantity:
            raise InsufficientStockError(
                product_id=product_id,
                variant_id=variant_id,
                location_id=from_location_id,
                requested=quantity,
                available=source.available_quantity,
            )

        transfer_number = next_document_number(document_type=PREFIX_TRANSFER)
        reference = Reference(REF_TRANSFER, transfer_number)

        if cost_method == COST_METHOD_FIFO:
            consumption = costing_service.relocate_cost_layers(
                product_id=product_id,
                variant_id=variant_id,
                from_location_id=from_location_id,
                to_location_id=to_location_id,
                quantity=quantity,
                reference_id=transfer_number,
            )
            unit_cost = consumption.unit_cost_cents
        else:
            unit_cost = costing_service.current_cost_price(product_id, variant_id)

        leg_reason = reason or f"Transfer {transfer_number}"
        outbound = apply_movement(
            product_id=product_id,
            variant_id=variant_id,
            location_id=from_location_id,
            movement_type=MOVEMENT_TRANSFER,
            delta=-quantity,
            reason=leg_reason,
            reference=reference,
            unit_cost_cents=unit_cost,
            actor_id=actor_id,
            notes=notes,
            cost_method=cost_method,
        )
        inbound = apply_movement(
            product_id=product_id,
            variant_id=variant_id,
            location_id=to_location_id,
            movement_type=MOVEMENT_TRANSFER,
            delta=quantity,
            reason=leg_reason,
            reference=reference,
            unit_cost_cents=unit_cost,
            actor_id=actor_id,
            notes=notes,
            cost_method=cost_method,
        )
        return {
            "transfer_number": transfer_number,
            "outbound": outbound,
            "inbound": inbound,
        }

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Transfer %s: %s units of product %s from location %s to %s",
        result["transfer_number"], quantity, product_id, from_location_id, to_location_id,
    )
    return result


def reserve_stock(
    *,
    product_id: int,
    quantity: int,
    variant_id: int | None = None,
    location_id: int | None = None,
) -> StockLevel:
    """Hold units against available stock; on-hand quantity is unchanged."""
    _require_positive(quantity)

    def _op():
        _ensure_target(product_id, variant_id, location_id)
        level = lock_stock_level(product_id, variant_id, location_id)
        if quantity > level.available_quantity:
            raise InsufficientStockError(
                product_id=product_id,
                variant_id=variant_id,
                location_id=location_id,
                requested=quantity,
                available=level.available_quantity,
            )
        level.reserved_quantity += quantity
        level.available_quantity = level.quantity - level.reserved_quantity
        db.session.flush()
        return level

    return run_in_transaction(_op)


def release_stock(
    *,
    product_id: int,
    quantity: int,
    variant_id: int | None = None,
    location_id: int | None = None,
) -> StockLevel:
    _require_positive(quantity)

    def _op():
        _ensure_target(product_id, variant_id, location_id)
        level = lock_stock_level(product_id, variant_id, location_id)
        if quantity > level.reserved_quantity:
            raise LedgerValidationError(
                f"Cannot release {quantity} units; only {level.reserved_quantity} reserved",
                requested=quantity,
                reserved=level.reserved_quantity,
            )
        level.reserved_quantity -= quantity
        level.available_quantity = level.quantity - level.reserved_quantity
        db.session.flush()
        return level

    return run_in_transaction(_op)


# =============================================================================
# Reads and verification
# =============================================================================

def get_stock_level(
    product_id: int,
    variant_id: int | None = None,
    location_id: int | None = None,
) -> StockLevel | None:
    return (
        db.session.query(StockLevel)
        .filter_by(level_key=make_level_key(product_id, variant_id, location_id))
        .first()
    )


def list_movements(
    product_id: int,
    variant_id: int | None = None,
    location_id: int | None = None,
) -> list[StockMovement]:
    """Movements for one key in ledger order (created_at, then id)."""
    query = _key_filter(db.session.query(StockMovement), StockMovement, product_id, variant_id, location_id)
    return query.order_by(StockMovement.created_at.asc(), StockMovement.id.asc()).all()


def replay_quantity(
    product_id: int,
    variant_id: int | None = None,
    location_id: int | None = None,
) -> int:
    """Rebuild a key's quantity from 0 by summing its movement deltas."""
    quantity = 0
    for movement in list_movements(product_id, variant_id, location_id):
        quantity += movement.quantity
    return quantity


def verify_ledger() -> dict:
    """
    Check every level against its movement history.

    Reports (never raises) level rows whose quantity differs from the replay
    or whose reserved/available fields are out of bounds, and movements whose
    before/after snapshot is not contiguous.
    """
    problems = []
    levels = db.session.query(StockLevel).order_by(StockLevel.id.asc()).all()
    movements_checked = 0

    for level in levels:
        if not (0 <= level.reserved_quantity <= level.quantity):
            problems.append({
                "level_key": level.level_key,
                "problem": "reserved_out_of_bounds",
                "quantity": level.quantity,
                "reserved_quantity": level.reserved_quantity,
            })
        if level.available_quantity != level.quantity - level.reserved_quantity:
            problems.append({
                "level_key": level.level_key,
                "problem": "available_mismatch",
                "available_quantity": level.available_quantity,
                "expected": level.quantity - level.reserved_quantity,
            })

        running = 0
        for movement in list_movements(*level.key):
            movements_checked += 1
            if movement.new_quantity != movement.previous_quantity + movement.quantity:
                problems.append({
                    "movement_id": movement.id,
                    "problem": "snapshot_arithmetic",
                })
            if movement.previous_quantity != running:
                problems.append({
                    "movement_id": movement.id,
                    "problem": "snapshot_gap",
                    "previous_quantity": movement.previous_quantity,
                    "expected": running,
                })
            running += movement.quantity

        if running != level.quantity:
            problems.append({
                "level_key": level.level_key,
                "problem": "replay_mismatch",
                "quantity": level.quantity,
                "replayed": running,
            })

    return {
        "levels_checked": len(levels),
        "movements_checked": movements_checked,
        "ok": not problems,
        "problems": problems,
    }
