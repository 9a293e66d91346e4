# Overview: Cost attribution engine and FIFO cost layer store.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..errors import ConsistencyFault, LedgerValidationError, NotFoundError
from ..extensions import db
from ..models import CostLayer, Product, ProductVariant
from ..time_utils import utcnow
from .concurrency import lock_for_update
from .settings_service import (
    COST_METHOD_FIFO,
    COST_METHOD_LAST_COST,
    COST_METHOD_NONE,
    COST_METHOD_WEIGHTED_AVERAGE,
    validate_cost_method,
)
"""
Cost Attribution Invariants (authoritative)

- Invoked for receipts only (PO receiving, manual batch receipt). Adjustments,
  cycle counts and returns never change the cost price.
- The policy is passed in by the caller, fetched once per operation.
- Cost price belongs to the variant when the receipt carries one, otherwise
  to the product.
- weighted_average uses the on-hand quantity read BEFORE the receipt's ledger
  write, so the received units are not counted twice.
- fifo: one CostLayer per receipt; cost price is re-derived from the oldest
  layer with remaining_quantity > 0 after every receipt and every consumption.
- All per-unit results are rounded to the nearest cent, half-up.
- Layer shortfalls never block a stock movement: they are logged as a
  ConsistencyFault and priced at the deepest layer.
"""


def round_half_up(total_cents: int, units: int) -> int:
    # nearest-cent rounding (half-up)
    return (total_cents + (units // 2)) // units


@dataclass
class CostConsumption:
    quantity: int
    total_cost_cents: int
    unit_cost_cents: int | None
    # (layer, units taken) in consumption order
    layers: list = field(default_factory=list)
    # units not covered by any layer, priced at fallback_unit_cost_cents
    uncovered_quantity: int = 0
    fallback_unit_cost_cents: int | None = None


def _cost_owner(product_id: int, variant_id: int | None):
    if variant_id is not None:
        variant = db.session.get(ProductVariant, variant_id)
        if variant is None:
            raise NotFoundError("product_variant", variant_id)
        return variant
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    return product


def lock_cost_owners(keys) -> None:
    """
    Lock the cost price owner of each (product_id, variant_id) pair.

    Receipts call this before reading on-hand quantities, so a weighted
    average is never computed from another receipt's half-committed state.
    Products are locked before variants, each in id order. Reloading the
    owner also pins the version_id the later cost write is checked against.
    """
    product_ids = set()
    variant_ids = set()
    for product_id, variant_id in keys:
        if variant_id is None:
            product_ids.add(product_id)
        else:
            variant_ids.add(variant_id)

    for product_id in sorted(product_ids):
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).populate_existing().first()
        if product is None:
            raise NotFoundError("product", product_id)
    for variant_id in sorted(variant_ids):
        variant = (
            lock_for_update(db.session.query(ProductVariant).filter_by(id=variant_id)).populate_existing().first()
        )
        if variant is None:
            raise NotFoundError("product_variant", variant_id)


def current_cost_price(product_id: int, variant_id: int | None = None) -> int | None:
    """Variant cost price, falling back to the product's when the variant has none."""
    if variant_id is not None:
        variant = db.session.get(ProductVariant, variant_id)
        if variant is not None and variant.cost_price_cents is not None:
            return variant.cost_price_cents
    product = db.session.get(Product, product_id)
    return product.cost_price_cents if product else None


def _set_cost_price(product_id: int, variant_id: int | None, cost_cents: int) -> None:
    owner = _cost_owner(product_id, variant_id)
    owner.cost_price_cents = cost_cents


def _layers_query(product_id: int, variant_id: int | None, location_id: int | None = None, *, any_location=False):
    query = db.session.query(CostLayer).filter(CostLayer.product_id == product_id)
    if variant_id is None:
        query = query.filter(CostLayer.variant_id.is_(None))
    else:
        query = query.filter(CostLayer.variant_id == variant_id)
    if not any_location:
        if location_id is None:
            query = query.filter(CostLayer.location_id.is_(None))
        else:
            query = query.filter(CostLayer.location_id == location_id)
    return query


def rederive_fifo_cost(product_id: int, variant_id: int | None = None) -> int | None:
    """
    Set cost price to the oldest open layer's unit cost (received_at, then id).

    Leaves cost price untouched when no layer has remaining stock.
    """
    oldest = (
        _layers_query(product_id, variant_id, any_location=True)
        .filter(CostLayer.remaining_quantity > 0)
        .order_by(CostLayer.received_at.asc(), CostLayer.id.asc())
        .first()
    )
    if oldest is None:
        return None
    _set_cost_price(product_id, variant_id, oldest.unit_cost_cents)
    return oldest.unit_cost_cents


def create_cost_layer(
    *,
    product_id: int,
    variant_id: int | None,
    location_id: int | None,
    quantity: int,
    unit_cost_cents: int,
    received_at: datetime | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
) -> CostLayer:
    layer = CostLayer(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        unit_cost_cents=unit_cost_cents,
        original_quantity=quantity,
        remaining_quantity=quantity,
        received_at=received_at or utcnow(),
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.session.add(layer)
    db.session.flush()
    return layer


def attribute_receipt_cost(
    *,
    cost_method: str,
    product_id: int,
    variant_id: int | None,
    location_id: int | None,
    quantity: int,
    unit_cost_cents: int,
    existing_quantity: int,
    reference=None,
    received_at: datetime | None = None,
) -> CostLayer | None:
    """
    Apply the receipt's unit cost under the given policy.

    Returns the new CostLayer in fifo mode, else None.
    """
    validate_cost_method(cost_method)
    if quantity <= 0:
        raise LedgerValidationError("Receipt quantity must be positive", quantity=quantity)
    if unit_cost_cents is None or unit_cost_cents < 0:
        raise LedgerValidationError("Receipt unit cost must be zero or positive", unit_cost_cents=unit_cost_cents)

    if cost_method == COST_METHOD_NONE:
        return None

    if cost_method == COST_METHOD_LAST_COST:
        _set_cost_price(product_id, variant_id, unit_cost_cents)
        return None

    if cost_method == COST_METHOD_WEIGHTED_AVERAGE:
        existing_cost = current_cost_price(product_id, variant_id)
        if existing_quantity <= 0 or existing_cost is None:
            new_cost = unit_cost_cents
        else:
            total_units = existing_quantity + quantity
            total_value = existing_quantity * existing_cost + quantity * unit_cost_cents
            new_cost = round_half_up(total_value, total_units)
        _set_cost_price(product_id, variant_id, new_cost)
        return None

    if cost_method == COST_METHOD_FIFO:
        layer = create_cost_layer(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            received_at=received_at,
            reference_type=reference.type if reference else None,
            reference_id=reference.id_str if reference else None,
        )
        rederive_fifo_cost(product_id, variant_id)
        return layer

    return None


def _take_from_layers(
    product_id: int,
    variant_id: int | None,
    location_id: int | None,
    quantity: int,
) -> CostConsumption:
    layers = lock_for_update(
        _layers_query(product_id, variant_id, location_id)
        .filter(CostLayer.remaining_quantity > 0)
        .order_by(CostLayer.received_at.asc(), CostLayer.id.asc())
    ).all()

    outstanding = quantity
    total = 0
    taken = []
    for layer in layers:
        if outstanding == 0:
            break
        take = min(layer.remaining_quantity, outstanding)
        layer.remaining_quantity -= take
        total += take * layer.unit_cost_cents
        taken.append((layer, take))
        outstanding -= take

    consumption = CostConsumption(quantity=quantity, total_cost_cents=total, unit_cost_cents=None, layers=taken)

    if outstanding > 0:
        fault = ConsistencyFault(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            requested=quantity,
            covered=quantity - outstanding,
        )
        current_app.logger.warning("%s; pricing remainder at deepest layer", fault.message)

        deepest = (
            _layers_query(product_id, variant_id, location_id)
            .order_by(CostLayer.received_at.desc(), CostLayer.id.desc())
            .first()
        )
        if deepest is not None:
            fallback = deepest.unit_cost_cents
        else:
            fallback = current_cost_price(product_id, variant_id) or 0
        consumption.uncovered_quantity = outstanding
        consumption.fallback_unit_cost_cents = fallback
        consumption.total_cost_cents += outstanding * fallback

    consumption.unit_cost_cents = round_half_up(consumption.total_cost_cents, quantity)
    db.session.flush()
    return consumption


def consume_cost_layers(
    *,
    product_id: int,
    variant_id: int | None,
    location_id: int | None,
    quantity: int,
) -> CostConsumption:
    """
    Draw down the oldest open layers for an outbound movement.

    A movement spanning several layers is priced at the blended cost
    (sum of units x layer cost, divided by units).
    """
    if quantity <= 0:
        raise LedgerValidationError("Consumption quantity must be positive", quantity=quantity)
    consumption = _take_from_layers(product_id, variant_id, location_id, quantity)
    rederive_fifo_cost(product_id, variant_id)
    return consumption


def relocate_cost_layers(
    *,
    product_id: int,
    variant_id: int | None,
    from_location_id: int | None,
    to_location_id: int | None,
    quantity: int,
    reference_id: str | None = None,
) -> CostConsumption:
    """
    Move FIFO layers with a transfer.

    Units taken from the source's oldest layers reappear at the destination
    as new layers carrying the same unit cost and received_at, so FIFO order
    survives the move. Units the source could not cover arrive as one layer
    at the fallback cost.
    """
    if quantity <= 0:
        raise LedgerValidationError("Transfer quantity must be positive", quantity=quantity)
    consumption = _take_from_layers(product_id, variant_id, from_location_id, quantity)

    for layer, take in consumption.layers:
        create_cost_layer(
            product_id=product_id,
            variant_id=variant_id,
            location_id=to_location_id,
            quantity=take,
            unit_cost_cents=layer.unit_cost_cents,
            received_at=layer.received_at,
            reference_type="transfer",
            reference_id=reference_id,
        )
    if consumption.uncovered_quantity:
        create_cost_layer(
            product_id=product_id,
            variant_id=variant_id,
            location_id=to_location_id,
            quantity=consumption.uncovered_quantity,
            unit_cost_cents=consumption.fallback_unit_cost_cents,
            reference_type="transfer",
            reference_id=reference_id,
        )

    rederive_fifo_cost(product_id, variant_id)
    return consumption


def list_cost_layers(
    product_id: int,
    variant_id: int | None = None,
    location_id: int | None = None,
    *,
    open_only: bool = False,
) -> list[CostLayer]:
    query = _layers_query(product_id, variant_id, location_id)
    if open_only:
        query = query.filter(CostLayer.remaining_quantity > 0)
    return query.order_by(CostLayer.received_at.asc(), CostLayer.id.asc()).all()
