# backend/stockledger/services/purchase_order_service.py
"""
Purchase order lifecycle and receiving coordinator.

LIFECYCLE:
1. draft: created (manually or by check_reorders)
2. pending: submitted for approval
3. approved: approved, not yet sent to supplier
4. ordered: sent to supplier
5. partial: some items received (set by receive_purchase_order only)
6. received: every item fully received (terminal)
7. cancelled: abandoned (terminal)

approved and ordered are forward-only manual transitions. Delete is a soft
delete from draft/pending only; deleted orders behave as not found.

RECEIVING:
The PurchaseOrder row is locked for the whole receive call, so two receivers
on the same order serialize and status is always recomputed from a fresh view
of the order's full item set. StockLevel rows are locked in level_sort_key
order before any line is applied, after the cost price owners (products and
variants) whose cost the receipt may change. The whole call is one
transaction: either every line is received or none is.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidStateError, LedgerValidationError, NotFoundError, OverReceiptError
from ..extensions import db
from ..models import Product, ProductVariant, PurchaseOrder, PurchaseOrderItem, StockLevel, Supplier
from ..time_utils import add_days, normalize_datetime, utcnow
from . import costing_service
from .audit_service import append_audit_event
from .batch_service import create_batch_record
from .concurrency import lock_for_update, run_in_transaction
from .document_service import PREFIX_PURCHASE_ORDER, next_document_number
from .settings_service import COST_METHOD_NONE, get_cost_update_method
from .stock_service import (
    MOVEMENT_PURCHASE,
    REF_PURCHASE_ORDER,
    Reference,
    apply_movement,
    lock_stock_levels,
    total_on_hand,
)


PO_STATUS_DRAFT = "draft"
PO_STATUS_PENDING = "pending"
PO_STATUS_APPROVED = "approved"
PO_STATUS_ORDERED = "ordered"
PO_STATUS_PARTIAL = "partial"
PO_STATUS_RECEIVED = "received"
PO_STATUS_CANCELLED = "cancelled"

RECEIVABLE_STATUSES = (PO_STATUS_APPROVED, PO_STATUS_ORDERED, PO_STATUS_PARTIAL)
APPROVABLE_STATUSES = (PO_STATUS_DRAFT, PO_STATUS_PENDING)
DELETABLE_STATUSES = (PO_STATUS_DRAFT, PO_STATUS_PENDING)
TERMINAL_STATUSES = (PO_STATUS_RECEIVED, PO_STATUS_CANCELLED)
# Orders that still expect goods; check_reorders skips products on these
OPEN_STATUSES = (PO_STATUS_DRAFT, PO_STATUS_PENDING, PO_STATUS_APPROVED, PO_STATUS_ORDERED, PO_STATUS_PARTIAL)

SUPPLIER_STATUS_ACTIVE = "active"
PRODUCT_STATUS_ACTIVE = "active"
PRODUCT_STATUS_DISCONTINUED = "discontinued"


def compute_payment_due_date(order_date, payment_terms_days: int | None):
    """
    Due date from supplier terms.

    None or negative terms: no due date. 0 days: cash on delivery (due on the
    order date until the goods arrive). N days: order date + N.
    """
    if payment_terms_days is None or payment_terms_days < 0:
        return None
    if payment_terms_days == 0:
        return order_date
    return add_days(order_date, payment_terms_days)


def _lock_purchase_order(po_id: int) -> PurchaseOrder:
    po = lock_for_update(
        db.session.query(PurchaseOrder).filter(
            PurchaseOrder.id == po_id,
            PurchaseOrder.deleted_at.is_(None),
        )
    ).populate_existing().first()
    if po is None:
        raise NotFoundError("purchase_order", po_id)
    return po


def get_purchase_order(po_id: int) -> PurchaseOrder:
    po = (
        db.session.query(PurchaseOrder)
        .filter(PurchaseOrder.id == po_id, PurchaseOrder.deleted_at.is_(None))
        .first()
    )
    if po is None:
        raise NotFoundError("purchase_order", po_id)
    return po


def _validate_item(raw: dict) -> dict:
    try:
        product_id = int(raw["product_id"])
        quantity = raw["quantity"]
        unit_cost_cents = raw["unit_cost_cents"]
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerValidationError(f"Invalid purchase order item: {raw!r}") from exc
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise LedgerValidationError("Item quantity must be a positive integer", product_id=product_id)
    if isinstance(unit_cost_cents, bool) or not isinstance(unit_cost_cents, int) or unit_cost_cents < 0:
        raise LedgerValidationError("Item unit_cost_cents must be a non-negative integer", product_id=product_id)
    return {
        "product_id": product_id,
        "variant_id": raw.get("variant_id"),
        "quantity": quantity,
        "unit_cost_cents": unit_cost_cents,
    }


def _create_purchase_order_inner(
    *,
    supplier: Supplier,
    items: list[dict],
    order_date,
    expected_date=None,
    shipping_cents: int = 0,
    tax_cents: int = 0,
    notes: str | None = None,
    created_by: str | None = None,
) -> PurchaseOrder:
    """Core create logic without validation of supplier/products or commit."""
    subtotal = sum(item["quantity"] * item["unit_cost_cents"] for item in items)
    po = PurchaseOrder(
        po_number=next_document_number(document_type=PREFIX_PURCHASE_ORDER),
        supplier_id=supplier.id,
        status=PO_STATUS_DRAFT,
        order_date=order_date,
        expected_date=expected_date,
        subtotal_cents=subtotal,
        shipping_cents=shipping_cents,
        tax_cents=tax_cents,
        total_cents=subtotal + shipping_cents + tax_cents,
        amount_paid_cents=0,
        payment_due_date=compute_payment_due_date(order_date, supplier.payment_terms_days),
        notes=notes,
        created_by=created_by,
    )
    db.session.add(po)
    db.session.flush()

    for item in items:
        db.session.add(PurchaseOrderItem(
            purchase_order_id=po.id,
            product_id=item["product_id"],
            variant_id=item["variant_id"],
            quantity=item["quantity"],
            received_quantity=0,
            unit_cost_cents=item["unit_cost_cents"],
            total_cost_cents=item["quantity"] * item["unit_cost_cents"],
        ))
    db.session.flush()
    return po


def create_purchase_order(
    *,
    supplier_id: int,
    items: list[dict],
    expected_date=None,
    shipping_cents: int = 0,
    tax_cents: int = 0,
    notes: str | None = None,
    created_by: str | None = None,
) -> PurchaseOrder:
    """
    Create a draft purchase order.

    items: [{product_id, variant_id?, quantity, unit_cost_cents}]

    Raises:
        NotFoundError: supplier, product or variant missing
        LedgerValidationError: inactive supplier, discontinued product, bad item
    """
    if not items:
        raise LedgerValidationError("A purchase order needs at least one item")
    clean_items = [_validate_item(raw) for raw in items]
    if shipping_cents < 0 or tax_cents < 0:
        raise LedgerValidationError("shipping_cents and tax_cents cannot be negative")
    try:
        expected_dt = normalize_datetime(expected_date)
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid expected_date: {expected_date!r}") from exc

    def _op():
        supplier = db.session.get(Supplier, supplier_id)
        if supplier is None:
            raise NotFoundError("supplier", supplier_id)
        if supplier.status != SUPPLIER_STATUS_ACTIVE:
            raise LedgerValidationError(
                f"Cannot create a purchase order for supplier {supplier_id} in status '{supplier.status}'",
                supplier_id=supplier_id,
                status=supplier.status,
            )

        for item in clean_items:
            product = db.session.get(Product, item["product_id"])
            if product is None:
                raise NotFoundError("product", item["product_id"])
            if product.status == PRODUCT_STATUS_DISCONTINUED:
                raise LedgerValidationError(
                    f"Cannot order discontinued product {product.name}",
                    product_id=product.id,
                )
            if item["variant_id"] is not None:
                variant = db.session.get(ProductVariant, item["variant_id"])
                if variant is None or variant.product_id != product.id:
                    raise NotFoundError("product_variant", item["variant_id"])

        return _create_purchase_order_inner(
            supplier=supplier,
            items=clean_items,
            order_date=utcnow(),
            expected_date=expected_dt,
            shipping_cents=shipping_cents,
            tax_cents=tax_cents,
            notes=notes,
            created_by=created_by,
        )

    po = run_in_transaction(_op)
    current_app.logger.info("Created purchase order %s (%s cents)", po.po_number, po.total_cents)
    return po


def _transition(po_id: int, *, allowed: tuple, new_status: str, action: str, audit_action: str, actor_id=None, mutate=None):
    def _op():
        po = _lock_purchase_order(po_id)
        if po.status not in allowed:
            raise InvalidStateError("purchase_order", po_id, po.status, action)
        previous = po.status
        po.status = new_status
        if mutate is not None:
            mutate(po)
        db.session.flush()
        append_audit_event(
            entity_type="purchase_order",
            entity_id=po.id,
            action=audit_action,
            changes={"status": {"from": previous, "to": new_status}},
            actor_id=actor_id,
        )
        return po

    po = run_in_transaction(_op)
    current_app.logger.info("Purchase order %s -> %s", po.po_number, new_status)
    return po


def submit_purchase_order(po_id: int, *, actor_id: str | None = None) -> PurchaseOrder:
    return _transition(
        po_id,
        allowed=(PO_STATUS_DRAFT,),
        new_status=PO_STATUS_PENDING,
        action="submit",
        audit_action="submitted",
        actor_id=actor_id,
    )


def approve_purchase_order(po_id: int, *, actor_id: str | None = None) -> PurchaseOrder:
    return _transition(
        po_id,
        allowed=APPROVABLE_STATUSES,
        new_status=PO_STATUS_APPROVED,
        action="approve",
        audit_action="approved",
        actor_id=actor_id,
    )


def mark_purchase_order_ordered(po_id: int, *, actor_id: str | None = None) -> PurchaseOrder:
    """approved -> ordered. The order date becomes today and the due date follows it."""
    def _stamp(po: PurchaseOrder):
        po.order_date = utcnow()
        if po.supplier is not None:
            po.payment_due_date = compute_payment_due_date(po.order_date, po.supplier.payment_terms_days)

    return _transition(
        po_id,
        allowed=(PO_STATUS_APPROVED,),
        new_status=PO_STATUS_ORDERED,
        action="mark ordered",
        audit_action="marked_ordered",
        actor_id=actor_id,
        mutate=_stamp,
    )


def cancel_purchase_order(po_id: int, *, actor_id: str | None = None) -> PurchaseOrder:
    """
    Cancel from any non-terminal status.

    A partially received order that has already been paid against cannot be
    cancelled: goods and money have both moved.
    """
    def _op():
        po = _lock_purchase_order(po_id)
        if po.status in TERMINAL_STATUSES:
            raise InvalidStateError("purchase_order", po_id, po.status, "cancel")
        if po.status == PO_STATUS_PARTIAL and po.amount_paid_cents > 0:
            raise InvalidStateError("purchase_order", po_id, po.status, "cancel a paid")
        previous = po.status
        po.status = PO_STATUS_CANCELLED
        db.session.flush()
        append_audit_event(
            entity_type="purchase_order",
            entity_id=po.id,
            action="cancelled",
            changes={"status": {"from": previous, "to": PO_STATUS_CANCELLED}},
            actor_id=actor_id,
        )
        return po

    po = run_in_transaction(_op)
    current_app.logger.info("Purchase order %s cancelled", po.po_number)
    return po


def delete_purchase_order(po_id: int, *, actor_id: str | None = None) -> PurchaseOrder:
    """Soft delete; only draft and pending orders can be deleted."""
    def _op():
        po = _lock_purchase_order(po_id)
        if po.status not in DELETABLE_STATUSES:
            raise InvalidStateError("purchase_order", po_id, po.status, "delete")
        po.deleted_at = utcnow()
        db.session.flush()
        append_audit_event(
            entity_type="purchase_order",
            entity_id=po.id,
            action="deleted",
            changes={"status": po.status, "po_number": po.po_number},
            actor_id=actor_id,
        )
        return po

    return run_in_transaction(_op)


def _parse_receive_lines(lines: list[dict]) -> list[dict]:
    parsed = []
    for raw in lines:
        try:
            item_id = int(raw["item_id"])
            quantity = raw["received_quantity"]
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerValidationError(f"Invalid receive line: {raw!r}") from exc
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise LedgerValidationError("received_quantity must be an integer", item_id=item_id)
        if quantity < 0:
            raise LedgerValidationError(
                "received_quantity cannot be negative",
                item_id=item_id,
                received_quantity=quantity,
            )
        if quantity == 0:
            continue
        parsed.append({
            "item_id": item_id,
            "quantity": quantity,
            "lot_number": raw.get("lot_number"),
            "expiration_date": raw.get("expiration_date"),
        })
    return parsed


def _receive_line(*, po, item, line, location_id, cost_method, actor_id) -> int:
    reference = Reference(REF_PURCHASE_ORDER, po.id)
    quantity = line["quantity"]

    # Pre-movement on-hand, so weighted average does not count the receipt twice
    existing_quantity = total_on_hand(item.product_id, item.variant_id)

    item.received_quantity += quantity
    apply_movement(
        product_id=item.product_id,
        variant_id=item.variant_id,
        location_id=location_id,
        movement_type=MOVEMENT_PURCHASE,
        delta=quantity,
        reason=f"Received from {po.po_number}",
        reference=reference,
        unit_cost_cents=item.unit_cost_cents,
        actor_id=actor_id,
        cost_method=cost_method,
    )
    costing_service.attribute_receipt_cost(
        cost_method=cost_method,
        product_id=item.product_id,
        variant_id=item.variant_id,
        location_id=location_id,
        quantity=quantity,
        unit_cost_cents=item.unit_cost_cents,
        existing_quantity=existing_quantity,
        reference=reference,
    )
    if line["lot_number"] or line["expiration_date"]:
        create_batch_record(
            product_id=item.product_id,
            variant_id=item.variant_id,
            location_id=location_id,
            quantity=quantity,
            unit_cost_cents=item.unit_cost_cents,
            lot_number=line["lot_number"],
            expiration_date=line["expiration_date"],
            reference_type=REF_PURCHASE_ORDER,
            reference_id=str(po.id),
        )
    return quantity * item.unit_cost_cents


def receive_purchase_order(
    po_id: int,
    lines: list[dict],
    *,
    location_id: int | None = None,
    actor_id: str | None = None,
) -> dict:
    """
    Record goods arrival against order lines.

    lines: [{item_id, received_quantity, lot_number?, expiration_date?}]
    Lines with received_quantity 0 are skipped.

    Returns:
        {"movements_created", "status", "total_cost_cents"}

    Raises:
        InvalidStateError: order not approved/ordered/partial
        NotFoundError: order missing or item not on this order
        OverReceiptError: a line exceeds the item's remaining quantity
        LedgerValidationError: negative or non-integer quantity
    """
    parsed = _parse_receive_lines(lines)

    def _op():
        po = _lock_purchase_order(po_id)
        if po.status not in RECEIVABLE_STATUSES:
            raise InvalidStateError("purchase_order", po_id, po.status, "receive")

        items = lock_for_update(
            db.session.query(PurchaseOrderItem).filter_by(purchase_order_id=po.id)
        ).populate_existing().all()
        items_by_id = {item.id: item for item in items}

        pending = {}
        for line in parsed:
            item = items_by_id.get(line["item_id"])
            if item is None:
                raise NotFoundError("purchase_order_item", line["item_id"])
            already = pending.get(item.id, 0)
            remaining = item.quantity - item.received_quantity - already
            if line["quantity"] > remaining:
                raise OverReceiptError(item_id=item.id, requested=line["quantity"], remaining=remaining)
            pending[item.id] = already + line["quantity"]

        cost_method = get_cost_update_method()
        if cost_method != COST_METHOD_NONE:
            costing_service.lock_cost_owners(
                (items_by_id[line["item_id"]].product_id, items_by_id[line["item_id"]].variant_id)
                for line in parsed
            )
        lock_stock_levels(
            (items_by_id[line["item_id"]].product_id, items_by_id[line["item_id"]].variant_id, location_id)
            for line in parsed
        )

        total_cost = 0
        for line in parsed:
            total_cost += _receive_line(
                po=po,
                item=items_by_id[line["item_id"]],
                line=line,
                location_id=location_id,
                cost_method=cost_method,
                actor_id=actor_id,
            )

        previous = po.status
        if all(item.is_fully_received for item in items):
            po.status = PO_STATUS_RECEIVED
            po.received_date = utcnow()
            if po.supplier is not None and po.supplier.payment_terms_days == 0:
                po.payment_due_date = po.received_date
        elif any(item.received_quantity > 0 for item in items):
            po.status = PO_STATUS_PARTIAL
        db.session.flush()

        if parsed:
            append_audit_event(
                entity_type="purchase_order",
                entity_id=po.id,
                action="fully_received" if po.status == PO_STATUS_RECEIVED else "partially_received",
                changes={
                    "status": {"from": previous, "to": po.status},
                    "lines": [{"item_id": l["item_id"], "quantity": l["quantity"]} for l in parsed],
                    "total_cost_cents": total_cost,
                },
                actor_id=actor_id,
            )

        return {
            "movements_created": len(parsed),
            "status": po.status,
            "total_cost_cents": total_cost,
            "po_number": po.po_number,
        }

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Received %s line(s) on %s; status %s",
        result["movements_created"], result["po_number"], result["status"],
    )
    return result


def check_reorders(*, actor_id: str | None = None) -> dict:
    """
    Raise draft purchase orders for products at or below their reorder point.

    Compares each (product, location) level against the product's reorder
    point. Products without a supplier, already on an open order, or not
    active are skipped. Each new order is its own transaction.

    Returns:
        {"created", "low_stock_count", "skipped", "purchase_order_ids"}
    """
    low_rows = (
        db.session.query(Product, StockLevel)
        .join(StockLevel, StockLevel.product_id == Product.id)
        .filter(
            Product.status == PRODUCT_STATUS_ACTIVE,
            Product.reorder_point.isnot(None),
            Product.supplier_id.isnot(None),
            StockLevel.quantity <= Product.reorder_point,
        )
        .order_by(Product.id.asc(), StockLevel.id.asc())
        .all()
    )
    if not low_rows:
        return {"created": 0, "low_stock_count": 0, "skipped": 0, "purchase_order_ids": []}

    open_product_ids = {
        row[0]
        for row in db.session.query(func.distinct(PurchaseOrderItem.product_id))
        .join(PurchaseOrder, PurchaseOrder.id == PurchaseOrderItem.purchase_order_id)
        .filter(
            PurchaseOrder.deleted_at.is_(None),
            PurchaseOrder.status.in_(OPEN_STATUSES),
        )
        .all()
    }

    created_ids = []
    skipped = 0
    for product, level in low_rows:
        if product.id in open_product_ids:
            skipped += 1
            continue

        reorder_qty = product.reorder_quantity or product.reorder_point or 1
        unit_cost = product.cost_price_cents or 0
        product_id = product.id
        supplier_id = product.supplier_id
        note = (
            f"Auto-reorder: {product.name} ({product.sku}) dropped to"
            f" {level.quantity} <= reorder point {product.reorder_point}"
        )
        audit_changes = {
            "product_id": product_id,
            "reorder_point": product.reorder_point,
            "reorder_quantity": reorder_qty,
            "stock_quantity": level.quantity,
            "location_id": level.location_id,
        }

        def _op():
            supplier = db.session.get(Supplier, supplier_id)
            if supplier is None:
                raise NotFoundError("supplier", supplier_id)
            po = _create_purchase_order_inner(
                supplier=supplier,
                items=[{
                    "product_id": product_id,
                    "variant_id": None,
                    "quantity": reorder_qty,
                    "unit_cost_cents": unit_cost,
                }],
                order_date=utcnow(),
                notes=note,
                created_by=actor_id,
            )
            append_audit_event(
                entity_type="purchase_order",
                entity_id=po.id,
                action="auto_reorder_created",
                changes={"po_number": po.po_number, **audit_changes},
                actor_id=actor_id,
            )
            return po.id

        created_ids.append(run_in_transaction(_op))
        open_product_ids.add(product_id)

    current_app.logger.info(
        "Reorder check: %s low-stock rows, %s orders created, %s skipped",
        len(low_rows), len(created_ids), skipped,
    )
    return {
        "created": len(created_ids),
        "low_stock_count": len(low_rows),
        "skipped": skipped,
        "purchase_order_ids": created_ids,
    }
