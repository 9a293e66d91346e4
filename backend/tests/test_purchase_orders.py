"""
Tests for the purchase order lifecycle, receiving and automatic reordering.
"""

from datetime import timedelta

import pytest

from stockledger.errors import InvalidStateError, LedgerValidationError, NotFoundError, OverReceiptError
from stockledger.extensions import db
from stockledger.models import Batch, PurchaseOrder, StockMovement, Supplier
from stockledger.services import purchase_order_service, stock_service
from stockledger.services.audit_service import list_audit_events
from stockledger.services.purchase_order_service import (
    PO_STATUS_APPROVED,
    PO_STATUS_CANCELLED,
    PO_STATUS_DRAFT,
    PO_STATUS_ORDERED,
    PO_STATUS_PARTIAL,
    PO_STATUS_PENDING,
    PO_STATUS_RECEIVED,
)


@pytest.fixture
def two_line_po(supplier, product, other_product):
    po = purchase_order_service.create_purchase_order(
        supplier_id=supplier.id,
        items=[
            {"product_id": product.id, "quantity": 10, "unit_cost_cents": 400},
            {"product_id": other_product.id, "quantity": 10, "unit_cost_cents": 900},
        ],
        shipping_cents=500,
        tax_cents=250,
    )
    purchase_order_service.approve_purchase_order(po.id)
    return po


def _item_ids(po):
    return [item.id for item in po.items]


class TestCreate:
    def test_totals_and_number(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 3, "unit_cost_cents": 250}],
            shipping_cents=100,
            tax_cents=50,
            created_by="buyer-1",
        )

        assert po.po_number == "PO-000001"
        assert po.status == PO_STATUS_DRAFT
        assert po.subtotal_cents == 750
        assert po.total_cents == 900
        assert po.amount_paid_cents == 0
        assert po.items[0].total_cost_cents == 750

    def test_net_terms_due_date(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        assert po.payment_due_date - po.order_date == timedelta(days=30)

    def test_requires_items(self, supplier):
        with pytest.raises(LedgerValidationError):
            purchase_order_service.create_purchase_order(supplier_id=supplier.id, items=[])

    def test_inactive_supplier_rejected(self, db_session, product):
        dormant = Supplier(name="Dormant Co", status="inactive", payment_terms_days=30)
        db_session.add(dormant)
        db_session.commit()

        with pytest.raises(LedgerValidationError):
            purchase_order_service.create_purchase_order(
                supplier_id=dormant.id,
                items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
            )

    def test_unknown_product_rejected(self, supplier):
        with pytest.raises(NotFoundError):
            purchase_order_service.create_purchase_order(
                supplier_id=supplier.id,
                items=[{"product_id": 424242, "quantity": 1, "unit_cost_cents": 100}],
            )
        assert db.session.query(PurchaseOrder).count() == 0


class TestLifecycle:
    def test_forward_transitions(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        assert purchase_order_service.submit_purchase_order(po.id).status == PO_STATUS_PENDING
        assert purchase_order_service.approve_purchase_order(po.id, actor_id="mgr").status == PO_STATUS_APPROVED
        ordered = purchase_order_service.mark_purchase_order_ordered(po.id)
        assert ordered.status == PO_STATUS_ORDERED
        assert ordered.payment_due_date - ordered.order_date == timedelta(days=30)

        actions = [e.action for e in list_audit_events(entity_type="purchase_order", entity_id=po.id)]
        assert actions == ["submitted", "approved", "marked_ordered"]

    def test_cannot_mark_draft_ordered(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        with pytest.raises(InvalidStateError):
            purchase_order_service.mark_purchase_order_ordered(po.id)

    def test_delete_is_soft_and_hides_order(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        purchase_order_service.delete_purchase_order(po.id)

        assert db.session.get(PurchaseOrder, po.id).deleted_at is not None
        with pytest.raises(NotFoundError):
            purchase_order_service.get_purchase_order(po.id)

    def test_cannot_delete_approved(self, two_line_po):
        with pytest.raises(InvalidStateError):
            purchase_order_service.delete_purchase_order(two_line_po.id)

    def test_cancel_then_receive_rejected(self, two_line_po):
        purchase_order_service.cancel_purchase_order(two_line_po.id)
        item_id = _item_ids(two_line_po)[0]

        with pytest.raises(InvalidStateError):
            purchase_order_service.receive_purchase_order(
                two_line_po.id, [{"item_id": item_id, "received_quantity": 1}]
            )
        assert db.session.query(StockMovement).count() == 0

    def test_cannot_cancel_twice(self, two_line_po):
        cancelled = purchase_order_service.cancel_purchase_order(two_line_po.id)
        assert cancelled.status == PO_STATUS_CANCELLED

        with pytest.raises(InvalidStateError):
            purchase_order_service.cancel_purchase_order(two_line_po.id)


class TestReceive:
    def test_partial_then_full(self, two_line_po, product, other_product, warehouse):
        first_item, second_item = _item_ids(two_line_po)

        result = purchase_order_service.receive_purchase_order(
            two_line_po.id,
            [
                {"item_id": first_item, "received_quantity": 10},
                {"item_id": second_item, "received_quantity": 4},
            ],
            location_id=warehouse.id,
            actor_id="receiver",
        )

        assert result["status"] == PO_STATUS_PARTIAL
        assert result["movements_created"] == 2
        assert result["total_cost_cents"] == 10 * 400 + 4 * 900
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 10
        assert stock_service.get_stock_level(other_product.id, location_id=warehouse.id).quantity == 4

        result = purchase_order_service.receive_purchase_order(
            two_line_po.id,
            [{"item_id": second_item, "received_quantity": 6}],
            location_id=warehouse.id,
        )

        assert result["status"] == PO_STATUS_RECEIVED
        po = purchase_order_service.get_purchase_order(two_line_po.id)
        assert po.received_date is not None
        assert stock_service.get_stock_level(other_product.id, location_id=warehouse.id).quantity == 10

        actions = [e.action for e in list_audit_events(entity_type="purchase_order", entity_id=po.id)]
        assert actions[-2:] == ["partially_received", "fully_received"]

    def test_receipt_movements_reference_order(self, two_line_po, warehouse):
        first_item = _item_ids(two_line_po)[0]

        purchase_order_service.receive_purchase_order(
            two_line_po.id, [{"item_id": first_item, "received_quantity": 3}], location_id=warehouse.id
        )

        movement = db.session.query(StockMovement).one()
        assert movement.type == "purchase"
        assert movement.reference_type == "purchase_order"
        assert movement.reference_id == str(two_line_po.id)
        assert movement.unit_cost_cents == 400
        assert movement.total_cost_cents == 1200

    def test_over_receipt_rejected(self, two_line_po, warehouse):
        first_item = _item_ids(two_line_po)[0]
        purchase_order_service.receive_purchase_order(
            two_line_po.id, [{"item_id": first_item, "received_quantity": 8}], location_id=warehouse.id
        )

        with pytest.raises(OverReceiptError) as exc_info:
            purchase_order_service.receive_purchase_order(
                two_line_po.id, [{"item_id": first_item, "received_quantity": 3}], location_id=warehouse.id
            )

        assert exc_info.value.remaining == 2
        assert db.session.query(StockMovement).count() == 1

    def test_repeated_lines_count_against_remaining(self, two_line_po):
        first_item = _item_ids(two_line_po)[0]

        with pytest.raises(OverReceiptError):
            purchase_order_service.receive_purchase_order(
                two_line_po.id,
                [
                    {"item_id": first_item, "received_quantity": 6},
                    {"item_id": first_item, "received_quantity": 6},
                ],
            )
        assert db.session.query(StockMovement).count() == 0

    def test_whole_call_rolls_back_on_bad_line(self, two_line_po, other_product):
        first_item, second_item = _item_ids(two_line_po)

        with pytest.raises(OverReceiptError):
            purchase_order_service.receive_purchase_order(
                two_line_po.id,
                [
                    {"item_id": first_item, "received_quantity": 5},
                    {"item_id": second_item, "received_quantity": 11},
                ],
            )

        po = purchase_order_service.get_purchase_order(two_line_po.id)
        assert [item.received_quantity for item in po.items] == [0, 0]
        assert po.status == PO_STATUS_APPROVED

    def test_draft_not_receivable(self, supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        with pytest.raises(InvalidStateError):
            purchase_order_service.receive_purchase_order(
                po.id, [{"item_id": po.items[0].id, "received_quantity": 1}]
            )

    def test_zero_quantity_lines_are_skipped(self, two_line_po):
        first_item, second_item = _item_ids(two_line_po)

        result = purchase_order_service.receive_purchase_order(
            two_line_po.id,
            [
                {"item_id": first_item, "received_quantity": 0},
                {"item_id": second_item, "received_quantity": 2},
            ],
        )

        assert result["movements_created"] == 1
        assert result["status"] == PO_STATUS_PARTIAL

    def test_negative_quantity_rejected(self, two_line_po):
        with pytest.raises(LedgerValidationError):
            purchase_order_service.receive_purchase_order(
                two_line_po.id, [{"item_id": _item_ids(two_line_po)[0], "received_quantity": -1}]
            )

    def test_item_from_another_order_rejected(self, two_line_po, supplier, product):
        other = purchase_order_service.create_purchase_order(
            supplier_id=supplier.id,
            items=[{"product_id": product.id, "quantity": 1, "unit_cost_cents": 100}],
        )

        with pytest.raises(NotFoundError):
            purchase_order_service.receive_purchase_order(
                two_line_po.id, [{"item_id": other.items[0].id, "received_quantity": 1}]
            )

    def test_lot_details_create_batch(self, two_line_po, product, warehouse):
        first_item = _item_ids(two_line_po)[0]

        purchase_order_service.receive_purchase_order(
            two_line_po.id,
            [{
                "item_id": first_item,
                "received_quantity": 4,
                "lot_number": "L-2026-07",
                "expiration_date": "2027-01-31T00:00:00Z",
            }],
            location_id=warehouse.id,
        )

        batch = db.session.query(Batch).one()
        assert batch.lot_number == "L-2026-07"
        assert batch.product_id == product.id
        assert batch.remaining_quantity == 4
        assert batch.unit_cost_cents == 400
        assert batch.reference_type == "purchase_order"

    def test_cash_on_delivery_due_on_receipt(self, cod_supplier, product):
        po = purchase_order_service.create_purchase_order(
            supplier_id=cod_supplier.id,
            items=[{"product_id": product.id, "quantity": 2, "unit_cost_cents": 100}],
        )
        assert po.payment_due_date == po.order_date
        purchase_order_service.approve_purchase_order(po.id)

        purchase_order_service.receive_purchase_order(
            po.id, [{"item_id": po.items[0].id, "received_quantity": 2}]
        )

        po = purchase_order_service.get_purchase_order(po.id)
        assert po.status == PO_STATUS_RECEIVED
        assert po.payment_due_date == po.received_date


class TestCheckReorders:
    def test_creates_draft_for_low_stock(self, db_session, product, supplier, warehouse, seed_stock):
        product.reorder_point = 5
        product.reorder_quantity = 24
        db_session.commit()
        seed_stock(product.id, 3, location_id=warehouse.id)

        result = purchase_order_service.check_reorders(actor_id="scheduler")

        assert result["created"] == 1
        assert result["low_stock_count"] == 1
        po = purchase_order_service.get_purchase_order(result["purchase_order_ids"][0])
        assert po.status == PO_STATUS_DRAFT
        assert po.supplier_id == supplier.id
        assert po.items[0].quantity == 24
        assert po.items[0].unit_cost_cents == 500
        actions = [e.action for e in list_audit_events(entity_type="purchase_order", entity_id=po.id)]
        assert actions == ["auto_reorder_created"]

    def test_skips_products_already_on_order(self, db_session, product, warehouse, seed_stock):
        product.reorder_point = 5
        db_session.commit()
        seed_stock(product.id, 3, location_id=warehouse.id)

        first = purchase_order_service.check_reorders()
        second = purchase_order_service.check_reorders()

        assert first["created"] == 1
        assert second["created"] == 0
        assert second["skipped"] == 1

    def test_ignores_healthy_stock(self, db_session, product, warehouse, seed_stock):
        product.reorder_point = 5
        db_session.commit()
        seed_stock(product.id, 50, location_id=warehouse.id)

        result = purchase_order_service.check_reorders()

        assert result == {"created": 0, "low_stock_count": 0, "skipped": 0, "purchase_order_ids": []}
