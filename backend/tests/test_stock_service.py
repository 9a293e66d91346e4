"""
Tests for the stock level store and movement ledger.

Every quantity change must go through apply_movement, keep the level
invariants, leave a contiguous before/after trail, and replay exactly.
"""

import pytest

from stockledger.errors import (
    ImmutableRecordError,
    InsufficientStockError,
    LedgerValidationError,
    NotFoundError,
)
from stockledger.extensions import db
from stockledger.models import Location, StockMovement
from stockledger.services import stock_service
from stockledger.services.stock_service import (
    MOVEMENT_PURCHASE,
    MOVEMENT_SALE,
    MOVEMENT_TRANSFER,
    Reference,
)


def _movement_count():
    return db.session.query(StockMovement).count()


class TestApplyMovement:
    def test_inbound_creates_level_and_movement(self, product, warehouse, seed_stock):
        movement = seed_stock(product.id, 10, location_id=warehouse.id)

        level = stock_service.get_stock_level(product.id, location_id=warehouse.id)
        assert level.quantity == 10
        assert level.available_quantity == 10
        assert movement.type == MOVEMENT_PURCHASE
        assert movement.previous_quantity == 0
        assert movement.new_quantity == 10
        assert movement.quantity == 10

    def test_sale_records_snapshot_and_reference(self, product, warehouse, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)

        movement = stock_service.record_sale(
            product_id=product.id,
            quantity=3,
            sale_id="S-1",
            location_id=warehouse.id,
            actor_id="cashier-1",
        )

        assert movement.type == MOVEMENT_SALE
        assert movement.quantity == -3
        assert movement.previous_quantity == 10
        assert movement.new_quantity == 7
        assert movement.reference_type == "sale"
        assert movement.reference_id == "S-1"
        assert movement.actor_id == "cashier-1"
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 7

    def test_outbound_without_cost_uses_current_cost_price(self, product, warehouse, seed_stock):
        seed_stock(product.id, 5, location_id=warehouse.id)

        movement = stock_service.record_sale(
            product_id=product.id, quantity=2, sale_id="S-2", location_id=warehouse.id
        )

        assert movement.unit_cost_cents == 500
        assert movement.total_cost_cents == 1000

    def test_insufficient_stock_never_clamps(self, product, warehouse, seed_stock):
        seed_stock(product.id, 5, location_id=warehouse.id)
        before = _movement_count()

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_service.record_sale(
                product_id=product.id, quantity=8, sale_id="S-3", location_id=warehouse.id
            )

        err = exc_info.value
        assert err.requested == 8
        assert err.available == 5
        assert err.shortfall == 3
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 5
        assert _movement_count() == before

    def test_zero_delta_rejected(self, product, warehouse):
        with pytest.raises(LedgerValidationError):
            stock_service.post_movement(
                product_id=product.id,
                location_id=warehouse.id,
                movement_type=MOVEMENT_PURCHASE,
                delta=0,
                reason="nothing",
            )
        assert _movement_count() == 0

    def test_unknown_movement_type_rejected(self, product):
        with pytest.raises(LedgerValidationError):
            stock_service.post_movement(
                product_id=product.id, movement_type="teleport", delta=1, reason="?"
            )

    def test_unknown_reference_type_rejected(self):
        with pytest.raises(LedgerValidationError):
            Reference("invoice", 1)

    def test_missing_product_raises_not_found(self, db_session, seed_stock):
        with pytest.raises(NotFoundError):
            seed_stock(999999, 1)

    def test_variant_must_belong_to_product(self, other_product, variant, seed_stock):
        with pytest.raises(LedgerValidationError):
            seed_stock(other_product.id, 1, variant_id=variant.id)

    def test_variant_stock_quantity_follows_levels(self, product, variant, warehouse, store_front, seed_stock):
        seed_stock(product.id, 5, variant_id=variant.id, location_id=warehouse.id)
        seed_stock(product.id, 3, variant_id=variant.id, location_id=store_front.id)

        db.session.refresh(variant)
        assert variant.stock_quantity == 8

    def test_levels_are_keyed_separately(self, product, variant, warehouse, seed_stock):
        seed_stock(product.id, 4, location_id=warehouse.id)
        seed_stock(product.id, 6, variant_id=variant.id, location_id=warehouse.id)
        seed_stock(product.id, 2)

        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 4
        assert stock_service.get_stock_level(product.id, variant.id, warehouse.id).quantity == 6
        assert stock_service.get_stock_level(product.id).quantity == 2


class TestWrappers:
    def test_adjust_stock_requires_reason(self, product, warehouse):
        with pytest.raises(LedgerValidationError):
            stock_service.adjust_stock(product_id=product.id, quantity_delta=2, reason="  ")

    def test_adjust_stock_both_directions(self, product, warehouse):
        stock_service.adjust_stock(
            product_id=product.id, location_id=warehouse.id, quantity_delta=5, reason="Found on shelf"
        )
        movement = stock_service.adjust_stock(
            product_id=product.id, location_id=warehouse.id, quantity_delta=-2, reason="Miscount"
        )

        assert movement.type == "adjustment"
        assert movement.reason == "Miscount"
        assert movement.reference_type == "adjustment"
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 3

    def test_restockable_return_adds_stock(self, product, warehouse):
        movement = stock_service.record_return(
            product_id=product.id, quantity=2, return_id="R-1", location_id=warehouse.id
        )

        assert movement.type == "return"
        assert movement.reference_id == "R-1"
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 2

    def test_non_restockable_return_writes_nothing(self, product, warehouse):
        result = stock_service.record_return(
            product_id=product.id,
            quantity=2,
            return_id="R-2",
            location_id=warehouse.id,
            restockable=False,
        )

        assert result is None
        assert _movement_count() == 0

    def test_mark_damaged(self, product, warehouse, seed_stock):
        seed_stock(product.id, 4, location_id=warehouse.id)

        movement = stock_service.mark_damaged(
            product_id=product.id, quantity=1, location_id=warehouse.id, reason="Dropped"
        )

        assert movement.type == "damaged"
        assert movement.quantity == -1
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 3

    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
    def test_wrappers_reject_non_positive_quantity(self, product, quantity):
        with pytest.raises(LedgerValidationError):
            stock_service.record_sale(product_id=product.id, quantity=quantity, sale_id="S-x")


class TestReservations:
    def test_reserve_reduces_available_only(self, product, warehouse, seed_stock, assert_level_invariants):
        seed_stock(product.id, 10, location_id=warehouse.id)

        level = stock_service.reserve_stock(product_id=product.id, quantity=4, location_id=warehouse.id)

        assert level.quantity == 10
        assert level.reserved_quantity == 4
        assert level.available_quantity == 6
        assert _movement_count() == 1
        assert_level_invariants()

    def test_cannot_reserve_more_than_available(self, product, warehouse, seed_stock):
        seed_stock(product.id, 3, location_id=warehouse.id)

        with pytest.raises(InsufficientStockError):
            stock_service.reserve_stock(product_id=product.id, quantity=4, location_id=warehouse.id)

    def test_sale_cannot_eat_into_reserved_stock(self, product, warehouse, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)
        stock_service.reserve_stock(product_id=product.id, quantity=4, location_id=warehouse.id)

        with pytest.raises(InsufficientStockError) as exc_info:
            stock_service.record_sale(
                product_id=product.id, quantity=7, sale_id="S-4", location_id=warehouse.id
            )

        assert exc_info.value.available == 6
        level = stock_service.get_stock_level(product.id, location_id=warehouse.id)
        assert level.quantity == 10
        assert level.reserved_quantity == 4

    def test_sale_can_fulfil_its_reservation(self, product, warehouse, seed_stock, assert_level_invariants):
        seed_stock(product.id, 10, location_id=warehouse.id)
        stock_service.reserve_stock(product_id=product.id, quantity=4, location_id=warehouse.id)

        stock_service.record_sale(
            product_id=product.id,
            quantity=4,
            sale_id="S-5",
            location_id=warehouse.id,
            release_reserved=4,
        )

        level = stock_service.get_stock_level(product.id, location_id=warehouse.id)
        assert level.quantity == 6
        assert level.reserved_quantity == 0
        assert level.available_quantity == 6
        assert_level_invariants()

    def test_release_more_than_reserved_rejected(self, product, warehouse, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)
        stock_service.reserve_stock(product_id=product.id, quantity=2, location_id=warehouse.id)

        with pytest.raises(LedgerValidationError):
            stock_service.release_stock(product_id=product.id, quantity=3, location_id=warehouse.id)

        level = stock_service.release_stock(product_id=product.id, quantity=2, location_id=warehouse.id)
        assert level.reserved_quantity == 0
        assert level.available_quantity == 10


class TestTransfers:
    def test_transfer_moves_units_with_linked_legs(self, product, warehouse, store_front, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)

        result = stock_service.transfer_stock(
            product_id=product.id,
            quantity=4,
            from_location_id=warehouse.id,
            to_location_id=store_front.id,
        )

        outbound, inbound = result["outbound"], result["inbound"]
        assert result["transfer_number"] == "TRF-000001"
        assert outbound.type == inbound.type == MOVEMENT_TRANSFER
        assert outbound.quantity == -4
        assert inbound.quantity == 4
        assert outbound.reference_id == inbound.reference_id == "TRF-000001"
        assert outbound.unit_cost_cents == inbound.unit_cost_cents == 500
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 6
        assert stock_service.get_stock_level(product.id, location_id=store_front.id).quantity == 4

    def test_transfer_numbers_increase(self, product, warehouse, store_front, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)

        first = stock_service.transfer_stock(
            product_id=product.id, quantity=1,
            from_location_id=warehouse.id, to_location_id=store_front.id,
        )
        second = stock_service.transfer_stock(
            product_id=product.id, quantity=1,
            from_location_id=store_front.id, to_location_id=warehouse.id,
        )

        assert first["transfer_number"] == "TRF-000001"
        assert second["transfer_number"] == "TRF-000002"

    def test_transfer_insufficient_stock_writes_nothing(self, product, warehouse, store_front, seed_stock):
        seed_stock(product.id, 3, location_id=warehouse.id)

        with pytest.raises(InsufficientStockError):
            stock_service.transfer_stock(
                product_id=product.id, quantity=5,
                from_location_id=warehouse.id, to_location_id=store_front.id,
            )

        assert db.session.query(StockMovement).filter_by(type=MOVEMENT_TRANSFER).count() == 0
        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 3

    def test_transfer_to_inactive_location_rejected(self, db_session, product, warehouse, seed_stock):
        closed = Location(name="Closed Store", type="store", is_active=False)
        db_session.add(closed)
        db_session.commit()
        seed_stock(product.id, 3, location_id=warehouse.id)

        with pytest.raises(LedgerValidationError):
            stock_service.transfer_stock(
                product_id=product.id, quantity=1,
                from_location_id=warehouse.id, to_location_id=closed.id,
            )

    def test_transfer_to_same_location_rejected(self, product, warehouse):
        with pytest.raises(LedgerValidationError):
            stock_service.transfer_stock(
                product_id=product.id, quantity=1,
                from_location_id=warehouse.id, to_location_id=warehouse.id,
            )

    def test_failed_inbound_leg_rolls_back_outbound(self, monkeypatch, product, warehouse, store_front, seed_stock):
        seed_stock(product.id, 10, location_id=warehouse.id)
        real_apply = stock_service.apply_movement

        def failing_apply(**kwargs):
            if kwargs["delta"] > 0:
                raise RuntimeError("destination write failed")
            return real_apply(**kwargs)

        monkeypatch.setattr(stock_service, "apply_movement", failing_apply)

        with pytest.raises(RuntimeError):
            stock_service.transfer_stock(
                product_id=product.id, quantity=4,
                from_location_id=warehouse.id, to_location_id=store_front.id,
            )

        assert stock_service.get_stock_level(product.id, location_id=warehouse.id).quantity == 10
        assert db.session.query(StockMovement).filter_by(type=MOVEMENT_TRANSFER).count() == 0
        assert stock_service.verify_ledger()["ok"]


class TestLedgerIntegrity:
    def test_replay_matches_level(self, product, warehouse, store_front, seed_stock, assert_level_invariants):
        seed_stock(product.id, 20, location_id=warehouse.id)
        stock_service.record_sale(product_id=product.id, quantity=5, sale_id="S-6", location_id=warehouse.id)
        stock_service.adjust_stock(
            product_id=product.id, location_id=warehouse.id, quantity_delta=-1, reason="Shrinkage"
        )
        stock_service.transfer_stock(
            product_id=product.id, quantity=6,
            from_location_id=warehouse.id, to_location_id=store_front.id,
        )
        stock_service.record_return(product_id=product.id, quantity=2, return_id="R-3", location_id=warehouse.id)

        for location in (warehouse, store_front):
            level = stock_service.get_stock_level(product.id, location_id=location.id)
            assert stock_service.replay_quantity(product.id, location_id=location.id) == level.quantity

        movements = stock_service.list_movements(product.id, location_id=warehouse.id)
        for earlier, later in zip(movements, movements[1:]):
            assert later.previous_quantity == earlier.new_quantity

        report = stock_service.verify_ledger()
        assert report["ok"], report["problems"]
        assert report["levels_checked"] == 2
        assert report["movements_checked"] == 6
        assert_level_invariants()

    def test_verify_ledger_reports_drift(self, product, warehouse, seed_stock):
        seed_stock(product.id, 5, location_id=warehouse.id)
        level = stock_service.get_stock_level(product.id, location_id=warehouse.id)
        level.quantity = 7
        level.available_quantity = 7
        db.session.commit()

        report = stock_service.verify_ledger()

        assert not report["ok"]
        assert [p["problem"] for p in report["problems"]] == ["replay_mismatch"]

    def test_movements_cannot_be_updated(self, product, warehouse, seed_stock):
        movement = seed_stock(product.id, 5, location_id=warehouse.id)
        movement.quantity = 50

        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_movements_cannot_be_deleted(self, product, warehouse, seed_stock):
        movement = seed_stock(product.id, 5, location_id=warehouse.id)
        db.session.delete(movement)

        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()
