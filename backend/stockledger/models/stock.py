from __future__ import annotations

from sqlalchemy import event

from ..errors import ImmutableRecordError
from ..extensions import db
from ..time_utils import to_utc_z


def make_level_key(product_id: int, variant_id: int | None, location_id: int | None) -> str:
    """
    Canonical identity string for a (product, variant?, location?) triple.

    SQL treats NULLs as distinct in unique constraints, so uniqueness of the
    nullable triple is enforced on this derived column instead.
    """
    v = "-" if variant_id is None else str(variant_id)
    loc = "-" if location_id is None else str(location_id)
    return f"{product_id}:{v}:{loc}"


class StockLevel(db.Model):
    """
    Authoritative current quantity for a product(+variant) at a location.

    INVARIANTS (enforced by stock_service.apply_movement, the only writer):
    - 0 <= reserved_quantity <= quantity
    - available_quantity == quantity - reserved_quantity
    - quantity equals the replay of all movements for the key

    Rows are created lazily on first movement and never deleted.
    version_id gives optimistic locking on stores that ignore FOR UPDATE.
    """
    __tablename__ = "stock_levels"
    __table_args__ = (
        db.UniqueConstraint("level_key", name="uq_stock_levels_key"),
        db.Index("ix_stock_levels_product_variant", "product_id", "variant_id"),
        db.Index("ix_stock_levels_location", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    level_key = db.Column(db.String(64), nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    available_quantity = db.Column(db.Integer, nullable=False, default=0)

    last_movement_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")
    location = db.relationship("Location")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def key(self) -> tuple[int, int | None, int | None]:
        return (self.product_id, self.variant_id, self.location_id)

    def __repr__(self) -> str:
        return f"<StockLevel key={self.level_key} qty={self.quantity} reserved={self.reserved_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "quantity": self.quantity,
            "reserved_quantity": self.reserved_quantity,
            "available_quantity": self.available_quantity,
            "last_movement_at": to_utc_z(self.last_movement_at),
            "version_id": self.version_id,
        }


class StockMovement(db.Model):
    """
    One immutable, signed quantity change with before/after snapshot.

    APPEND-ONLY: created exactly once per mutation by apply_movement;
    UPDATE and DELETE are rejected at flush time (see listeners below).

    reference_type/reference_id is a tagged link to whatever business event
    caused the movement (purchase_order, sale, transfer, cycle_count, ...).
    Existence of the referenced row is the writer's responsibility.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_key_created", "product_id", "variant_id", "location_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    type = db.Column(db.String(32), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    unit_cost_cents = db.Column(db.Integer, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=True)

    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    actor_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "type": self.type,
            "quantity": self.quantity,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
            "reason": self.reason,
            "notes": self.notes,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockMovement, "before_update")
def prevent_movement_update(mapper, connection, target):
    raise ImmutableRecordError("StockMovement", target.id, "update")


@event.listens_for(StockMovement, "before_delete")
def prevent_movement_delete(mapper, connection, target):
    raise ImmutableRecordError("StockMovement", target.id, "delete")


class CostLayer(db.Model):
    """
    FIFO receipt layer used for cost attribution.

    Separate from Batch: a layer exists only to price outbound units, a
    batch tracks a physically identifiable lot and its expiry.
    Layers at remaining_quantity 0 are retained for audit.
    """
    __tablename__ = "cost_layers"
    __table_args__ = (
        db.CheckConstraint("remaining_quantity >= 0", name="ck_cost_layers_remaining_nonneg"),
        db.CheckConstraint("remaining_quantity <= original_quantity", name="ck_cost_layers_remaining_le_original"),
        db.Index("ix_cost_layers_fifo", "product_id", "variant_id", "location_id", "received_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    unit_cost_cents = db.Column(db.Integer, nullable=False)
    original_quantity = db.Column(db.Integer, nullable=False)
    remaining_quantity = db.Column(db.Integer, nullable=False)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "unit_cost_cents": self.unit_cost_cents,
            "original_quantity": self.original_quantity,
            "remaining_quantity": self.remaining_quantity,
            "received_at": to_utc_z(self.received_at),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
        }


class Batch(db.Model):
    """
    Lot-numbered, expiry-dated sub-population of stock.

    Status (active / expiring_soon / expired / depleted) is NOT stored:
    batch_service.derive_batch_status computes it from remaining_quantity
    and expiration_date on every read.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.CheckConstraint("remaining_quantity >= 0", name="ck_batches_remaining_nonneg"),
        db.Index("ix_batches_expiration", "expiration_date"),
        db.Index("ix_batches_key", "product_id", "variant_id", "location_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    lot_number = db.Column(db.String(64), nullable=True, index=True)
    expiration_date = db.Column(db.DateTime(timezone=True), nullable=True)

    original_quantity = db.Column(db.Integer, nullable=False)
    remaining_quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    notes = db.Column(db.Text, nullable=True)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, status: str | None = None) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "lot_number": self.lot_number,
            "expiration_date": to_utc_z(self.expiration_date),
            "original_quantity": self.original_quantity,
            "remaining_quantity": self.remaining_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "received_at": to_utc_z(self.received_at),
            "notes": self.notes,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "status": status,
        }
