from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class PurchaseOrder(db.Model):
    """
    Purchase order header.

    LIFECYCLE:
    draft -> pending -> approved -> ordered -> partial -> received
    cancelled is reachable from any state except received; received and
    cancelled are terminal. partial/received are only ever set by the
    receiving coordinator.

    Payment status is derived at read time from total_cents, amount_paid_cents
    and payment_due_date (po_payment_service.derive_payment_status).
    """
    __tablename__ = "purchase_orders"
    __table_args__ = (
        db.Index("ix_purchase_orders_status", "status"),
        db.CheckConstraint("amount_paid_cents <= total_cents", name="ck_purchase_orders_paid_le_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    po_number = db.Column(db.String(64), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="draft")

    order_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expected_date = db.Column(db.DateTime(timezone=True), nullable=True)
    received_date = db.Column(db.DateTime(timezone=True), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_due_date = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    # Soft delete (only allowed from draft/pending)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    supplier = db.relationship("Supplier", backref=db.backref("purchase_orders", lazy=True))
    items = db.relationship(
        "PurchaseOrderItem",
        backref="purchase_order",
        lazy=True,
        order_by="PurchaseOrderItem.id",
    )
    payments = db.relationship(
        "PurchaseOrderPayment",
        backref="purchase_order",
        lazy=True,
        order_by="PurchaseOrderPayment.payment_date",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_cents(self) -> int:
        return self.total_cents - self.amount_paid_cents

    def __repr__(self) -> str:
        return f"<PurchaseOrder id={self.id} po_number={self.po_number!r} status={self.status}>"

    def to_dict(self, payment_status: str | None = None) -> dict:
        return {
            "id": self.id,
            "po_number": self.po_number,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "order_date": to_utc_z(self.order_date),
            "expected_date": to_utc_z(self.expected_date),
            "received_date": to_utc_z(self.received_date),
            "subtotal_cents": self.subtotal_cents,
            "shipping_cents": self.shipping_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "amount_paid_cents": self.amount_paid_cents,
            "paid_at": to_utc_z(self.paid_at),
            "payment_due_date": to_utc_z(self.payment_due_date),
            "payment_status": payment_status,
            "notes": self.notes,
            "created_by": self.created_by,
            "version_id": self.version_id,
            "items": [item.to_dict() for item in self.items],
        }


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"
    __table_args__ = (
        db.CheckConstraint("received_quantity >= 0", name="ck_po_items_received_nonneg"),
        db.CheckConstraint("received_quantity <= quantity", name="ck_po_items_received_le_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    received_quantity = db.Column(db.Integer, nullable=False, default=0)

    unit_cost_cents = db.Column(db.Integer, nullable=False)
    total_cost_cents = db.Column(db.Integer, nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - (self.received_quantity or 0)

    @property
    def is_fully_received(self) -> bool:
        return (self.received_quantity or 0) >= self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "received_quantity": self.received_quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "total_cost_cents": self.total_cost_cents,
        }


class PurchaseOrderPayment(db.Model):
    __tablename__ = "purchase_order_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents > 0", name="ck_po_payments_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    # bank_transfer, check, cash, credit_card, other
    payment_method = db.Column(db.String(32), nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_order_id": self.purchase_order_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "payment_date": to_utc_z(self.payment_date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
