from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CycleCount(db.Model):
    """
    Physical inventory reconciliation session.

    LIFECYCLE:
    1. draft: created, lines snapshotted from stock_levels
    2. in_progress: at least one line counted
    3. completed: variances posted as cycle_count movements (terminal)
    4. cancelled: abandoned with no stock effect (terminal)

    system_quantity on each line is captured at creation and never re-read,
    so a count stays meaningful while other movements happen mid-session.
    """
    __tablename__ = "cycle_counts"
    __table_args__ = (
        db.Index("ix_cycle_counts_status", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="draft")
    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    committed_by = db.Column(db.String(64), nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    lines = db.relationship(
        "CycleCountLine",
        backref="cycle_count",
        lazy=True,
        order_by="CycleCountLine.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CycleCount id={self.id} name={self.name!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location_id": self.location_id,
            "status": self.status,
            "notes": self.notes,
            "created_by": self.created_by,
            "committed_by": self.committed_by,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
            "total_lines": len(self.lines),
            "counted_lines": sum(1 for line in self.lines if line.counted_quantity is not None),
        }


class CycleCountLine(db.Model):
    """
    variance == counted_quantity - system_quantity whenever counted_quantity is set.
    """
    __tablename__ = "cycle_count_lines"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cycle_count_id = db.Column(db.Integer, db.ForeignKey("cycle_counts.id"), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True)

    system_quantity = db.Column(db.Integer, nullable=False)
    counted_quantity = db.Column(db.Integer, nullable=True)
    variance = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Set on commit when a variance movement was posted for this line
    movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cycle_count_id": self.cycle_count_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "location_id": self.location_id,
            "system_quantity": self.system_quantity,
            "counted_quantity": self.counted_quantity,
            "variance": self.variance,
            "notes": self.notes,
            "movement_id": self.movement_id,
        }
