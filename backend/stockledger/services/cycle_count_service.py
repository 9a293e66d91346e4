# backend/stockledger/services/cycle_count_service.py
"""
Physical inventory count (cycle count) service.

WHY: Regular physical counts keep the ledger honest. A session snapshots the
system quantity of every matching stock level at creation; counters record
what is actually on the shelf; commit posts each non-zero variance as a
cycle_count movement.

LIFECYCLE:
1. draft: created, lines snapshotted
2. in_progress: at least one line counted
3. completed: variances posted (terminal)
4. cancelled: abandoned, no stock effect (terminal)

Variance is measured against the creation snapshot, never against current
stock, so movements that happen mid-session are not erased by the commit.
"""
from __future__ import annotations

from flask import current_app

from ..errors import InvalidStateError, LedgerValidationError, NotFoundError
from ..extensions import db
from ..models import CycleCount, CycleCountLine, Location, StockLevel
from ..time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_in_transaction
from .settings_service import get_cost_update_method
from .stock_service import (
    MOVEMENT_CYCLE_COUNT,
    REF_CYCLE_COUNT,
    Reference,
    apply_movement,
    lock_stock_levels,
)


# Cycle count status constants
COUNT_STATUS_DRAFT = "draft"
COUNT_STATUS_IN_PROGRESS = "in_progress"
COUNT_STATUS_COMPLETED = "completed"
COUNT_STATUS_CANCELLED = "cancelled"

OPEN_COUNT_STATUSES = (COUNT_STATUS_DRAFT, COUNT_STATUS_IN_PROGRESS)


def _lock_count(count_id: int) -> CycleCount:
    count = lock_for_update(
        db.session.query(CycleCount).filter_by(id=count_id)
    ).populate_existing().first()
    if count is None:
        raise NotFoundError("cycle_count", count_id)
    return count


def get_cycle_count(count_id: int) -> dict:
    """Session header plus its lines."""
    count = db.session.get(CycleCount, count_id)
    if count is None:
        raise NotFoundError("cycle_count", count_id)
    data = count.to_dict()
    data["lines"] = [line.to_dict() for line in count.lines]
    return data


def create_cycle_count(
    *,
    name: str,
    location_id: int | None = None,
    notes: str | None = None,
    actor_id: str | None = None,
) -> CycleCount:
    """
    Create a draft session with one line per matching stock level.

    With location_id only that location's levels are snapshotted; without it,
    every level is.
    """
    if not name or not name.strip():
        raise LedgerValidationError("Cycle count name is required")

    def _op():
        if location_id is not None and db.session.get(Location, location_id) is None:
            raise NotFoundError("location", location_id)

        count = CycleCount(
            name=name.strip(),
            location_id=location_id,
            status=COUNT_STATUS_DRAFT,
            notes=notes,
            created_by=actor_id,
        )
        db.session.add(count)
        db.session.flush()

        query = db.session.query(StockLevel)
        if location_id is not None:
            query = query.filter(StockLevel.location_id == location_id)
        for level in query.order_by(StockLevel.id.asc()).all():
            db.session.add(CycleCountLine(
                cycle_count_id=count.id,
                product_id=level.product_id,
                variant_id=level.variant_id,
                location_id=level.location_id,
                system_quantity=level.quantity,
            ))
        db.session.flush()
        return count

    count = run_in_transaction(_op)
    current_app.logger.info("Created cycle count %s (%s lines)", count.id, len(count.lines))
    return count


def update_count_line(
    line_id: int,
    *,
    counted_quantity: int,
    notes: str | None = None,
) -> CycleCountLine:
    """Record a physical count for one line. Never touches stock."""
    if isinstance(counted_quantity, bool) or not isinstance(counted_quantity, int) or counted_quantity < 0:
        raise LedgerValidationError(
            "counted_quantity must be a non-negative integer",
            counted_quantity=counted_quantity,
        )

    def _op():
        line = db.session.get(CycleCountLine, line_id)
        if line is None:
            raise NotFoundError("cycle_count_line", line_id)
        count = _lock_count(line.cycle_count_id)
        if count.status not in OPEN_COUNT_STATUSES:
            raise InvalidStateError("cycle_count", count.id, count.status, "update a line of")

        line.counted_quantity = counted_quantity
        line.variance = counted_quantity - line.system_quantity
        if notes is not None:
            line.notes = notes

        if count.status == COUNT_STATUS_DRAFT:
            count.status = COUNT_STATUS_IN_PROGRESS
            count.started_at = utcnow()
        db.session.flush()
        return line

    return run_in_transaction(_op)


def commit_cycle_count(count_id: int, *, actor_id: str | None = None) -> dict:
    """
    Post variances and close the session.

    One cycle_count movement per counted line with non-zero variance
    (delta = variance); uncounted and zero-variance lines are skipped.
    A second commit fails with InvalidStateError and posts nothing.

    Returns:
        {"committed": int, "skipped": int}
    """
    def _op():
        count = _lock_count(count_id)
        if count.status not in OPEN_COUNT_STATUSES:
            raise InvalidStateError("cycle_count", count_id, count.status, "commit")

        lines = list(count.lines)
        if not any(line.counted_quantity is not None for line in lines):
            raise LedgerValidationError(
                "Cannot commit a cycle count with no counted lines",
                cycle_count_id=count_id,
            )

        to_post = [line for line in lines if line.counted_quantity is not None and line.variance]
        cost_method = get_cost_update_method()
        lock_stock_levels((line.product_id, line.variant_id, line.location_id) for line in to_post)

        reference = Reference(REF_CYCLE_COUNT, count.id)
        for line in to_post:
            movement = apply_movement(
                product_id=line.product_id,
                variant_id=line.variant_id,
                location_id=line.location_id,
                movement_type=MOVEMENT_CYCLE_COUNT,
                delta=line.variance,
                reason=f"Cycle count: {count.name}",
                reference=reference,
                actor_id=actor_id,
                notes=line.notes,
                cost_method=cost_method,
            )
            line.movement_id = movement.id

        committed = len(to_post)
        skipped = len(lines) - committed

        count.status = COUNT_STATUS_COMPLETED
        count.completed_at = utcnow()
        count.committed_by = actor_id
        db.session.flush()

        append_audit_event(
            entity_type="cycle_count",
            entity_id=count.id,
            action="committed",
            changes={"committed": committed, "skipped": skipped},
            actor_id=actor_id,
        )
        return {"committed": committed, "skipped": skipped}

    result = run_in_transaction(_op)
    current_app.logger.info(
        "Committed cycle count %s: %s adjusted, %s skipped",
        count_id, result["committed"], result["skipped"],
    )
    return result


def cancel_cycle_count(count_id: int, *, actor_id: str | None = None) -> CycleCount:
    def _op():
        count = _lock_count(count_id)
        if count.status not in OPEN_COUNT_STATUSES:
            raise InvalidStateError("cycle_count", count_id, count.status, "cancel")
        previous = count.status
        count.status = COUNT_STATUS_CANCELLED
        count.cancelled_at = utcnow()
        db.session.flush()
        append_audit_event(
            entity_type="cycle_count",
            entity_id=count.id,
            action="cancelled",
            changes={"status": {"from": previous, "to": COUNT_STATUS_CANCELLED}},
            actor_id=actor_id,
        )
        return count

    return run_in_transaction(_op)
