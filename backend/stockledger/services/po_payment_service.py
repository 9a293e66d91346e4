# Overview: Supplier payments recorded against purchase orders.

"""
Purchase Order Payment Tracker

WHY: Accounts payable needs to know what is owed per order and when it is due.

DESIGN PRINCIPLES:
- Payments are separate rows (many-to-one with the order); amount_paid_cents on
  the order is their running sum.
- amount_paid_cents never exceeds total_cents (checked here and by a DB constraint).
- Payment status is derived at read time from total, paid and due date; it is
  never stored, so it cannot drift from the amounts it describes.
"""
from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidStateError, LedgerValidationError, NotFoundError, PaymentExceedsBalanceError
from ..extensions import db
from ..models import PurchaseOrder, PurchaseOrderPayment
from ..time_utils import normalize_datetime
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_in_transaction


# =============================================================================
# PAYMENT STATUS / METHODS (CONSTANTS)
# =============================================================================

PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTIALLY_PAID = "partially_paid"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_OVERDUE = "overdue"

PAYMENT_METHOD_BANK_TRANSFER = "bank_transfer"
PAYMENT_METHOD_CHECK = "check"
PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHOD_CREDIT_CARD = "credit_card"
PAYMENT_METHOD_OTHER = "other"

VALID_PAYMENT_METHODS = [
    PAYMENT_METHOD_BANK_TRANSFER,
    PAYMENT_METHOD_CHECK,
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_CREDIT_CARD,
    PAYMENT_METHOD_OTHER,
]


def derive_payment_status(
    total_cents: int,
    amount_paid_cents: int,
    payment_due_date: datetime | None,
    now: datetime | None = None,
) -> str:
    """
    paid: paid >= total > 0
    partially_paid: something paid, balance remaining
    overdue: nothing paid and due date has passed
    unpaid: otherwise
    """
    paid = amount_paid_cents or 0
    if total_cents > 0 and paid >= total_cents:
        return PAYMENT_STATUS_PAID
    if paid > 0:
        return PAYMENT_STATUS_PARTIALLY_PAID
    now = normalize_datetime(now, default_now=True)
    if payment_due_date is not None and normalize_datetime(payment_due_date) < now:
        return PAYMENT_STATUS_OVERDUE
    return PAYMENT_STATUS_UNPAID


def payment_status_for(po: PurchaseOrder, now: datetime | None = None) -> str:
    return derive_payment_status(po.total_cents, po.amount_paid_cents, po.payment_due_date, now)


def serialize_purchase_order(po: PurchaseOrder, now: datetime | None = None) -> dict:
    return po.to_dict(payment_status=payment_status_for(po, now))


def record_po_payment(
    po_id: int,
    *,
    amount_cents: int,
    payment_date=None,
    payment_method: str | None = None,
    notes: str | None = None,
    actor_id: str | None = None,
) -> PurchaseOrderPayment:
    """
    Record a supplier payment.

    Raises:
        LedgerValidationError: non-positive amount, unknown method, bad date
        PaymentExceedsBalanceError: amount above the outstanding balance
        InvalidStateError: order is cancelled
        NotFoundError: order missing or deleted
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise LedgerValidationError("Payment amount must be greater than 0", amount_cents=amount_cents)
    if payment_method is not None and payment_method not in VALID_PAYMENT_METHODS:
        raise LedgerValidationError(
            f"Invalid payment method: {payment_method}",
            allowed=VALID_PAYMENT_METHODS,
        )
    try:
        paid_at = normalize_datetime(payment_date, default_now=True)
    except ValueError as exc:
        raise LedgerValidationError(f"Invalid payment_date: {payment_date!r}") from exc

    def _op():
        po = lock_for_update(
            db.session.query(PurchaseOrder).filter(
                PurchaseOrder.id == po_id,
                PurchaseOrder.deleted_at.is_(None),
            )
        ).populate_existing().first()
        if po is None:
            raise NotFoundError("purchase_order", po_id)
        if po.status == "cancelled":
            raise InvalidStateError("purchase_order", po_id, po.status, "record a payment on")

        balance = po.total_cents - po.amount_paid_cents
        if amount_cents > balance:
            raise PaymentExceedsBalanceError(
                purchase_order_id=po.id,
                amount_cents=amount_cents,
                balance_cents=balance,
            )

        payment = PurchaseOrderPayment(
            purchase_order_id=po.id,
            amount_cents=amount_cents,
            payment_method=payment_method,
            payment_date=paid_at,
            notes=notes,
        )
        db.session.add(payment)
        db.session.flush()

        total_paid = (
            db.session.query(func.coalesce(func.sum(PurchaseOrderPayment.amount_cents), 0))
            .filter(PurchaseOrderPayment.purchase_order_id == po.id)
            .scalar()
        )
        po.amount_paid_cents = int(total_paid)
        po.paid_at = paid_at
        db.session.flush()

        append_audit_event(
            entity_type="purchase_order",
            entity_id=po.id,
            action="payment_recorded",
            changes={
                "amount_cents": amount_cents,
                "amount_paid_cents": po.amount_paid_cents,
                "payment_status": payment_status_for(po),
                "payment_method": payment_method,
            },
            actor_id=actor_id,
        )
        return payment

    payment = run_in_transaction(_op)
    current_app.logger.info(
        "Recorded payment %s of %s cents on purchase order %s",
        payment.id, amount_cents, po_id,
    )
    return payment


def list_po_payments(po_id: int) -> list[PurchaseOrderPayment]:
    return (
        db.session.query(PurchaseOrderPayment)
        .filter_by(purchase_order_id=po_id)
        .order_by(PurchaseOrderPayment.payment_date.asc(), PurchaseOrderPayment.id.asc())
        .all()
    )
