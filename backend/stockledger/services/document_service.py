# Overview: Atomic allocation of human-readable document numbers.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import LedgerValidationError
from ..extensions import db
from ..models import DocumentSequence


PREFIX_PURCHASE_ORDER = "PO"
PREFIX_LOT = "LOT"
PREFIX_TRANSFER = "TRF"


def _current_next(document_type: str) -> int:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )


def next_document_number(*, document_type: str, pad: int = 6) -> str:
    """
    Atomically allocate the next document number for a type.

    Runs inside the caller's transaction. The counter row is bumped with a
    single UPDATE so concurrent callers serialize on it; the first caller for
    a type inserts the row inside a savepoint and falls back to the UPDATE if
    another transaction won the insert.
    """
    if not document_type:
        raise LedgerValidationError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        next_num = _current_next(document_type) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            next_num = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            next_num = _current_next(document_type) - 1

    return f"{document_type}-{next_num:0{pad}d}"
