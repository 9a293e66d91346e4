"""
Ledger error taxonomy.

Every error raised by a ledger operation aborts the transaction that raised
it; the caller sees the typed error and no partial movement, cost or status
change is persisted. Each error carries structured fields so the calling
layer can render an actionable message (see ``to_dict``).
"""
from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger failures."""

    code = "ledger_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class LedgerValidationError(LedgerError, ValueError):
    """400-level input problem (bad quantity, unknown movement type, ...)."""

    code = "validation_error"


class NotFoundError(LedgerError, LookupError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id):
        super().__init__(
            f"{entity_type} {entity_id} not found",
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class InsufficientStockError(LedgerError):
    """An outbound movement would drive quantity negative or into reserved stock."""

    code = "insufficient_stock"

    def __init__(
        self,
        *,
        product_id: int,
        variant_id: int | None,
        location_id: int | None,
        requested: int,
        available: int,
    ):
        shortfall = requested - available
        super().__init__(
            f"Insufficient stock for product {product_id}"
            f" (variant={variant_id}, location={location_id}):"
            f" requested {requested}, available {available}, short by {shortfall}",
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            requested=requested,
            available=available,
            shortfall=shortfall,
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.location_id = location_id
        self.requested = requested
        self.available = available
        self.shortfall = shortfall


class InvalidStateError(LedgerError):
    """Operation attempted against a document in a status that forbids it."""

    code = "invalid_state"

    def __init__(self, entity_type: str, entity_id, status: str, action: str):
        super().__init__(
            f"Cannot {action} {entity_type} {entity_id} in status '{status}'",
            entity_type=entity_type,
            entity_id=entity_id,
            status=status,
            action=action,
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.status = status
        self.action = action


class OverReceiptError(LedgerError):
    code = "over_receipt"

    def __init__(self, *, item_id: int, requested: int, remaining: int):
        super().__init__(
            f"Cannot receive {requested} units on order line {item_id};"
            f" only {remaining} remaining",
            item_id=item_id,
            requested=requested,
            remaining=remaining,
        )
        self.item_id = item_id
        self.requested = requested
        self.remaining = remaining


class PaymentExceedsBalanceError(LedgerValidationError):
    code = "payment_exceeds_balance"

    def __init__(self, *, purchase_order_id: int, amount_cents: int, balance_cents: int):
        super().__init__(
            f"Payment of {amount_cents} cents exceeds remaining balance"
            f" of {balance_cents} cents on purchase order {purchase_order_id}",
            purchase_order_id=purchase_order_id,
            amount_cents=amount_cents,
            balance_cents=balance_cents,
        )
        self.amount_cents = amount_cents
        self.balance_cents = balance_cents


class ConsistencyFault(LedgerError):
    """
    FIFO cost layers disagree with StockLevel.

    Never raised to callers: stock truth takes priority over cost bookkeeping,
    so the costing engine logs this and falls back to the deepest layer.
    """

    code = "consistency_fault"

    def __init__(
        self,
        *,
        product_id: int,
        variant_id: int | None,
        location_id: int | None,
        requested: int,
        covered: int,
    ):
        super().__init__(
            f"Cost layers for product {product_id}"
            f" (variant={variant_id}, location={location_id})"
            f" cover {covered} of {requested} outbound units",
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            requested=requested,
            covered=covered,
        )
        self.requested = requested
        self.covered = covered


class ImmutableRecordError(LedgerError):
    code = "immutable_record"

    def __init__(self, entity_type: str, entity_id, operation: str):
        super().__init__(
            f"{entity_type} {entity_id} is append-only; {operation} is not allowed",
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
        )
