# Overview: Public inventory operations: stock adjustments, balances, and purchase receipts with back-order resolution.

from __future__ import annotations

import uuid

from ..errors import ValidationError, DuplicatePostingError
from .catalog_service import require_product, require_store
from .concurrency import begin_write_transaction, run_atomic
from .backorder_service import resolve_backorders
from .ledger_service import (
    PURCHASE_RECEIPT,
    MANUAL_ADJUSTMENT,
    CONVERSION_REVERSAL,
    get_balance,
    post_entry,
)
"""
Inventory entry points:
- post_stock_adjustment: manual corrections; a retried call with the same
  idempotency_key returns the original entry instead of posting twice.
- receive_stock: PURCHASE_RECEIPT posting; back-orders for the same
  (product, store) are resolved in the same transaction.
- Stock shortage on a sale never fails here; conversion_service turns it
  into back-orders before anything is posted.
"""

ADJUSTMENT_REASONS = {MANUAL_ADJUSTMENT, CONVERSION_REVERSAL}


def get_stock_balance(product_id: int, store_id: int) -> dict:
    require_product(product_id)
    require_store(store_id)
    return {
        "product_id": product_id,
        "store_id": store_id,
        "quantity": get_balance(product_id, store_id),
    }


def post_stock_adjustment(
    *,
    product_id: int,
    store_id: int,
    delta: int,
    reason: str = MANUAL_ADJUSTMENT,
    idempotency_key: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
    allow_negative: bool = False,
):
    if reason not in ADJUSTMENT_REASONS:
        raise ValidationError(
            "adjustments must use MANUAL_ADJUSTMENT or CONVERSION_REVERSAL",
            details={"reason": reason},
        )
    key = idempotency_key or f"ADJUSTMENT:{uuid.uuid4().hex}"

    def _op():
        begin_write_transaction()
        return post_entry(
            product_id=product_id,
            store_id=store_id,
            delta=delta,
            reason=reason,
            idempotency_key=key,
            note=note,
            user_id=user_id,
            allow_negative=allow_negative,
        )

    try:
        return run_atomic(_op)
    except DuplicatePostingError as e:
        return e.entry


def receive_stock_inner(
    *,
    product_id: int,
    store_id: int,
    quantity: int,
    source_document_type: str | None = None,
    source_document_id: int | None = None,
    idempotency_key: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> tuple:
    """Post a PURCHASE_RECEIPT and resolve back-orders it unblocks (flush only)."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("received quantity must be a positive integer")
    entry = post_entry(
        product_id=product_id,
        store_id=store_id,
        delta=quantity,
        reason=PURCHASE_RECEIPT,
        source_document_type=source_document_type,
        source_document_id=source_document_id,
        idempotency_key=idempotency_key,
        note=note,
        user_id=user_id,
    )
    resolved = resolve_backorders(product_id, store_id, user_id=user_id)
    return entry, resolved


def receive_stock(
    *,
    product_id: int,
    store_id: int,
    quantity: int,
    idempotency_key: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
) -> dict:
    """
    Receive stock outside a purchase document (e.g. opening balances).

    Returns the entry and the back-orders it resolved.
    """
    key = idempotency_key or f"RECEIPT:{uuid.uuid4().hex}"

    def _op():
        begin_write_transaction()
        entry, resolved = receive_stock_inner(
            product_id=product_id,
            store_id=store_id,
            quantity=quantity,
            idempotency_key=key,
            note=note,
            user_id=user_id,
        )
        return {"entry": entry.to_dict(), "resolved_backorders": resolved}

    try:
        return run_atomic(_op)
    except DuplicatePostingError as e:
        return {"entry": e.entry.to_dict(), "resolved_backorders": []}
