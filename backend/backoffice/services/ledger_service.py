# Overview: Append-only stock ledger and the StoreStock projection derived from it.

from __future__ import annotations

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ValidationError, DuplicatePostingError
from ..models import StockLedgerEntry, StoreStock
from ..time_utils import utcnow
from .catalog_service import require_product, require_store
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .filters import StockLedgerFilters
"""
Stock ledger invariants:
- Every stock movement is one StockLedgerEntry; entries are never edited or deleted.
- StoreStock.quantity == SUM(delta) of the entries for the same (product, store).
- Both are written in the same transaction; a posting that fails leaves neither.
- balance_after on an entry is the projection value right after that entry.
- idempotency_key is unique; reposting the same key raises DuplicatePostingError
  carrying the original entry so retries can treat it as a no-op.
- A posting may not drive the balance below zero unless allow_negative is set.
"""

PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
SALE_DISPATCH = "SALE_DISPATCH"
LOAN_DISPATCH = "LOAN_DISPATCH"
MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
CONVERSION_REVERSAL = "CONVERSION_REVERSAL"

LEDGER_REASONS = {PURCHASE_RECEIPT, SALE_DISPATCH, LOAN_DISPATCH, MANUAL_ADJUSTMENT, CONVERSION_REVERSAL}


def default_idempotency_key(source_document_type: str, source_document_id: int, product_id: int) -> str:
    return f"{source_document_type}:{source_document_id}:{product_id}"


def get_balance(product_id: int, store_id: int) -> int:
    """Current on-hand quantity from the projection (0 when the key has never moved)."""
    quantity = (
        db.session.query(StoreStock.quantity)
        .filter_by(product_id=product_id, store_id=store_id)
        .scalar()
    )
    return int(quantity or 0)


def get_ledger_sum(product_id: int, store_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(StockLedgerEntry.delta), 0))
        .filter_by(product_id=product_id, store_id=store_id)
        .scalar()
    )
    return int(total or 0)


def _apply_delta(product_id: int, store_id: int, delta: int) -> None:
    stmt = (
        update(StoreStock)
        .where(StoreStock.product_id == product_id, StoreStock.store_id == store_id)
        .values(quantity=StoreStock.quantity + delta, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if result.rowcount:
        return
    try:
        with db.session.begin_nested():
            db.session.add(StoreStock(product_id=product_id, store_id=store_id, quantity=delta))
    except IntegrityError:
        # Row appeared between the UPDATE and the INSERT.
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise


def post_entry(
    *,
    product_id: int,
    store_id: int,
    delta: int,
    reason: str,
    source_document_type: str | None = None,
    source_document_id: int | None = None,
    idempotency_key: str | None = None,
    note: str | None = None,
    user_id: int | None = None,
    allow_negative: bool = False,
) -> StockLedgerEntry:
    """
    Append one ledger entry and move the projection by delta.

    Runs inside the caller's transaction (flush only, no commit). The
    projection row is read under lock_for_update so postings for the same
    (product, store) serialize.
    """
    if reason not in LEDGER_REASONS:
        raise ValidationError("invalid ledger reason", details={"reason": reason})
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer")
    if delta == 0:
        raise ValidationError("delta must be non-zero")

    product = require_product(product_id, as_reference=True)
    require_store(store_id, as_reference=True)
    if not product.is_stock_tracked:
        raise ValidationError("product is not stock-tracked", details={"product_id": product_id})

    if not idempotency_key:
        if source_document_type is None or source_document_id is None:
            raise ValidationError("idempotency_key is required for postings without a source document")
        idempotency_key = default_idempotency_key(source_document_type, source_document_id, product_id)

    existing = db.session.query(StockLedgerEntry).filter_by(idempotency_key=idempotency_key).first()
    if existing is not None:
        raise DuplicatePostingError(
            "ledger entry already posted for this idempotency key",
            entry=existing,
            details={"idempotency_key": idempotency_key, "entry_id": existing.id},
        )

    row = (
        lock_for_update(db.session.query(StoreStock).filter_by(product_id=product_id, store_id=store_id))
        .populate_existing()
        .first()
    )
    current = row.quantity if row is not None else 0
    balance_after = current + delta
    if balance_after < 0 and not allow_negative:
        raise ValidationError(
            "posting would drive stock negative",
            details={
                "product_id": product_id,
                "store_id": store_id,
                "on_hand": current,
                "delta": delta,
            },
        )

    _apply_delta(product_id, store_id, delta)

    entry = StockLedgerEntry(
        product_id=product_id,
        store_id=store_id,
        delta=delta,
        reason=reason,
        source_document_type=source_document_type,
        source_document_id=source_document_id,
        idempotency_key=idempotency_key,
        balance_after=balance_after,
        note=note,
        created_by_user_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    if row is not None:
        db.session.expire(row)
    return entry


def list_stock_ledger(filters: StockLedgerFilters | None = None) -> list[StockLedgerEntry]:
    filters = filters or StockLedgerFilters()
    q = db.session.query(StockLedgerEntry)
    if filters.product_id:
        q = q.filter(StockLedgerEntry.product_id == filters.product_id)
    if filters.store_id:
        q = q.filter(StockLedgerEntry.store_id == filters.store_id)
    if filters.reason:
        q = q.filter(StockLedgerEntry.reason == filters.reason)
    if filters.source_document_type:
        q = q.filter(StockLedgerEntry.source_document_type == filters.source_document_type)
    if filters.source_document_id:
        q = q.filter(StockLedgerEntry.source_document_id == filters.source_document_id)
    if filters.created_from:
        q = q.filter(StockLedgerEntry.created_at >= filters.created_from)
    if filters.created_to:
        q = q.filter(StockLedgerEntry.created_at <= filters.created_to)
    return q.order_by(StockLedgerEntry.id.desc()).limit(filters.limit).all()


def _ledger_sums() -> dict[tuple[int, int], int]:
    rows = (
        db.session.query(
            StockLedgerEntry.product_id,
            StockLedgerEntry.store_id,
            func.sum(StockLedgerEntry.delta),
        )
        .group_by(StockLedgerEntry.product_id, StockLedgerEntry.store_id)
        .all()
    )
    return {(product_id, store_id): int(total or 0) for product_id, store_id, total in rows}


def find_balance_drift() -> list[dict]:
    """(product, store) keys whose projection disagrees with the ledger sum."""
    ledger = _ledger_sums()
    projected = {
        (row.product_id, row.store_id): row.quantity
        for row in db.session.query(StoreStock).all()
    }
    drift = []
    for key in sorted(set(ledger) | set(projected)):
        ledger_qty = ledger.get(key, 0)
        projected_qty = projected.get(key, 0)
        if ledger_qty != projected_qty:
            drift.append({
                "product_id": key[0],
                "store_id": key[1],
                "projected_quantity": projected_qty,
                "ledger_quantity": ledger_qty,
            })
    return drift


def rebuild_store_stock() -> list[dict]:
    """Reset every drifted StoreStock row to its ledger sum; returns what was corrected."""
    def _op():
        begin_write_transaction()
        drift = find_balance_drift()
        for item in drift:
            row = (
                db.session.query(StoreStock)
                .filter_by(product_id=item["product_id"], store_id=item["store_id"])
                .first()
            )
            if row is None:
                db.session.add(StoreStock(
                    product_id=item["product_id"],
                    store_id=item["store_id"],
                    quantity=item["ledger_quantity"],
                ))
            else:
                row.quantity = item["ledger_quantity"]
                row.updated_at = utcnow()
        db.session.flush()
        return drift

    return run_atomic(_op)
