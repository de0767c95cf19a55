# Overview: Back-order tracker; records unmet sale demand and consumes it oldest-first as stock arrives.

from __future__ import annotations

from sqlalchemy import or_

from ..extensions import db
from ..errors import (
    ValidationError,
    NotFoundError,
    InvalidStateTransitionError,
    RemainingQuantityExceededError,
)
from ..models import Backorder, Document, DocumentLine, Product
from ..time_utils import utcnow
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .document_service import SALE, load_for_update, refresh_conversion_state, refresh_sale_status
from .filters import BackorderFilters
from .ledger_service import SALE_DISPATCH, get_balance, post_entry


def create_backorder(
    *,
    sale: Document,
    sale_line: DocumentLine,
    quantity: int,
    waybill: Document | None = None,
) -> Backorder:
    """Record a shortfall against a sale line (flush only)."""
    if quantity <= 0:
        raise ValidationError("backorder quantity must be positive")
    backorder = Backorder(
        product_id=sale_line.product_id,
        store_id=sale.store_id,
        sale_id=sale.id,
        sale_line_id=sale_line.id,
        waybill_id=waybill.id if waybill is not None else None,
        customer_id=sale.customer_id,
        pending_quantity=quantity,
        original_quantity=quantity,
        is_active=True,
    )
    db.session.add(backorder)
    db.session.flush()
    return backorder


def _load_backorder_for_update(backorder_id: int) -> Backorder:
    backorder = (
        lock_for_update(db.session.query(Backorder).filter_by(id=backorder_id))
        .populate_existing()
        .first()
    )
    if backorder is None:
        raise NotFoundError("backorder not found", details={"backorder_id": backorder_id})
    return backorder


def _close(backorder: Backorder) -> None:
    backorder.is_active = False
    backorder.resolved_at = utcnow()


def reduce_backorder(backorder: Backorder, quantity: int, sale_line: DocumentLine) -> None:
    """
    Apply quantity against a back-order's pending amount and the sale line it belongs to.

    Callers own the stock side: either a SALE_DISPATCH posting (resolution
    from stock) or none at all (goods already with the customer on loan).
    """
    backorder.pending_quantity -= quantity
    sale_line.backorder_quantity = max(0, sale_line.backorder_quantity - quantity)
    sale_line.fulfilled_quantity += quantity
    if backorder.pending_quantity <= 0:
        backorder.pending_quantity = 0
        _close(backorder)


def _consume(backorder: Backorder, quantity: int, user_id: int | None = None) -> dict:
    fulfilled_so_far = backorder.original_quantity - backorder.pending_quantity
    entry = post_entry(
        product_id=backorder.product_id,
        store_id=backorder.store_id,
        delta=-quantity,
        reason=SALE_DISPATCH,
        source_document_type=SALE,
        source_document_id=backorder.sale_id,
        idempotency_key=f"BACKORDER:{backorder.id}:{fulfilled_so_far}",
        note=f"backorder {backorder.id} fulfilment",
        user_id=user_id,
    )

    sale = load_for_update(SALE, backorder.sale_id)
    sale_line = db.session.get(DocumentLine, backorder.sale_line_id)
    reduce_backorder(backorder, quantity, sale_line)

    if backorder.waybill_id is not None:
        waybill_line = (
            db.session.query(DocumentLine)
            .filter_by(document_id=backorder.waybill_id, source_line_id=sale_line.id)
            .first()
        )
        if waybill_line is not None:
            waybill_line.fulfilled_quantity += quantity

    refresh_conversion_state(sale)
    refresh_sale_status(sale)
    db.session.flush()
    return {
        "backorder_id": backorder.id,
        "sale_id": backorder.sale_id,
        "quantity": quantity,
        "pending_quantity": backorder.pending_quantity,
        "ledger_entry_id": entry.id,
    }


def resolve_backorders(product_id: int, store_id: int, user_id: int | None = None) -> list[dict]:
    """
    Consume active back-orders for (product, store) from the current balance.

    Oldest first by (created_at, id). Runs inside the caller's transaction,
    which is the transaction of the receipt posting that made stock
    available.
    """
    available = get_balance(product_id, store_id)
    if available <= 0:
        return []

    backorders = (
        lock_for_update(
            db.session.query(Backorder).filter_by(
                product_id=product_id,
                store_id=store_id,
                is_active=True,
            )
        )
        .order_by(Backorder.created_at.asc(), Backorder.id.asc())
        .populate_existing()
        .all()
    )

    resolved = []
    for backorder in backorders:
        if available <= 0:
            break
        take = min(backorder.pending_quantity, available)
        if take <= 0:
            continue
        resolved.append(_consume(backorder, take, user_id=user_id))
        available -= take
    return resolved


def fulfill_backorder(backorder_id: int, quantity: int | None = None, user_id: int | None = None) -> dict:
    """
    Manually fulfil (part of) a back-order from current stock.

    quantity defaults to as much as stock allows.
    """
    def _op():
        begin_write_transaction()
        backorder = _load_backorder_for_update(backorder_id)
        if not backorder.is_active:
            raise InvalidStateTransitionError(
                "backorder is closed",
                details={"backorder_id": backorder_id},
            )

        on_hand = get_balance(backorder.product_id, backorder.store_id)
        if quantity is None:
            take = min(backorder.pending_quantity, on_hand)
            if take <= 0:
                raise ValidationError(
                    "no stock available to fulfil backorder",
                    details={"on_hand": on_hand},
                )
        else:
            take = int(quantity)
            if take <= 0:
                raise ValidationError("quantity must be positive")
            if take > backorder.pending_quantity:
                raise RemainingQuantityExceededError(
                    "quantity exceeds pending backorder quantity",
                    details={"pending_quantity": backorder.pending_quantity, "requested": take},
                )
            if take > on_hand:
                raise ValidationError(
                    "insufficient stock to fulfil backorder",
                    details={"on_hand": on_hand, "requested": take},
                )
        result = _consume(backorder, take, user_id=user_id)
        result["backorder"] = backorder.to_dict()
        return result

    return run_atomic(_op)


def cancel_backorder_inner(backorder: Backorder, sale_line: DocumentLine, *, release_waybill: bool = True) -> int:
    """
    Close a back-order without stock movement and release its quantity on the sale line.

    The waybill line it was raised on shrinks by the same amount so the
    waybill can still complete on what was actually dispatched.
    """
    pending = backorder.pending_quantity
    sale_line.backorder_quantity = max(0, sale_line.backorder_quantity - pending)
    sale_line.converted_quantity = max(0, sale_line.converted_quantity - pending)
    if release_waybill and backorder.waybill_id is not None and pending > 0:
        waybill = db.session.get(Document, backorder.waybill_id)
        for line in waybill.lines:
            if line.source_line_id == sale_line.id:
                line.quantity -= pending
                line.line_total_cents = line.quantity * line.unit_price_cents
                break
        waybill.total_cents = sum(line.line_total_cents for line in waybill.lines)
        refresh_conversion_state(waybill)
        if waybill.conversion_status == "FULL" and waybill.status in ("ISSUED", "IN_TRANSIT"):
            waybill.status = "DELIVERED"
    backorder.is_active = False
    backorder.cancelled_at = utcnow()
    return pending


def cancel_backorder(backorder_id: int) -> Backorder:
    def _op():
        begin_write_transaction()
        backorder = _load_backorder_for_update(backorder_id)
        if not backorder.is_active:
            raise InvalidStateTransitionError(
                "backorder is already closed",
                details={"backorder_id": backorder_id},
            )
        sale = load_for_update(SALE, backorder.sale_id)
        sale_line = db.session.get(DocumentLine, backorder.sale_line_id)
        cancel_backorder_inner(backorder, sale_line)
        refresh_conversion_state(sale)
        refresh_sale_status(sale)
        db.session.flush()
        return backorder

    return run_atomic(_op)


def list_backorders(filters: BackorderFilters | None = None) -> list[Backorder]:
    filters = filters or BackorderFilters()
    q = db.session.query(Backorder)
    if not filters.include_resolved:
        q = q.filter(Backorder.is_active.is_(True))
    if filters.product_id:
        q = q.filter(Backorder.product_id == filters.product_id)
    if filters.store_id:
        q = q.filter(Backorder.store_id == filters.store_id)
    if filters.sale_id:
        q = q.filter(Backorder.sale_id == filters.sale_id)
    if filters.customer_id:
        q = q.filter(Backorder.customer_id == filters.customer_id)
    if filters.pending_min is not None:
        q = q.filter(Backorder.pending_quantity >= filters.pending_min)
    if filters.pending_max is not None:
        q = q.filter(Backorder.pending_quantity <= filters.pending_max)
    if filters.created_from:
        q = q.filter(Backorder.created_at >= filters.created_from)
    if filters.created_to:
        q = q.filter(Backorder.created_at <= filters.created_to)
    if filters.search:
        like = f"%{filters.search}%"
        q = (
            q.join(Product, Product.id == Backorder.product_id)
            .join(Document, Document.id == Backorder.sale_id)
            .filter(or_(
                Product.sku.ilike(like),
                Product.name.ilike(like),
                Document.document_number.ilike(like),
            ))
        )
    return q.order_by(Backorder.created_at.asc(), Backorder.id.asc()).limit(filters.limit).all()
