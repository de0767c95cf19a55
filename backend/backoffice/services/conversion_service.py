# Overview: Conversion engine; every multi-record document transition runs here as one all-or-nothing transaction.

from __future__ import annotations

from collections import OrderedDict

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    ValidationError,
    InvalidStateTransitionError,
    AlreadyConvertedError,
    RemainingQuantityExceededError,
)
from ..models import Backorder, Document, DocumentLine, Product
from ..time_utils import utcnow
from .backorder_service import create_backorder, reduce_backorder, cancel_backorder_inner
from .catalog_service import require_customer, require_store, require_product, require_sales_agent
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .document_service import (
    QUOTATION,
    SALE,
    PURCHASE_ORDER,
    PURCHASE,
    GOODS_RECEIPT,
    WAYBILL,
    DELIVERY,
    INVOICE,
    PROMISSORY_NOTE,
    WAYBILL_SALE,
    WAYBILL_LOAN,
    WAYBILL_CONVERSION,
    find_by_idempotency_key,
    has_children,
    link_documents,
    load_for_update,
    new_document,
    refresh_conversion_state,
    refresh_sale_status,
    _parse_quantity,
)
from .inventory_service import receive_stock_inner
from .ledger_service import SALE_DISPATCH, LOAN_DISPATCH, CONVERSION_REVERSAL, get_balance, post_entry
from .payment_service import create_note_inner, unsecured_sale_balance
"""
Conversion invariants:
- The target document, source conversion state, ledger postings, back-orders
  and the lineage link are written in one transaction or not at all.
- The source is read under the write lock; remaining quantities are evaluated
  only after the lock is held, so two conversions of the same source
  serialize and the second sees the first's result.
- Ledger postings are keyed (targetType:targetId:productId); a retried
  conversion with the same idempotency_key returns the first target.
- Stock shortage on a sale dispatch is not an error: the available part is
  posted and the rest becomes a back-order.
"""


def _line_requests(source: Document, payload: dict, available) -> list[tuple[DocumentLine, int]]:
    """
    Map requested quantities onto source lines.

    payload["lines"]: optional list of {line_id | product_id, quantity}.
    Without it every line with something available is taken in full.
    available(line) -> quantity still convertible on that line.
    payload["clip_to_remaining"]: clip over-requests instead of rejecting.
    """
    clip = bool(payload.get("clip_to_remaining"))
    requested_lines = payload.get("lines")

    if not requested_lines:
        result = [(line, available(line)) for line in source.lines if available(line) > 0]
        if not result:
            raise AlreadyConvertedError(
                f"{source.document_type.lower()} {source.document_number} has nothing left to convert",
                details={"document_id": source.id},
            )
        return result

    if not isinstance(requested_lines, list):
        raise ValidationError("lines must be a list")

    # Running allowance per source line, shared by requests naming the same line or product.
    remaining = OrderedDict((line.id, available(line)) for line in source.lines)
    by_id = {line.id: line for line in source.lines}
    allocation: "OrderedDict[int, int]" = OrderedDict()

    for request_line in requested_lines:
        if not isinstance(request_line, dict):
            raise ValidationError("each line must be an object")
        quantity = _parse_quantity(request_line.get("quantity"))

        if request_line.get("line_id") is not None:
            line = by_id.get(request_line["line_id"])
            if line is None:
                raise ValidationError("line does not belong to source document", details={"line_id": request_line["line_id"]})
            candidates = [line]
        else:
            product_id = request_line.get("product_id")
            candidates = [line for line in source.lines if line.product_id == product_id]
            if not candidates:
                raise ValidationError("product is not on source document", details={"product_id": product_id})

        capacity = sum(remaining[line.id] for line in candidates)
        if quantity > capacity:
            if not clip:
                raise RemainingQuantityExceededError(
                    "requested quantity exceeds remaining quantity",
                    details={
                        "line_id": request_line.get("line_id"),
                        "product_id": candidates[0].product_id,
                        "requested": quantity,
                        "remaining": capacity,
                    },
                )
            quantity = capacity

        for line in candidates:
            if quantity <= 0:
                break
            take = min(quantity, remaining[line.id])
            if take <= 0:
                continue
            remaining[line.id] -= take
            allocation[line.id] = allocation.get(line.id, 0) + take
            quantity -= take

    result = [(by_id[line_id], qty) for line_id, qty in allocation.items() if qty > 0]
    if not result:
        raise AlreadyConvertedError(
            f"{source.document_type.lower()} {source.document_number} has nothing left to convert",
            details={"document_id": source.id},
        )
    return result


def _copy_line(line: DocumentLine, quantity: int, **extra) -> dict:
    item = {
        "product_id": line.product_id,
        "quantity": quantity,
        "unit_price_cents": line.unit_price_cents,
        "source_line_id": line.id,
    }
    item.update(extra)
    return item


def _stock_tracked(product_id: int) -> bool:
    return bool(db.session.get(Product, product_id).is_stock_tracked)


# =============================================================================
# Handlers: (source, payload, user_id) -> target
# =============================================================================

def _quotation_to_sale(quotation: Document, payload: dict, user_id):
    if quotation.status == "CONVERTED":
        raise AlreadyConvertedError(
            "quotation already converted",
            details={"document_id": quotation.id},
        )
    if quotation.status != "SENT":
        raise InvalidStateTransitionError(
            f"quotation must be SENT to convert (is {quotation.status})",
            details={"status": quotation.status},
        )

    sales_agent_id = payload.get("sales_agent_id", quotation.sales_agent_id)
    if sales_agent_id is not None:
        require_sales_agent(sales_agent_id)

    sale = new_document(
        SALE,
        store_id=quotation.store_id,
        customer_id=quotation.customer_id,
        sales_agent_id=sales_agent_id,
        payment_status="UNPAID",
        source_document_type=QUOTATION,
        source_document_id=quotation.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes") or quotation.notes,
        lines=[_copy_line(line, line.quantity) for line in quotation.lines],
        user_id=user_id,
    )
    for line in quotation.lines:
        line.converted_quantity = line.quantity
    quotation.status = "CONVERTED"
    refresh_conversion_state(quotation)
    return sale


def _sale_to_waybill(sale: Document, payload: dict, user_id):
    if sale.status == "FULLY_DELIVERED" or (sale.status in ("CONFIRMED", "PARTIALLY_DELIVERED") and sale.conversion_status == "FULL"):
        raise AlreadyConvertedError(
            "sale already fully dispatched",
            details={"document_id": sale.id},
        )
    if sale.status not in ("CONFIRMED", "PARTIALLY_DELIVERED"):
        raise InvalidStateTransitionError(
            f"sale must be CONFIRMED to dispatch (is {sale.status})",
            details={"status": sale.status},
        )

    requests = _line_requests(
        sale,
        payload,
        lambda line: max(0, line.quantity - max(line.converted_quantity, line.fulfilled_quantity)),
    )

    waybill = new_document(
        WAYBILL,
        store_id=sale.store_id,
        customer_id=sale.customer_id,
        waybill_type=WAYBILL_SALE,
        source_document_type=SALE,
        source_document_id=sale.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=[_copy_line(line, qty) for line, qty in requests],
        user_id=user_id,
    )
    waybill_lines = {line.source_line_id: line for line in waybill.lines}

    # Stock is shared by every line of the same product; allocate in line order.
    available = {}
    dispatched = OrderedDict()
    shortfalls = []
    for sale_line, qty in requests:
        if _stock_tracked(sale_line.product_id):
            if sale_line.product_id not in available:
                available[sale_line.product_id] = max(0, get_balance(sale_line.product_id, sale.store_id))
            supplied = min(qty, available[sale_line.product_id])
            available[sale_line.product_id] -= supplied
            if supplied:
                dispatched[sale_line.product_id] = dispatched.get(sale_line.product_id, 0) + supplied
        else:
            supplied = qty
        shortfall = qty - supplied

        sale_line.converted_quantity += qty
        sale_line.fulfilled_quantity += supplied
        sale_line.backorder_quantity += shortfall
        waybill_lines[sale_line.id].fulfilled_quantity = supplied
        if shortfall:
            shortfalls.append((sale_line, shortfall))

    for product_id, quantity in dispatched.items():
        post_entry(
            product_id=product_id,
            store_id=sale.store_id,
            delta=-quantity,
            reason=SALE_DISPATCH,
            source_document_type=WAYBILL,
            source_document_id=waybill.id,
            user_id=user_id,
        )

    for sale_line, shortfall in shortfalls:
        create_backorder(sale=sale, sale_line=sale_line, quantity=shortfall, waybill=waybill)
    if shortfalls:
        current_app.logger.warning(
            "Sale %s dispatched short; %d back-order(s) raised on waybill %s",
            sale.document_number, len(shortfalls), waybill.document_number,
        )

    refresh_conversion_state(sale)
    refresh_sale_status(sale)
    return waybill


def _sale_to_invoice(sale: Document, payload: dict, user_id):
    if sale.status in ("DRAFT", "CANCELLED"):
        raise InvalidStateTransitionError(
            f"cannot invoice a sale in status {sale.status}",
            details={"status": sale.status},
        )
    if has_children(SALE, sale.id, INVOICE):
        raise AlreadyConvertedError("sale already invoiced", details={"document_id": sale.id})

    invoice = new_document(
        INVOICE,
        store_id=sale.store_id,
        customer_id=sale.customer_id,
        sales_agent_id=sale.sales_agent_id,
        source_document_type=SALE,
        source_document_id=sale.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=[_copy_line(line, line.quantity) for line in sale.lines],
        user_id=user_id,
    )
    sale.is_converted = True
    sale.updated_at = utcnow()
    return invoice


def _sale_to_promissory_note(sale: Document, payload: dict, user_id):
    if sale.status in ("DRAFT", "CANCELLED"):
        raise InvalidStateTransitionError(
            f"cannot issue a promissory note for a sale in status {sale.status}",
            details={"status": sale.status},
        )
    unsecured = unsecured_sale_balance(sale)
    if unsecured <= 0:
        raise AlreadyConvertedError(
            "sale balance is already fully secured or paid",
            details={"document_id": sale.id},
        )

    face = payload.get("face_amount_cents")
    face = unsecured if face is None else _parse_quantity(face, "face_amount_cents")
    if face > unsecured:
        if not payload.get("clip_to_remaining"):
            raise RemainingQuantityExceededError(
                "face amount exceeds the sale's unsecured balance",
                details={"requested": face, "remaining": unsecured},
            )
        face = unsecured

    note = create_note_inner(
        customer_id=sale.customer_id,
        face_amount_cents=face,
        due_date=payload.get("due_date"),
        sale_id=sale.id,
        source_document_type=SALE,
        source_document_id=sale.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        user_id=user_id,
    )
    sale.is_converted = True
    sale.updated_at = utcnow()
    return note


def _waybill_to_delivery(waybill: Document, payload: dict, user_id):
    if waybill.waybill_type != WAYBILL_SALE:
        raise InvalidStateTransitionError(
            f"{(waybill.waybill_type or '').lower()} waybills are not delivered against",
            details={"waybill_type": waybill.waybill_type},
        )
    if waybill.status == "DELIVERED":
        raise AlreadyConvertedError("waybill already fully delivered", details={"document_id": waybill.id})
    if waybill.status not in ("ISSUED", "IN_TRANSIT"):
        raise InvalidStateTransitionError(
            f"cannot deliver against a waybill in status {waybill.status}",
            details={"status": waybill.status},
        )

    # Only what has actually left stock can be delivered.
    requests = _line_requests(
        waybill,
        payload,
        lambda line: line.fulfilled_quantity - line.converted_quantity,
    )
    delivery = new_document(
        DELIVERY,
        store_id=waybill.store_id,
        customer_id=waybill.customer_id,
        source_document_type=WAYBILL,
        source_document_id=waybill.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=[_copy_line(line, qty, fulfilled_quantity=qty) for line, qty in requests],
        user_id=user_id,
    )
    for line, qty in requests:
        line.converted_quantity += qty

    refresh_conversion_state(waybill)
    if waybill.conversion_status == "FULL":
        waybill.status = "DELIVERED"
    return delivery


def _loan_to_conversion_waybill(loan: Document, payload: dict, user_id):
    """
    Attribute loaned goods to a sale.

    Back-orders on the matching sale lines are reduced first, then the
    sale's undispatched quantity. No stock moves: the goods left on the loan.
    """
    if loan.waybill_type != WAYBILL_LOAN:
        raise InvalidStateTransitionError(
            "only loan waybills convert into conversion waybills",
            details={"waybill_type": loan.waybill_type},
        )
    if loan.status == "CANCELLED":
        raise InvalidStateTransitionError("loan waybill is cancelled", details={"document_id": loan.id})
    sale_id = payload.get("sale_id")
    if not sale_id:
        raise ValidationError("sale_id is required to convert a loan")

    sale = load_for_update(SALE, sale_id)
    if sale.status not in ("CONFIRMED", "PARTIALLY_DELIVERED"):
        raise InvalidStateTransitionError(
            f"loan goods can only be attributed to an open confirmed sale (is {sale.status})",
            details={"sale_id": sale.id, "status": sale.status},
        )
    if sale.store_id != loan.store_id:
        raise ValidationError("loan and sale belong to different stores")

    requests = _line_requests(
        loan,
        payload,
        lambda line: line.fulfilled_quantity - line.converted_quantity,
    )

    attributions = []
    for loan_line, qty in requests:
        sale_lines = [line for line in sale.lines if line.product_id == loan_line.product_id]
        capacity = sum(line.backorder_quantity + line.remaining_quantity for line in sale_lines)
        if qty > capacity:
            raise RemainingQuantityExceededError(
                "loaned quantity exceeds what the sale still owes",
                details={"product_id": loan_line.product_id, "requested": qty, "remaining": capacity},
            )

        left = qty
        for sale_line in sale_lines:
            if left <= 0:
                break
            backorders = (
                lock_for_update(
                    db.session.query(Backorder).filter_by(sale_line_id=sale_line.id, is_active=True)
                )
                .order_by(Backorder.created_at.asc(), Backorder.id.asc())
                .populate_existing()
                .all()
            )
            for backorder in backorders:
                if left <= 0:
                    break
                take = min(left, backorder.pending_quantity)
                reduce_backorder(backorder, take, sale_line)
                left -= take
            if left > 0 and sale_line.remaining_quantity > 0:
                take = min(left, sale_line.remaining_quantity)
                sale_line.converted_quantity += take
                sale_line.fulfilled_quantity += take
                left -= take

        loan_line.converted_quantity += qty
        attributions.append(_copy_line(loan_line, qty, fulfilled_quantity=qty))

    conversion = new_document(
        WAYBILL,
        store_id=loan.store_id,
        customer_id=sale.customer_id,
        waybill_type=WAYBILL_CONVERSION,
        source_document_type=WAYBILL,
        source_document_id=loan.id,
        reference_document_id=sale.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=attributions,
        user_id=user_id,
    )
    link_documents(SALE, sale.id, WAYBILL, conversion.id)

    refresh_conversion_state(loan)
    if loan.conversion_status == "FULL" and loan.status in ("ISSUED", "IN_TRANSIT"):
        loan.status = "DELIVERED"
    refresh_conversion_state(sale)
    refresh_sale_status(sale)
    return conversion


def _purchase_order_to_purchase(order: Document, payload: dict, user_id):
    if order.status == "CONVERTED":
        raise AlreadyConvertedError("purchase order already converted", details={"document_id": order.id})
    if order.status != "SENT":
        raise InvalidStateTransitionError(
            f"purchase order must be SENT to convert (is {order.status})",
            details={"status": order.status},
        )

    requests = _line_requests(order, payload, lambda line: line.remaining_quantity)
    purchase = new_document(
        PURCHASE,
        store_id=order.store_id,
        vendor_id=order.vendor_id,
        source_document_type=PURCHASE_ORDER,
        source_document_id=order.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=[_copy_line(line, qty) for line, qty in requests],
        user_id=user_id,
    )
    for line, qty in requests:
        line.converted_quantity += qty

    refresh_conversion_state(order)
    if order.conversion_status == "FULL":
        order.status = "CONVERTED"
    return purchase


def _purchase_to_goods_receipt(purchase: Document, payload: dict, user_id):
    if purchase.status == "FULLY_RECEIVED":
        raise AlreadyConvertedError("purchase already fully received", details={"document_id": purchase.id})
    if purchase.status not in ("PENDING_RECEIPT", "PARTIALLY_RECEIVED"):
        raise InvalidStateTransitionError(
            f"cannot receive against a purchase in status {purchase.status}",
            details={"status": purchase.status},
        )

    requests = _line_requests(purchase, payload, lambda line: line.remaining_quantity)
    receipt = new_document(
        GOODS_RECEIPT,
        store_id=purchase.store_id,
        vendor_id=purchase.vendor_id,
        source_document_type=PURCHASE,
        source_document_id=purchase.id,
        idempotency_key=payload.get("idempotency_key"),
        notes=payload.get("notes"),
        lines=[_copy_line(line, qty, fulfilled_quantity=qty) for line, qty in requests],
        user_id=user_id,
    )

    received = OrderedDict()
    for line, qty in requests:
        line.converted_quantity += qty
        line.fulfilled_quantity += qty
        if _stock_tracked(line.product_id):
            received[line.product_id] = received.get(line.product_id, 0) + qty

    for product_id, quantity in received.items():
        _entry, resolved = receive_stock_inner(
            product_id=product_id,
            store_id=purchase.store_id,
            quantity=quantity,
            source_document_type=GOODS_RECEIPT,
            source_document_id=receipt.id,
            user_id=user_id,
        )
        if resolved:
            current_app.logger.info(
                "Goods receipt %s resolved %d back-order(s) for product %s",
                receipt.document_number, len(resolved), product_id,
            )

    refresh_conversion_state(purchase)
    purchase.status = "FULLY_RECEIVED" if purchase.conversion_status == "FULL" else "PARTIALLY_RECEIVED"
    return receipt


CONVERSIONS = {
    (QUOTATION, SALE): _quotation_to_sale,
    (SALE, WAYBILL): _sale_to_waybill,
    (SALE, INVOICE): _sale_to_invoice,
    (SALE, PROMISSORY_NOTE): _sale_to_promissory_note,
    (WAYBILL, DELIVERY): _waybill_to_delivery,
    (WAYBILL, WAYBILL): _loan_to_conversion_waybill,
    (PURCHASE_ORDER, PURCHASE): _purchase_order_to_purchase,
    (PURCHASE, GOODS_RECEIPT): _purchase_to_goods_receipt,
}


def _same_source(target, source_type: str, source_id: int, idempotency_key: str):
    """A replayed key must come from the source that first used it."""
    if target.source_document_type != source_type or target.source_document_id != source_id:
        raise ValidationError(
            "idempotency_key already used by a conversion from another document",
            details={
                "idempotency_key": idempotency_key,
                "source_document_type": target.source_document_type,
                "source_document_id": target.source_document_id,
            },
        )
    return target


def convert(
    source_type: str,
    source_id: int,
    target_type: str,
    payload: dict | None = None,
    user_id: int | None = None,
):
    """
    Derive a target document from a source document.

    Returns the target (a Document, or a PromissoryNote for
    SALE -> PROMISSORY_NOTE). A payload idempotency_key that already names
    a target of this type returns that target unchanged.
    """
    source_type = (source_type or "").strip().upper()
    target_type = (target_type or "").strip().upper()
    payload = payload or {}

    handler = CONVERSIONS.get((source_type, target_type))
    if handler is None:
        raise InvalidStateTransitionError(
            f"unsupported conversion {source_type} -> {target_type}",
            details={"source_type": source_type, "target_type": target_type},
        )

    idempotency_key = payload.get("idempotency_key")
    existing = find_by_idempotency_key(target_type, idempotency_key)
    if existing is not None:
        return _same_source(existing, source_type, source_id, idempotency_key)

    def _op():
        begin_write_transaction()
        source = load_for_update(source_type, source_id)
        target = handler(source, payload, user_id)
        link_documents(source_type, source.id, target_type, target.id)
        db.session.flush()
        return target

    try:
        target = run_atomic(_op)
    except IntegrityError:
        # A concurrent request with the same idempotency key committed first.
        existing = find_by_idempotency_key(target_type, idempotency_key)
        if existing is not None:
            return _same_source(existing, source_type, source_id, idempotency_key)
        raise

    current_app.logger.info(
        "Converted %s %s -> %s %s",
        source_type, source_id, target_type, target.document_number,
    )
    return target


def issue_loan_waybill(
    *,
    store_id: int,
    customer_id: int,
    lines,
    idempotency_key: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> Document:
    """
    Send goods to a customer on loan.

    Posts LOAN_DISPATCH for the full quantity. A loan never creates
    back-orders: short stock rejects the whole waybill.
    """
    existing = find_by_idempotency_key(WAYBILL, idempotency_key)
    if existing is not None:
        return existing
    lines = list(lines or [])
    if not lines:
        raise ValidationError("at least one line is required")

    def _op():
        begin_write_transaction()
        require_store(store_id)
        require_customer(customer_id)

        needed = OrderedDict()
        for item in lines:
            if not isinstance(item, dict):
                raise ValidationError("each line must be an object")
            product = require_product(item.get("product_id"))
            quantity = _parse_quantity(item.get("quantity"))
            if not product.is_stock_tracked:
                raise ValidationError("only stock-tracked products can be loaned", details={"product_id": product.id})
            needed[product.id] = needed.get(product.id, 0) + quantity

        for product_id, quantity in needed.items():
            on_hand = get_balance(product_id, store_id)
            if on_hand < quantity:
                raise ValidationError(
                    "insufficient stock for loan",
                    details={"product_id": product_id, "on_hand": on_hand, "requested": quantity},
                )

        waybill = new_document(
            WAYBILL,
            store_id=store_id,
            customer_id=customer_id,
            waybill_type=WAYBILL_LOAN,
            idempotency_key=idempotency_key,
            notes=notes,
            lines=[dict(item, fulfilled_quantity=_parse_quantity(item.get("quantity"))) for item in lines],
            user_id=user_id,
        )
        for product_id, quantity in needed.items():
            post_entry(
                product_id=product_id,
                store_id=store_id,
                delta=-quantity,
                reason=LOAN_DISPATCH,
                source_document_type=WAYBILL,
                source_document_id=waybill.id,
                user_id=user_id,
            )
        return waybill

    return run_atomic(_op)


def cancel_waybill(waybill_id: int, user_id: int | None = None, reason: str | None = None) -> Document:
    """
    Reverse a sale or loan waybill.

    Posts a CONVERSION_REVERSAL for everything that left stock, cancels the
    back-orders it raised and releases the sale lines. Refused once
    anything has been delivered or converted from the waybill.
    """
    def _op():
        begin_write_transaction()
        waybill = load_for_update(WAYBILL, waybill_id)
        if waybill.status == "CANCELLED":
            raise InvalidStateTransitionError("waybill already cancelled", details={"document_id": waybill.id})
        if waybill.waybill_type == WAYBILL_CONVERSION:
            raise InvalidStateTransitionError("conversion waybills cannot be reversed")
        if any(line.converted_quantity > 0 for line in waybill.lines) or has_children(WAYBILL, waybill.id):
            raise InvalidStateTransitionError(
                "waybill has deliveries or conversions; reverse them first",
                details={"document_id": waybill.id},
            )

        returned = OrderedDict()
        for line in waybill.lines:
            if line.fulfilled_quantity > 0:
                returned[line.product_id] = returned.get(line.product_id, 0) + line.fulfilled_quantity
        for product_id, quantity in returned.items():
            post_entry(
                product_id=product_id,
                store_id=waybill.store_id,
                delta=quantity,
                reason=CONVERSION_REVERSAL,
                source_document_type=WAYBILL,
                source_document_id=waybill.id,
                idempotency_key=f"WAYBILL-REVERSAL:{waybill.id}:{product_id}",
                note=reason,
                user_id=user_id,
            )

        if waybill.waybill_type == WAYBILL_SALE:
            sale = load_for_update(SALE, waybill.source_document_id)
            sale_lines = {line.id: line for line in sale.lines}
            pending = (
                lock_for_update(db.session.query(Backorder).filter_by(waybill_id=waybill.id, is_active=True))
                .populate_existing()
                .all()
            )
            for backorder in pending:
                cancel_backorder_inner(backorder, sale_lines[backorder.sale_line_id], release_waybill=False)
            for line in waybill.lines:
                sale_line = sale_lines[line.source_line_id]
                # Pending back-orders were released above. Back-orders settled from
                # loaned goods stay attributed to the sale; they never left stock here.
                sale_line.converted_quantity = max(0, sale_line.converted_quantity - line.fulfilled_quantity)
                sale_line.fulfilled_quantity = max(0, sale_line.fulfilled_quantity - line.fulfilled_quantity)
            refresh_conversion_state(sale)
            refresh_sale_status(sale)

        waybill.status = "CANCELLED"
        waybill.cancelled_at = utcnow()
        waybill.updated_at = waybill.cancelled_at
        db.session.flush()
        current_app.logger.info("Waybill %s reversed", waybill.document_number)
        return waybill

    return run_atomic(_op)
