# Overview: Document registry: sequence numbers, per-type status machines, creation of originating documents, and conversion lineage.

from __future__ import annotations

from sqlalchemy import update, or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    ValidationError,
    NotFoundError,
    InvalidStateTransitionError,
)
from ..models import Document, DocumentLine, DocumentLink, DocumentSequence, PromissoryNote
from ..time_utils import utcnow
from ..validation import coerce_int
from .catalog_service import (
    require_store,
    require_product,
    require_customer,
    require_vendor,
    require_sales_agent,
)
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .filters import DocumentFilters


QUOTATION = "QUOTATION"
SALE = "SALE"
PURCHASE_ORDER = "PURCHASE_ORDER"
PURCHASE = "PURCHASE"
GOODS_RECEIPT = "GOODS_RECEIPT"
WAYBILL = "WAYBILL"
DELIVERY = "DELIVERY"
INVOICE = "INVOICE"
PROMISSORY_NOTE = "PROMISSORY_NOTE"
RECEIPT = "RECEIPT"
COMMISSION = "COMMISSION"
COMMISSION_PAYOUT = "COMMISSION_PAYOUT"

DOCUMENT_TYPES = {QUOTATION, SALE, PURCHASE_ORDER, PURCHASE, GOODS_RECEIPT, WAYBILL, DELIVERY, INVOICE}

# Types that may be created directly; everything else is the product of a conversion.
ORIGINATING_TYPES = {QUOTATION, SALE, PURCHASE_ORDER, PURCHASE}

DOCUMENT_PREFIXES = {
    QUOTATION: "QT",
    SALE: "SO",
    PURCHASE_ORDER: "PO",
    PURCHASE: "PU",
    GOODS_RECEIPT: "GR",
    WAYBILL: "WB",
    DELIVERY: "DN",
    INVOICE: "INV",
    PROMISSORY_NOTE: "PN",
    RECEIPT: "RC",
    COMMISSION: "CM",
    COMMISSION_PAYOUT: "CPO",
}

INITIAL_STATUS = {
    QUOTATION: "DRAFT",
    SALE: "DRAFT",
    PURCHASE_ORDER: "DRAFT",
    PURCHASE: "PENDING_RECEIPT",
    GOODS_RECEIPT: "POSTED",
    WAYBILL: "ISSUED",
    DELIVERY: "ISSUED",
    INVOICE: "ISSUED",
}

# Forward moves a user may request directly. Everything else (CONVERTED,
# *_DELIVERED, *_RECEIVED, CANCELLED, SALE CONFIRMED) is driven by the
# conversion engine, sales_service.confirm_sale or cancel_document.
MANUAL_TRANSITIONS = {
    QUOTATION: {"DRAFT": {"SENT"}},
    PURCHASE_ORDER: {"DRAFT": {"SENT"}},
    WAYBILL: {"ISSUED": {"IN_TRANSIT"}},
    DELIVERY: {"ISSUED": {"IN_TRANSIT", "DELIVERED"}, "IN_TRANSIT": {"DELIVERED"}},
}

WAYBILL_SALE = "SALE"
WAYBILL_LOAN = "LOAN"
WAYBILL_CONVERSION = "CONVERSION"

SALE_OPEN_STATUSES = {"CONFIRMED", "PARTIALLY_DELIVERED", "FULLY_DELIVERED"}


def next_document_number(document_type: str, prefix: str | None = None, pad: int = 6) -> str:
    """
    Atomically allocate the next document number for a type.

    A single UPDATE ... SET next_number = next_number + 1 on the counter
    row; the row is created on first use. Runs inside the caller's
    transaction, so an aborted caller releases nothing and a committed one
    can never collide with another. Never scans existing documents.
    """
    if not document_type:
        raise ValidationError("document_type is required")
    prefix = prefix or DOCUMENT_PREFIXES.get(document_type, document_type[:3])

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=document_type, next_number=2))
            return f"{prefix}-{1:0{pad}d}"
        except IntegrityError:
            # Another writer created the row first; fall through to the increment.
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return f"{prefix}-{current - 1:0{pad}d}"


def _normalize_type(document_type: str) -> str:
    normalized = (document_type or "").strip().upper()
    if normalized not in DOCUMENT_TYPES and normalized != PROMISSORY_NOTE:
        raise ValidationError("unknown document type", details={"document_type": document_type})
    return normalized


def get_document(document_id: int, document_type: str | None = None) -> Document:
    doc = db.session.get(Document, document_id)
    if doc is None or (document_type and doc.document_type != document_type):
        raise NotFoundError(
            f"{(document_type or 'document').lower()} not found",
            details={"document_id": document_id},
        )
    return doc


def load_for_update(document_type: str, document_id: int) -> Document:
    """Load a document under the write lock, discarding any stale copy in the identity map."""
    doc = (
        lock_for_update(db.session.query(Document).filter_by(id=document_id, document_type=document_type))
        .populate_existing()
        .first()
    )
    if doc is None:
        raise NotFoundError(
            f"{document_type.lower()} not found",
            details={"document_type": document_type, "document_id": document_id},
        )
    return doc


def find_by_idempotency_key(document_type: str, idempotency_key: str | None):
    if not idempotency_key:
        return None
    if document_type == PROMISSORY_NOTE:
        return db.session.query(PromissoryNote).filter_by(idempotency_key=idempotency_key).first()
    return (
        db.session.query(Document)
        .filter_by(document_type=document_type, idempotency_key=idempotency_key)
        .first()
    )


def _parse_quantity(value, field: str = "quantity") -> int:
    quantity = coerce_int(value, field)
    if quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return quantity


def new_document(document_type: str, *, status: str | None = None, lines=(), user_id: int | None = None, **fields) -> Document:
    """
    Create a document and its lines in the current transaction (flush, no commit).

    lines: iterable of dicts with product_id, quantity and optional
    unit_price_cents, source_line_id, fulfilled_quantity.
    """
    doc = Document(
        document_type=document_type,
        document_number=next_document_number(document_type),
        status=status or INITIAL_STATUS[document_type],
        created_by_user_id=user_id,
        **fields,
    )
    total = 0
    for line_number, item in enumerate(lines, start=1):
        quantity = _parse_quantity(item.get("quantity"))
        unit_price = item.get("unit_price_cents")
        if unit_price is None:
            unit_price = require_product(item.get("product_id")).price_cents or 0
        unit_price = coerce_int(unit_price, "unit_price_cents")
        if unit_price < 0:
            raise ValidationError("unit_price_cents cannot be negative")
        line_total = quantity * unit_price
        total += line_total
        doc.lines.append(
            DocumentLine(
                line_number=line_number,
                product_id=item["product_id"],
                quantity=quantity,
                unit_price_cents=unit_price,
                line_total_cents=line_total,
                source_line_id=item.get("source_line_id"),
                converted_quantity=0,
                fulfilled_quantity=item.get("fulfilled_quantity", 0),
                backorder_quantity=0,
            )
        )
    doc.total_cents = total
    db.session.add(doc)
    db.session.flush()
    return doc


def create_document(
    document_type: str,
    *,
    store_id: int | None = None,
    customer_id: int | None = None,
    vendor_id: int | None = None,
    sales_agent_id: int | None = None,
    lines=None,
    notes: str | None = None,
    idempotency_key: str | None = None,
    user_id: int | None = None,
) -> Document:
    """
    Create an originating document (quotation, sale, purchase order, purchase).

    A retried create with the same idempotency_key returns the first
    document unchanged.
    """
    document_type = _normalize_type(document_type)
    if document_type not in ORIGINATING_TYPES:
        raise InvalidStateTransitionError(
            f"{document_type} documents are only created by conversion",
            details={"document_type": document_type},
        )

    existing = find_by_idempotency_key(document_type, idempotency_key)
    if existing is not None:
        return existing

    lines = list(lines or [])
    if not lines:
        raise ValidationError("at least one line is required")

    def _op():
        begin_write_transaction()
        require_store(store_id)
        if document_type in (QUOTATION, SALE):
            require_customer(customer_id)
            if sales_agent_id is not None:
                require_sales_agent(sales_agent_id)
        else:
            require_vendor(vendor_id)
        for item in lines:
            if not isinstance(item, dict):
                raise ValidationError("each line must be an object")
            require_product(item.get("product_id"))

        return new_document(
            document_type,
            store_id=store_id,
            customer_id=customer_id if document_type in (QUOTATION, SALE) else None,
            vendor_id=vendor_id if document_type in (PURCHASE_ORDER, PURCHASE) else None,
            sales_agent_id=sales_agent_id if document_type in (QUOTATION, SALE) else None,
            payment_status="UNPAID" if document_type == SALE else None,
            idempotency_key=idempotency_key,
            notes=notes,
            lines=lines,
            user_id=user_id,
        )

    return run_atomic(_op)


def transition_status(document_id: int, new_status: str) -> Document:
    """Apply a manual forward status move; anything outside MANUAL_TRANSITIONS is rejected."""
    new_status = (new_status or "").strip().upper()

    def _op():
        begin_write_transaction()
        doc = db.session.get(Document, document_id)
        if doc is None:
            raise NotFoundError("document not found", details={"document_id": document_id})
        doc = load_for_update(doc.document_type, document_id)

        allowed = MANUAL_TRANSITIONS.get(doc.document_type, {}).get(doc.status, set())
        if new_status not in allowed:
            raise InvalidStateTransitionError(
                f"cannot move {doc.document_type} from {doc.status} to {new_status}",
                details={"from": doc.status, "to": new_status, "allowed": sorted(allowed)},
            )
        doc.status = new_status
        doc.updated_at = utcnow()
        db.session.flush()
        return doc

    return run_atomic(_op)


def link_documents(source_type: str, source_id: int, target_type: str, target_id: int) -> DocumentLink:
    link = DocumentLink(
        source_document_type=source_type,
        source_document_id=source_id,
        target_document_type=target_type,
        target_document_id=target_id,
    )
    db.session.add(link)
    db.session.flush()
    return link


def has_children(document_type: str, document_id: int, target_type: str | None = None) -> bool:
    q = db.session.query(DocumentLink.id).filter_by(
        source_document_type=document_type,
        source_document_id=document_id,
    )
    if target_type:
        q = q.filter(DocumentLink.target_document_type == target_type)
    return q.first() is not None


def _describe(document_type: str, document_id: int) -> dict:
    if document_type == PROMISSORY_NOTE:
        note = db.session.get(PromissoryNote, document_id)
        number = note.document_number if note else None
        status = note.status if note else None
    else:
        doc = db.session.get(Document, document_id)
        number = doc.document_number if doc else None
        status = doc.status if doc else None
    return {
        "type": document_type,
        "id": document_id,
        "document_number": number,
        "status": status,
    }


def get_lineage(document_type: str, document_id: int) -> dict:
    """
    Lineage view of one document.

    source: the document it was converted from (None when originated).
    converted_to: every direct target, in creation order.
    ancestors: the chain from the immediate source up to the origin.
    """
    document_type = _normalize_type(document_type)
    if document_type == PROMISSORY_NOTE:
        if db.session.get(PromissoryNote, document_id) is None:
            raise NotFoundError("promissory note not found", details={"document_id": document_id})
    else:
        get_document(document_id, document_type)

    converted_to = (
        db.session.query(DocumentLink)
        .filter_by(source_document_type=document_type, source_document_id=document_id)
        .order_by(DocumentLink.id.asc())
        .all()
    )

    ancestors = []
    seen = {(document_type, document_id)}
    current = (document_type, document_id)
    while True:
        parent = (
            db.session.query(DocumentLink)
            .filter_by(target_document_type=current[0], target_document_id=current[1])
            .order_by(DocumentLink.id.asc())
            .first()
        )
        if parent is None:
            break
        key = (parent.source_document_type, parent.source_document_id)
        if key in seen:
            break
        seen.add(key)
        ancestors.append(_describe(*key))
        current = key

    return {
        "document": _describe(document_type, document_id),
        "source": ancestors[0] if ancestors else None,
        "converted_to": [
            _describe(link.target_document_type, link.target_document_id) for link in converted_to
        ],
        "ancestors": ancestors,
    }


def list_documents(filters: DocumentFilters | None = None) -> list[Document]:
    filters = filters or DocumentFilters()
    q = db.session.query(Document)
    if filters.document_type:
        q = q.filter(Document.document_type == filters.document_type)
    if filters.status:
        q = q.filter(Document.status == filters.status)
    if filters.store_id:
        q = q.filter(Document.store_id == filters.store_id)
    if filters.customer_id:
        q = q.filter(Document.customer_id == filters.customer_id)
    if filters.vendor_id:
        q = q.filter(Document.vendor_id == filters.vendor_id)
    if filters.sales_agent_id:
        q = q.filter(Document.sales_agent_id == filters.sales_agent_id)
    if filters.conversion_status:
        q = q.filter(Document.conversion_status == filters.conversion_status)
    if filters.search:
        like = f"%{filters.search}%"
        q = q.filter(or_(Document.document_number.ilike(like), Document.notes.ilike(like)))
    if filters.created_from:
        q = q.filter(Document.created_at >= filters.created_from)
    if filters.created_to:
        q = q.filter(Document.created_at <= filters.created_to)
    return q.order_by(Document.created_at.desc(), Document.id.desc()).limit(filters.limit).all()


def refresh_conversion_state(doc: Document) -> None:
    """Derive conversion_status / is_converted from the lines and bump the document's version."""
    total = sum(line.quantity for line in doc.lines)
    converted = sum(min(line.converted_quantity, line.quantity) for line in doc.lines)
    if converted <= 0:
        doc.conversion_status = "NONE"
    elif converted >= total:
        doc.conversion_status = "FULL"
    else:
        doc.conversion_status = "PARTIAL"
    doc.is_converted = doc.is_converted or converted > 0 or has_children(doc.document_type, doc.id)
    doc.updated_at = utcnow()


def refresh_sale_status(sale: Document) -> None:
    """CONFIRMED / PARTIALLY_DELIVERED / FULLY_DELIVERED from what has physically left stock."""
    if sale.status not in SALE_OPEN_STATUSES:
        return
    total = sum(line.quantity for line in sale.lines)
    fulfilled = sum(min(line.fulfilled_quantity, line.quantity) for line in sale.lines)
    if fulfilled <= 0:
        sale.status = "CONFIRMED"
    elif fulfilled >= total:
        sale.status = "FULLY_DELIVERED"
    else:
        sale.status = "PARTIALLY_DELIVERED"
    sale.updated_at = utcnow()


def cancel_document(document_id: int, reason: str | None = None) -> Document:
    """
    Cancel a document that nothing has been derived from yet.

    Quotations expire; sales and purchase orders become CANCELLED. A sale's
    unpaid commission is cancelled with it. Waybills are reversed through
    conversion_service.cancel_waybill instead.
    """
    def _op():
        begin_write_transaction()
        doc = db.session.get(Document, document_id)
        if doc is None:
            raise NotFoundError("document not found", details={"document_id": document_id})
        doc = load_for_update(doc.document_type, document_id)

        if doc.document_type == QUOTATION:
            if doc.status not in ("DRAFT", "SENT"):
                raise InvalidStateTransitionError(f"cannot cancel quotation in status {doc.status}")
            doc.status = "EXPIRED"
        elif doc.document_type in (SALE, PURCHASE_ORDER):
            cancellable = ("DRAFT", "CONFIRMED") if doc.document_type == SALE else ("DRAFT", "SENT")
            if doc.status not in cancellable:
                raise InvalidStateTransitionError(
                    f"cannot cancel {doc.document_type.lower()} in status {doc.status}",
                    details={"status": doc.status},
                )
            if has_children(doc.document_type, doc.id):
                raise InvalidStateTransitionError(
                    "document has converted children; reverse them first",
                    details={"document_id": doc.id},
                )
            if doc.document_type == SALE:
                if doc.amount_paid_cents:
                    raise InvalidStateTransitionError("sale has receipts; void them first")
                from .commission_service import cancel_commissions_for_sale_inner
                cancel_commissions_for_sale_inner(doc)
            doc.status = "CANCELLED"
        else:
            raise InvalidStateTransitionError(
                f"{doc.document_type} documents cannot be cancelled here",
                details={"document_type": doc.document_type},
            )

        doc.cancelled_at = utcnow()
        doc.updated_at = doc.cancelled_at
        if reason:
            doc.notes = f"{doc.notes}\n{reason}" if doc.notes else reason
        db.session.flush()
        return doc

    return run_atomic(_op)
