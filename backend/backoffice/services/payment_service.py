# Overview: Receipts and promissory notes; the money side a sale is settled or secured with.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import ValidationError, NotFoundError, InvalidStateTransitionError
from ..models import Document, PromissoryNote, Receipt
from ..time_utils import utcnow, normalize_datetime
from ..validation import coerce_int
from .catalog_service import require_customer
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .document_service import (
    SALE,
    PROMISSORY_NOTE,
    RECEIPT,
    find_by_idempotency_key,
    load_for_update,
    next_document_number,
)
from .filters import PromissoryNoteFilters

PAYMENT_METHODS = {"CASH", "CHECK", "MOBILE_MONEY", "BANK"}

OPEN_NOTE_STATUSES = ("OUTSTANDING", "PARTIALLY_RECONCILED", "OVERDUE")


def derive_note_status(face_cents: int, outstanding_cents: int, due_date: datetime, as_of: datetime) -> str:
    if outstanding_cents == 0:
        return "RECONCILED"
    if due_date is not None and due_date < as_of:
        return "OVERDUE"
    if outstanding_cents < face_cents:
        return "PARTIALLY_RECONCILED"
    return "OUTSTANDING"


def _parse_amount(value, field: str = "amount_cents") -> int:
    amount = coerce_int(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be a positive integer (cents)")
    return amount


def _parse_datetime(value, field: str):
    try:
        return normalize_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")


def active_receipts_total(*, promissory_note_id: int | None = None, sale_id: int | None = None, direct_only: bool = False) -> int:
    q = db.session.query(func.coalesce(func.sum(Receipt.amount_cents), 0)).filter(Receipt.is_active.is_(True))
    if promissory_note_id is not None:
        q = q.filter(Receipt.promissory_note_id == promissory_note_id)
    if sale_id is not None:
        q = q.filter(Receipt.sale_id == sale_id)
    if direct_only:
        q = q.filter(Receipt.promissory_note_id.is_(None))
    return int(q.scalar() or 0)


def unsecured_sale_balance(sale: Document) -> int:
    """Sale total not yet covered by a direct receipt or a live promissory note."""
    secured = (
        db.session.query(func.coalesce(func.sum(PromissoryNote.face_amount_cents), 0))
        .filter(PromissoryNote.sale_id == sale.id, PromissoryNote.status != "CANCELLED")
        .scalar()
    )
    paid_direct = active_receipts_total(sale_id=sale.id, direct_only=True)
    return sale.total_cents - int(secured or 0) - paid_direct


def refresh_sale_payment(sale: Document) -> None:
    paid = active_receipts_total(sale_id=sale.id)
    sale.amount_paid_cents = paid
    if paid <= 0:
        sale.payment_status = "UNPAID"
    elif paid >= sale.total_cents:
        sale.payment_status = "PAID"
    else:
        sale.payment_status = "PARTIAL"
    sale.updated_at = utcnow()


def create_note_inner(
    *,
    customer_id: int,
    face_amount_cents: int,
    due_date=None,
    sale_id: int | None = None,
    source_document_type: str | None = None,
    source_document_id: int | None = None,
    idempotency_key: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> PromissoryNote:
    require_customer(customer_id)
    due = _parse_datetime(due_date, "due_date")
    if due is None:
        due = utcnow() + timedelta(days=current_app.config["PROMISSORY_NOTE_TERM_DAYS"])
    note = PromissoryNote(
        document_number=next_document_number(PROMISSORY_NOTE),
        customer_id=customer_id,
        sale_id=sale_id,
        source_document_type=source_document_type,
        source_document_id=source_document_id,
        face_amount_cents=face_amount_cents,
        outstanding_amount_cents=face_amount_cents,
        status="OUTSTANDING",
        due_date=due,
        idempotency_key=idempotency_key,
        notes=notes,
        created_by_user_id=user_id,
    )
    db.session.add(note)
    db.session.flush()
    return note


def create_promissory_note(
    *,
    customer_id: int,
    face_amount_cents,
    due_date=None,
    sale_id: int | None = None,
    idempotency_key: str | None = None,
    notes: str | None = None,
    user_id: int | None = None,
) -> PromissoryNote:
    """
    Issue a promissory note.

    Notes against a sale go through the conversion engine so the face
    amount is bounded by the sale's unsecured balance and lineage is kept.
    """
    face = _parse_amount(face_amount_cents, "face_amount_cents")
    if sale_id is not None:
        from .conversion_service import convert
        sale = db.session.get(Document, sale_id)
        if sale is not None and sale.customer_id != customer_id:
            raise ValidationError("sale belongs to a different customer")
        return convert(
            SALE,
            sale_id,
            PROMISSORY_NOTE,
            {
                "face_amount_cents": face,
                "due_date": due_date,
                "idempotency_key": idempotency_key,
                "notes": notes,
            },
            user_id=user_id,
        )

    existing = find_by_idempotency_key(PROMISSORY_NOTE, idempotency_key)
    if existing is not None:
        return existing

    def _op():
        begin_write_transaction()
        return create_note_inner(
            customer_id=customer_id,
            face_amount_cents=face,
            due_date=due_date,
            idempotency_key=idempotency_key,
            notes=notes,
            user_id=user_id,
        )

    return run_atomic(_op)


def _load_note_for_update(note_id: int) -> PromissoryNote:
    note = (
        lock_for_update(db.session.query(PromissoryNote).filter_by(id=note_id))
        .populate_existing()
        .first()
    )
    if note is None:
        raise NotFoundError("promissory note not found", details={"promissory_note_id": note_id})
    return note


def cancel_promissory_note(note_id: int) -> PromissoryNote:
    def _op():
        begin_write_transaction()
        note = _load_note_for_update(note_id)
        if note.status not in OPEN_NOTE_STATUSES:
            raise InvalidStateTransitionError(
                f"cannot cancel a promissory note in status {note.status}",
                details={"status": note.status},
            )
        if active_receipts_total(promissory_note_id=note.id) > 0:
            raise InvalidStateTransitionError("promissory note has receipts; void them first")
        note.status = "CANCELLED"
        note.cancelled_at = utcnow()
        db.session.flush()
        return note

    return run_atomic(_op)


def list_promissory_notes(filters: PromissoryNoteFilters | None = None) -> list[PromissoryNote]:
    filters = filters or PromissoryNoteFilters()
    q = db.session.query(PromissoryNote)
    if filters.customer_id:
        q = q.filter(PromissoryNote.customer_id == filters.customer_id)
    if filters.sale_id:
        q = q.filter(PromissoryNote.sale_id == filters.sale_id)
    if filters.status:
        q = q.filter(PromissoryNote.status == filters.status)
    if filters.due_before:
        q = q.filter(PromissoryNote.due_date <= filters.due_before)
    return q.order_by(PromissoryNote.due_date.asc(), PromissoryNote.id.asc()).limit(filters.limit).all()


def create_receipt(
    *,
    customer_id: int,
    amount_cents,
    sale_id: int | None = None,
    promissory_note_id: int | None = None,
    payment_method: str = "CASH",
    reference_number: str | None = None,
    received_at=None,
    user_id: int | None = None,
) -> Receipt:
    """
    Record money received.

    A receipt against a note may not take the note's receipts past its face
    amount. A receipt tied to a sale (directly or through its note) updates
    the sale's payment status in the same transaction.
    """
    amount = _parse_amount(amount_cents)
    method = (payment_method or "CASH").strip().upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError("invalid payment method", details={"payment_method": payment_method})

    def _op():
        begin_write_transaction()
        require_customer(customer_id)

        note = None
        target_sale_id = sale_id
        if promissory_note_id is not None:
            note = _load_note_for_update(promissory_note_id)
            if note.status == "CANCELLED":
                raise InvalidStateTransitionError("promissory note is cancelled")
            if note.customer_id != customer_id:
                raise ValidationError("promissory note belongs to a different customer")
            if target_sale_id is not None and note.sale_id is not None and note.sale_id != target_sale_id:
                raise ValidationError("promissory note belongs to a different sale")
            target_sale_id = target_sale_id or note.sale_id
            already = active_receipts_total(promissory_note_id=note.id)
            if already + amount > note.face_amount_cents:
                raise ValidationError(
                    "receipt exceeds promissory note face amount",
                    details={
                        "face_amount_cents": note.face_amount_cents,
                        "received_cents": already,
                        "amount_cents": amount,
                    },
                )

        sale = None
        if target_sale_id is not None:
            sale = load_for_update(SALE, target_sale_id)
            if sale.status in ("DRAFT", "CANCELLED"):
                raise InvalidStateTransitionError(
                    f"cannot take payment on a sale in status {sale.status}",
                    details={"status": sale.status},
                )
            if sale.customer_id != customer_id:
                raise ValidationError("sale belongs to a different customer")

        receipt = Receipt(
            document_number=next_document_number(RECEIPT),
            customer_id=customer_id,
            sale_id=target_sale_id,
            promissory_note_id=note.id if note is not None else None,
            amount_cents=amount,
            payment_method=method,
            reference_number=reference_number,
            received_at=_parse_datetime(received_at, "received_at") or utcnow(),
            created_by_user_id=user_id,
        )
        db.session.add(receipt)
        db.session.flush()
        if sale is not None:
            refresh_sale_payment(sale)
        return receipt

    return run_atomic(_op)


def void_receipt(receipt_id: int, reason: str | None = None) -> Receipt:
    """
    Deactivate a receipt.

    A note the receipt paid into gets its outstanding balance and status
    recomputed in the same transaction, so a RECONCILED note reopens.
    """
    def _op():
        begin_write_transaction()
        receipt = (
            lock_for_update(db.session.query(Receipt).filter_by(id=receipt_id))
            .populate_existing()
            .first()
        )
        if receipt is None:
            raise NotFoundError("receipt not found", details={"receipt_id": receipt_id})
        if not receipt.is_active:
            raise InvalidStateTransitionError("receipt already voided")
        receipt.is_active = False
        receipt.voided_at = utcnow()
        receipt.void_reason = reason
        db.session.flush()
        if receipt.promissory_note_id is not None:
            note = _load_note_for_update(receipt.promissory_note_id)
            if note.status != "CANCELLED":
                outstanding = note.face_amount_cents - active_receipts_total(promissory_note_id=note.id)
                # Excess receipts are left for the reconciliation job to report.
                if outstanding >= 0:
                    note.outstanding_amount_cents = outstanding
                    note.status = derive_note_status(note.face_amount_cents, outstanding, note.due_date, utcnow())
                    note.last_reconciled_at = utcnow()
                    db.session.flush()
        if receipt.sale_id is not None:
            refresh_sale_payment(load_for_update(SALE, receipt.sale_id))
        return receipt

    return run_atomic(_op)
