"""
Receipts, promissory notes and the reconciliation job.
"""

from datetime import datetime, timedelta

import pytest

from backoffice.errors import InvalidStateTransitionError, ValidationError
from backoffice.models import Document, PromissoryNote, Receipt
from backoffice.services import payment_service, reconciliation_service
from backoffice.services.reconciliation_service import derive_note_status
from backoffice.time_utils import utcnow


def _note(customer, face=1000, **kwargs):
    return payment_service.create_promissory_note(customer_id=customer.id, face_amount_cents=face, **kwargs)


def _pay(customer, amount, **kwargs):
    return payment_service.create_receipt(customer_id=customer.id, amount_cents=amount, **kwargs)


class TestDeriveNoteStatus:
    def test_statuses(self):
        now = datetime(2026, 5, 1)
        later = now + timedelta(days=10)
        earlier = now - timedelta(days=10)

        assert derive_note_status(1000, 0, earlier, now) == "RECONCILED"
        assert derive_note_status(1000, 600, earlier, now) == "OVERDUE"
        assert derive_note_status(1000, 600, later, now) == "PARTIALLY_RECONCILED"
        assert derive_note_status(1000, 1000, later, now) == "OUTSTANDING"


class TestReconcile:
    def test_partial_then_full(self, db_session, customer):
        note = _note(customer)
        _pay(customer, 400, promissory_note_id=note.id)

        result = reconciliation_service.reconcile()
        note = db_session.get(PromissoryNote, note.id)

        assert result.reconciled_count == 1
        assert result.errors == []
        assert note.outstanding_amount_cents == 600
        assert note.status == "PARTIALLY_RECONCILED"
        assert note.last_reconciled_at is not None

        _pay(customer, 600, promissory_note_id=note.id)
        reconciliation_service.reconcile()
        db_session.expire_all()
        note = db_session.get(PromissoryNote, note.id)

        assert note.outstanding_amount_cents == 0
        assert note.status == "RECONCILED"

        # Closed notes are not revisited
        assert reconciliation_service.reconcile().reconciled_count == 0

    def test_past_due_note_is_overdue(self, db_session, customer):
        note = _note(customer, due_date="2020-01-01T00:00:00Z")
        _pay(customer, 100, promissory_note_id=note.id)

        reconciliation_service.reconcile()
        note = db_session.get(PromissoryNote, note.id)

        assert note.status == "OVERDUE"
        assert note.outstanding_amount_cents == 900

    def test_as_of_controls_overdue(self, db_session, customer):
        note = _note(customer)

        reconciliation_service.reconcile(as_of=utcnow() + timedelta(days=365))
        note = db_session.get(PromissoryNote, note.id)

        assert note.status == "OVERDUE"

        # Overdue notes are still open: paying in full reconciles them
        _pay(customer, 1000, promissory_note_id=note.id)
        reconciliation_service.reconcile()
        db_session.expire_all()
        assert db_session.get(PromissoryNote, note.id).status == "RECONCILED"

    def test_excess_receipts_fail_only_that_note(self, db_session, customer):
        broken = _note(customer, face=1000)
        healthy = _note(customer, face=500)
        db_session.add(Receipt(
            document_number="RC-LEGACY-1",
            customer_id=customer.id,
            promissory_note_id=broken.id,
            amount_cents=1200,
            received_at=utcnow(),
        ))
        db_session.commit()
        _pay(customer, 200, promissory_note_id=healthy.id)

        result = reconciliation_service.reconcile()
        db_session.expire_all()
        broken = db_session.get(PromissoryNote, broken.id)
        healthy = db_session.get(PromissoryNote, healthy.id)

        assert result.reconciled_count == 1
        assert len(result.errors) == 1
        assert result.errors[0]["promissory_note_id"] == broken.id
        assert result.errors[0]["type"] == "ValidationError"
        assert broken.outstanding_amount_cents == 1000
        assert broken.status == "OUTSTANDING"
        assert healthy.outstanding_amount_cents == 300
        assert result.to_dict()["reconciled_count"] == 1

    def test_voided_receipts_are_not_counted(self, db_session, customer):
        note = _note(customer)
        receipt = _pay(customer, 400, promissory_note_id=note.id)
        reconciliation_service.reconcile()

        payment_service.void_receipt(receipt.id, reason="bounced cheque")
        reconciliation_service.reconcile()
        db_session.expire_all()
        note = db_session.get(PromissoryNote, note.id)

        assert note.outstanding_amount_cents == 1000
        assert note.status == "OUTSTANDING"

    def test_voiding_a_receipt_reopens_a_reconciled_note(self, db_session, customer):
        note = _note(customer)
        receipt = _pay(customer, 1000, promissory_note_id=note.id)
        reconciliation_service.reconcile()
        assert db_session.get(PromissoryNote, note.id).status == "RECONCILED"

        payment_service.void_receipt(receipt.id, reason="bounced cheque")
        db_session.expire_all()
        note = db_session.get(PromissoryNote, note.id)

        assert note.outstanding_amount_cents == 1000
        assert note.status == "OUTSTANDING"

        # The job sees it again and agrees with the receipts
        result = reconciliation_service.reconcile()
        db_session.expire_all()
        note = db_session.get(PromissoryNote, note.id)

        assert result.reconciled_count == 1
        assert note.outstanding_amount_cents == 1000
        assert note.status == "OUTSTANDING"

    def test_voiding_one_of_two_receipts_leaves_note_partial(self, db_session, customer):
        note = _note(customer)
        _pay(customer, 300, promissory_note_id=note.id)
        second = _pay(customer, 700, promissory_note_id=note.id)
        reconciliation_service.reconcile()

        payment_service.void_receipt(second.id)
        db_session.expire_all()
        note = db_session.get(PromissoryNote, note.id)

        assert note.outstanding_amount_cents == 700
        assert note.status == "PARTIALLY_RECONCILED"

    def test_note_closed_during_run_is_not_counted(self, db_session, customer, monkeypatch):
        first_id = _note(customer).id
        second_id = _note(customer).id
        reconcile_note = reconciliation_service.reconcile_note

        def _cancel_second_first(note_id, as_of=None):
            if note_id == first_id:
                payment_service.cancel_promissory_note(second_id)
            return reconcile_note(note_id, as_of)

        monkeypatch.setattr(reconciliation_service, "reconcile_note", _cancel_second_first)
        result = reconciliation_service.reconcile()

        assert result.reconciled_count == 1
        assert result.errors == []
        assert reconciliation_service.reconcile_note(second_id) is None

    def test_cancelled_notes_are_skipped(self, db_session, customer):
        note = _note(customer)

        payment_service.cancel_promissory_note(note.id)

        assert reconciliation_service.reconcile().reconciled_count == 0
        assert db_session.get(PromissoryNote, note.id).status == "CANCELLED"


class TestReceipts:
    def test_receipt_above_face_is_rejected(self, db_session, customer):
        note = _note(customer)
        _pay(customer, 700, promissory_note_id=note.id)

        with pytest.raises(ValidationError):
            _pay(customer, 301, promissory_note_id=note.id)
        assert db_session.query(Receipt).count() == 1

    @pytest.mark.parametrize("amount", [0, -5, "ten", 12.5, 100.0])
    def test_bad_amounts(self, db_session, customer, amount):
        with pytest.raises(ValidationError):
            _pay(customer, amount)

    def test_bad_payment_method(self, db_session, customer):
        with pytest.raises(ValidationError):
            _pay(customer, 100, payment_method="BARTER")

    def test_sale_payment_status_follows_receipts(self, db_session, customer, product, make_sale):
        sale = make_sale([(product.id, 2)])

        first = _pay(customer, 500, sale_id=sale.id)
        assert db_session.get(Document, sale.id).payment_status == "PARTIAL"

        _pay(customer, 1500, sale_id=sale.id, payment_method="mobile_money")
        sale = db_session.get(Document, sale.id)
        assert sale.payment_status == "PAID"
        assert sale.amount_paid_cents == 2000

        payment_service.void_receipt(first.id)
        sale = db_session.get(Document, sale.id)
        assert sale.payment_status == "PARTIAL"
        assert sale.amount_paid_cents == 1500

        with pytest.raises(InvalidStateTransitionError):
            payment_service.void_receipt(first.id)

    def test_note_receipt_counts_toward_its_sale(self, db_session, customer, product, make_sale):
        sale = make_sale([(product.id, 2)])
        note = payment_service.create_promissory_note(
            customer_id=customer.id, face_amount_cents=2000, sale_id=sale.id,
        )

        _pay(customer, 800, promissory_note_id=note.id)
        sale = db_session.get(Document, sale.id)

        assert note.sale_id == sale.id
        assert sale.payment_status == "PARTIAL"
        assert sale.amount_paid_cents == 800

    def test_draft_sale_cannot_take_payment(self, db_session, customer, product, make_sale):
        sale = make_sale([(product.id, 1)], confirm=False)

        with pytest.raises(InvalidStateTransitionError):
            _pay(customer, 100, sale_id=sale.id)

    def test_note_with_receipts_cannot_be_cancelled(self, db_session, customer):
        note = _note(customer)
        _pay(customer, 100, promissory_note_id=note.id)

        with pytest.raises(InvalidStateTransitionError):
            payment_service.cancel_promissory_note(note.id)

    def test_default_due_date_uses_configured_term(self, db_session, customer):
        before = utcnow()
        note = _note(customer)

        assert before + timedelta(days=29) < note.due_date <= utcnow() + timedelta(days=30)
