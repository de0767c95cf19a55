"""
Document registry tests: numbering, originating documents, status moves,
cancellation and lineage.
"""

import pytest

from backoffice.errors import (
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from backoffice.models import Document, DocumentSequence
from backoffice.services import conversion_service, document_service, sales_service
from backoffice.services.filters import DocumentFilters


class TestDocumentNumbers:
    def test_numbers_are_sequential_per_type(self, db_session):
        numbers = [document_service.next_document_number("SALE") for _ in range(3)]
        quotation_number = document_service.next_document_number("QUOTATION")
        db_session.commit()

        assert numbers == ["SO-000001", "SO-000002", "SO-000003"]
        assert quotation_number == "QT-000001"
        counter = db_session.query(DocumentSequence).filter_by(document_type="SALE").one()
        assert counter.next_number == 4

    def test_rolled_back_allocation_is_not_kept(self, db_session):
        document_service.next_document_number("PURCHASE_ORDER")
        db_session.commit()
        document_service.next_document_number("PURCHASE_ORDER")
        db_session.rollback()

        assert document_service.next_document_number("PURCHASE_ORDER") == "PO-000002"
        db_session.commit()

    def test_created_documents_carry_numbers(self, db_session, make_sale, product):
        first = make_sale([(product.id, 1)], confirm=False)
        second = make_sale([(product.id, 1)], confirm=False)

        assert first.document_number == "SO-000001"
        assert second.document_number == "SO-000002"


class TestCreateDocument:
    def test_sale_totals_and_defaults(self, db_session, store, customer, product, second_product):
        sale = document_service.create_document(
            "sale",
            store_id=store.id,
            customer_id=customer.id,
            lines=[
                {"product_id": product.id, "quantity": 2},
                {"product_id": second_product.id, "quantity": 4, "unit_price_cents": 200},
            ],
        )

        assert sale.document_type == "SALE"
        assert sale.status == "DRAFT"
        assert sale.payment_status == "UNPAID"
        assert sale.conversion_status == "NONE"
        assert [line.line_number for line in sale.lines] == [1, 2]
        assert [line.line_total_cents for line in sale.lines] == [2000, 800]
        assert sale.total_cents == 2800

    def test_purchase_order_needs_vendor(self, db_session, store, product):
        with pytest.raises(NotFoundError):
            document_service.create_document(
                "PURCHASE_ORDER",
                store_id=store.id,
                lines=[{"product_id": product.id, "quantity": 1}],
            )

    @pytest.mark.parametrize("quantity", [0, -3, "abc", 1.5, 2.0, "1e3", None])
    def test_bad_quantity_rejected(self, db_session, store, customer, product, quantity):
        with pytest.raises(ValidationError):
            document_service.create_document(
                "SALE",
                store_id=store.id,
                customer_id=customer.id,
                lines=[{"product_id": product.id, "quantity": quantity}],
            )
        assert db_session.query(Document).count() == 0

    def test_lines_required(self, db_session, store, customer):
        with pytest.raises(ValidationError):
            document_service.create_document("SALE", store_id=store.id, customer_id=customer.id, lines=[])

    def test_unknown_product_rejected(self, db_session, store, customer):
        with pytest.raises(NotFoundError):
            document_service.create_document(
                "QUOTATION",
                store_id=store.id,
                customer_id=customer.id,
                lines=[{"product_id": 999, "quantity": 1}],
            )

    def test_derived_types_cannot_be_created(self, db_session, store, customer, product):
        with pytest.raises(InvalidStateTransitionError):
            document_service.create_document(
                "WAYBILL",
                store_id=store.id,
                customer_id=customer.id,
                lines=[{"product_id": product.id, "quantity": 1}],
            )

    def test_unknown_type_rejected(self, db_session, store):
        with pytest.raises(ValidationError):
            document_service.create_document("ESTIMATE", store_id=store.id, lines=[{"product_id": 1, "quantity": 1}])

    def test_retry_with_idempotency_key(self, db_session, store, customer, product):
        kwargs = dict(
            store_id=store.id,
            customer_id=customer.id,
            lines=[{"product_id": product.id, "quantity": 1}],
            idempotency_key="client-42",
        )
        first = document_service.create_document("SALE", **kwargs)
        second = document_service.create_document("SALE", **kwargs)

        assert first.id == second.id
        assert db_session.query(Document).filter_by(document_type="SALE").count() == 1


class TestStatusTransitions:
    def test_quotation_draft_to_sent(self, db_session, store, customer, product):
        quotation = document_service.create_document(
            "QUOTATION",
            store_id=store.id,
            customer_id=customer.id,
            lines=[{"product_id": product.id, "quantity": 1}],
        )

        updated = document_service.transition_status(quotation.id, "sent")

        assert updated.status == "SENT"
        with pytest.raises(InvalidStateTransitionError):
            document_service.transition_status(quotation.id, "DRAFT")

    def test_engine_driven_statuses_cannot_be_set(self, db_session, make_sale, product):
        sale = make_sale([(product.id, 1)], confirm=False)

        with pytest.raises(InvalidStateTransitionError):
            document_service.transition_status(sale.id, "FULLY_DELIVERED")
        with pytest.raises(InvalidStateTransitionError):
            document_service.transition_status(sale.id, "CONFIRMED")

    def test_waybill_moves_in_transit(self, db_session, store, product, seed_stock, make_sale):
        seed_stock(product.id, store.id, 1)
        sale = make_sale([(product.id, 1)])
        waybill = conversion_service.convert("SALE", sale.id, "WAYBILL")

        assert document_service.transition_status(waybill.id, "IN_TRANSIT").status == "IN_TRANSIT"

    def test_missing_document(self, db_session):
        with pytest.raises(NotFoundError):
            document_service.transition_status(12345, "SENT")


class TestCancelDocument:
    def test_quotation_expires(self, db_session, store, customer, product):
        quotation = document_service.create_document(
            "QUOTATION",
            store_id=store.id,
            customer_id=customer.id,
            lines=[{"product_id": product.id, "quantity": 1}],
        )

        cancelled = document_service.cancel_document(quotation.id, reason="customer went elsewhere")

        assert cancelled.status == "EXPIRED"
        assert cancelled.cancelled_at is not None
        assert "customer went elsewhere" in cancelled.notes

    def test_confirmed_sale_without_children_cancels(self, db_session, make_sale, product):
        sale = make_sale([(product.id, 1)])

        assert document_service.cancel_document(sale.id).status == "CANCELLED"

    def test_sale_with_waybill_refused(self, db_session, store, product, seed_stock, make_sale):
        seed_stock(product.id, store.id, 1)
        sale = make_sale([(product.id, 2)])
        conversion_service.convert("SALE", sale.id, "WAYBILL")

        with pytest.raises(InvalidStateTransitionError):
            document_service.cancel_document(sale.id)

    def test_waybill_not_cancelled_here(self, db_session, store, product, seed_stock, make_sale):
        seed_stock(product.id, store.id, 1)
        sale = make_sale([(product.id, 1)])
        waybill = conversion_service.convert("SALE", sale.id, "WAYBILL")

        with pytest.raises(InvalidStateTransitionError):
            document_service.cancel_document(waybill.id)


class TestLineage:
    def test_delivery_traces_back_to_quotation(self, db_session, store, customer, product, seed_stock):
        seed_stock(product.id, store.id, 5)
        quotation = document_service.create_document(
            "QUOTATION",
            store_id=store.id,
            customer_id=customer.id,
            lines=[{"product_id": product.id, "quantity": 2}],
        )
        document_service.transition_status(quotation.id, "SENT")
        sale = conversion_service.convert("QUOTATION", quotation.id, "SALE")
        sale_id = sale.id
        sales_service.confirm_sale(sale_id)
        waybill = conversion_service.convert("SALE", sale_id, "WAYBILL")
        waybill_id = waybill.id
        delivery = conversion_service.convert("WAYBILL", waybill_id, "DELIVERY")

        lineage = document_service.get_lineage("DELIVERY", delivery.id)

        assert [(a["type"], a["id"]) for a in lineage["ancestors"]] == [
            ("WAYBILL", waybill_id),
            ("SALE", sale_id),
            ("QUOTATION", quotation.id),
        ]
        assert lineage["source"]["document_number"] == waybill.document_number
        assert lineage["converted_to"] == []

        sale_lineage = document_service.get_lineage("SALE", sale_id)
        assert [(c["type"], c["id"]) for c in sale_lineage["converted_to"]] == [("WAYBILL", waybill_id)]

    def test_note_appears_in_sale_lineage(self, db_session, make_sale, product):
        sale = make_sale([(product.id, 1)])
        note = conversion_service.convert("SALE", sale.id, "PROMISSORY_NOTE")

        lineage = document_service.get_lineage("PROMISSORY_NOTE", note.id)

        assert lineage["source"]["type"] == "SALE"
        assert lineage["source"]["id"] == sale.id

    def test_missing_document_lineage(self, db_session):
        with pytest.raises(NotFoundError):
            document_service.get_lineage("SALE", 999)


class TestListDocuments:
    def test_filters(self, db_session, store, other_store, vendor, product, make_sale):
        first = make_sale([(product.id, 1)], confirm=False)
        make_sale([(product.id, 1)], confirm=True)
        make_sale([(product.id, 1)], confirm=False, store_id=other_store.id)
        document_service.create_document(
            "PURCHASE_ORDER",
            store_id=store.id,
            vendor_id=vendor.id,
            lines=[{"product_id": product.id, "quantity": 1}],
        )

        sales = document_service.list_documents(DocumentFilters(document_type="SALE"))
        drafts_main = document_service.list_documents(
            DocumentFilters(document_type="SALE", status="DRAFT", store_id=store.id)
        )
        by_number = document_service.list_documents(DocumentFilters(search=first.document_number))

        assert len(sales) == 3
        assert [d.id for d in drafts_main] == [first.id]
        assert [d.id for d in by_number] == [first.id]

    def test_filters_from_query_args(self):
        filters = DocumentFilters.from_query_args({"document_type": "sale", "store_id": "3", "limit": "10"})

        assert filters.document_type == "SALE"
        assert filters.store_id == 3
        assert filters.limit == 10

        with pytest.raises(ValidationError):
            DocumentFilters.from_query_args({"store_id": "three"})
