"""
Stock ledger tests.

The projection must always equal the ledger sum, postings are idempotent
per key, and entries are immutable.
"""

import pytest
from sqlalchemy import update

from backoffice.errors import DuplicatePostingError, InvalidReferenceError, ValidationError
from backoffice.models import StockLedgerEntry, StoreStock
from backoffice.services import inventory_service, ledger_service
from backoffice.services.filters import StockLedgerFilters


def _post(product_id, store_id, delta, key, **kwargs):
    entry = ledger_service.post_entry(
        product_id=product_id,
        store_id=store_id,
        delta=delta,
        reason=kwargs.pop("reason", ledger_service.MANUAL_ADJUSTMENT),
        idempotency_key=key,
        **kwargs,
    )
    return entry


class TestPostEntry:
    def test_balance_equals_ledger_sum(self, db_session, store, product):
        """StoreStock tracks SUM(delta) after a mix of postings."""
        _post(product.id, store.id, 10, "k1")
        _post(product.id, store.id, -3, "k2")
        _post(product.id, store.id, 5, "k3", reason=ledger_service.PURCHASE_RECEIPT)
        db_session.commit()

        assert ledger_service.get_balance(product.id, store.id) == 12
        assert ledger_service.get_ledger_sum(product.id, store.id) == 12
        assert ledger_service.find_balance_drift() == []

    def test_balance_after_is_running_total(self, db_session, store, product):
        first = _post(product.id, store.id, 4, "k1")
        second = _post(product.id, store.id, -1, "k2")
        db_session.commit()

        assert first.balance_after == 4
        assert second.balance_after == 3

    def test_default_key_from_source_document(self, db_session, store, product):
        entry = ledger_service.post_entry(
            product_id=product.id,
            store_id=store.id,
            delta=2,
            reason=ledger_service.PURCHASE_RECEIPT,
            source_document_type="GOODS_RECEIPT",
            source_document_id=7,
        )
        db_session.commit()

        assert entry.idempotency_key == f"GOODS_RECEIPT:7:{product.id}"

    def test_duplicate_key_raises_with_original_entry(self, db_session, store, product):
        """Reposting a key is rejected and the balance does not move."""
        original = _post(product.id, store.id, 5, "dup")
        db_session.commit()

        with pytest.raises(DuplicatePostingError) as exc_info:
            _post(product.id, store.id, 5, "dup")
        db_session.rollback()

        assert exc_info.value.entry.id == original.id
        assert ledger_service.get_balance(product.id, store.id) == 5
        assert db_session.query(StockLedgerEntry).count() == 1

    def test_negative_balance_rejected(self, db_session, store, product):
        _post(product.id, store.id, 2, "k1")
        db_session.commit()

        with pytest.raises(ValidationError):
            _post(product.id, store.id, -3, "k2")
        db_session.rollback()

        assert ledger_service.get_balance(product.id, store.id) == 2

    def test_negative_balance_allowed_when_explicit(self, db_session, store, product):
        entry = _post(product.id, store.id, -3, "k1", allow_negative=True)
        db_session.commit()

        assert entry.balance_after == -3
        assert ledger_service.get_balance(product.id, store.id) == -3

    def test_zero_delta_rejected(self, db_session, store, product):
        with pytest.raises(ValidationError):
            _post(product.id, store.id, 0, "k1")

    def test_unknown_product_is_invalid_reference(self, db_session, store):
        with pytest.raises(InvalidReferenceError):
            _post(9999, store.id, 1, "k1")

    def test_unknown_store_is_invalid_reference(self, db_session, product):
        with pytest.raises(InvalidReferenceError):
            _post(product.id, 9999, 1, "k1")

    def test_untracked_product_rejected(self, db_session, store, service_product):
        with pytest.raises(ValidationError):
            _post(service_product.id, store.id, 1, "k1")

    def test_key_required_without_source(self, db_session, store, product):
        with pytest.raises(ValidationError):
            ledger_service.post_entry(
                product_id=product.id,
                store_id=store.id,
                delta=1,
                reason=ledger_service.MANUAL_ADJUSTMENT,
            )

    def test_stores_are_independent(self, db_session, store, other_store, product):
        _post(product.id, store.id, 5, "k1")
        _post(product.id, other_store.id, 2, "k2")
        db_session.commit()

        assert ledger_service.get_balance(product.id, store.id) == 5
        assert ledger_service.get_balance(product.id, other_store.id) == 2


class TestLedgerImmutability:
    def test_update_rejected(self, db_session, store, product):
        entry = _post(product.id, store.id, 1, "k1")
        db_session.commit()

        entry.note = "edited"
        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()

    def test_delete_rejected(self, db_session, store, product):
        entry = _post(product.id, store.id, 1, "k1")
        db_session.commit()

        db_session.delete(entry)
        with pytest.raises(ValueError):
            db_session.flush()
        db_session.rollback()


class TestStockAdjustment:
    def test_retry_with_same_key_is_noop(self, db_session, store, product):
        """A retried adjustment returns the original entry instead of posting twice."""
        first = inventory_service.post_stock_adjustment(
            product_id=product.id, store_id=store.id, delta=8, idempotency_key="adj-1",
        )
        second = inventory_service.post_stock_adjustment(
            product_id=product.id, store_id=store.id, delta=8, idempotency_key="adj-1",
        )

        assert first.id == second.id
        assert ledger_service.get_balance(product.id, store.id) == 8

    def test_reason_restricted(self, db_session, store, product):
        with pytest.raises(ValidationError):
            inventory_service.post_stock_adjustment(
                product_id=product.id,
                store_id=store.id,
                delta=1,
                reason=ledger_service.SALE_DISPATCH,
            )

    def test_get_stock_balance(self, db_session, store, product, seed_stock):
        seed_stock(product.id, store.id, 6)

        balance = inventory_service.get_stock_balance(product.id, store.id)

        assert balance == {"product_id": product.id, "store_id": store.id, "quantity": 6}


class TestProjectionRebuild:
    def test_drift_detected_and_rebuilt(self, db_session, store, product, seed_stock):
        seed_stock(product.id, store.id, 10)
        db_session.execute(
            update(StoreStock)
            .where(StoreStock.product_id == product.id)
            .values(quantity=3)
        )
        db_session.commit()

        drift = ledger_service.find_balance_drift()
        assert drift == [{
            "product_id": product.id,
            "store_id": store.id,
            "projected_quantity": 3,
            "ledger_quantity": 10,
        }]

        corrected = ledger_service.rebuild_store_stock()

        assert len(corrected) == 1
        assert ledger_service.get_balance(product.id, store.id) == 10
        assert ledger_service.find_balance_drift() == []


class TestListStockLedger:
    def test_filters(self, db_session, store, product, second_product):
        _post(product.id, store.id, 5, "k1")
        _post(second_product.id, store.id, 5, "k2")
        _post(product.id, store.id, 3, "k3", reason=ledger_service.PURCHASE_RECEIPT)
        db_session.commit()

        by_product = ledger_service.list_stock_ledger(StockLedgerFilters(product_id=product.id))
        by_reason = ledger_service.list_stock_ledger(
            StockLedgerFilters(reason=ledger_service.PURCHASE_RECEIPT)
        )

        assert [e.idempotency_key for e in by_product] == ["k3", "k1"]
        assert [e.idempotency_key for e in by_reason] == ["k3"]
