from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from backoffice.time_utils import to_utc_z


class StoreStock(db.Model):
    """
    Cached on-hand quantity per (product, store).

    A projection of the ledger: quantity always equals SUM(delta) of the
    StockLedgerEntry rows for the same key. Only ledger_service.post_entry
    changes it, inside the posting's transaction.
    """
    __tablename__ = "store_stock"
    __table_args__ = (
        db.UniqueConstraint("product_id", "store_id", name="uq_store_stock_product_store"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "store_id": self.store_id,
            "quantity": self.quantity,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockLedgerEntry(db.Model):
    """
    Append-only stock movement.

    Immutable once written: corrections are compensating entries, never
    edits. idempotency_key is unique so a retried conversion cannot post the
    same movement twice.
    """
    __tablename__ = "stock_ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_stock_ledger_idempotency_key"),
        db.Index("ix_stock_ledger_product_store_created", "product_id", "store_id", "created_at"),
        db.Index("ix_stock_ledger_source", "source_document_type", "source_document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False, index=True)

    # Lineage (nullable for manual adjustments)
    source_document_type = db.Column(db.String(32), nullable=True)
    source_document_id = db.Column(db.Integer, nullable=True)

    idempotency_key = db.Column(db.String(128), nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "delta": self.delta,
            "reason": self.reason,
            "source_document_type": self.source_document_type,
            "source_document_id": self.source_document_id,
            "idempotency_key": self.idempotency_key,
            "balance_after": self.balance_after,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }


@event.listens_for(StockLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise ValueError("stock ledger entries are immutable; post a compensating entry")


@event.listens_for(StockLedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise ValueError("stock ledger entries cannot be deleted")


class Backorder(db.Model):
    """
    Unmet demand on a sale line.

    Created when a dispatch asks for more than the store holds; consumed
    oldest-first as purchase receipts arrive. Closed (resolved_at set,
    is_active False) when pending_quantity reaches zero, or cancelled.
    """
    __tablename__ = "backorders"
    __table_args__ = (
        db.Index("ix_backorders_product_store_active", "product_id", "store_id", "is_active", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    sale_line_id = db.Column(db.Integer, db.ForeignKey("document_lines.id"), nullable=False, index=True)
    waybill_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    pending_quantity = db.Column(db.Integer, nullable=False)
    original_quantity = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def fulfilled_quantity(self) -> int:
        return self.original_quantity - self.pending_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "sale_id": self.sale_id,
            "sale_line_id": self.sale_line_id,
            "waybill_id": self.waybill_id,
            "customer_id": self.customer_id,
            "pending_quantity": self.pending_quantity,
            "original_quantity": self.original_quantity,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
        }
