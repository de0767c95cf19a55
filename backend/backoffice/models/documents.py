from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Per-type document number counter.

    One row per document_type; next_number is incremented with a single
    UPDATE so concurrent allocations never hand out the same number.
    Gaps are allowed (a rolled-back transaction burns nothing, an aborted
    caller after commit does).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_document_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)


class Document(db.Model):
    """
    A business document in the conversion chain.

    One table serves every document type (QUOTATION, SALE, PURCHASE_ORDER,
    PURCHASE, GOODS_RECEIPT, WAYBILL, DELIVERY, INVOICE). Status values are
    per type; see services/document_service.py for the machines.

    CONVERSION STATE:
    - conversion_status NONE / PARTIAL / FULL is derived from the lines'
      converted_quantity after every conversion.
    - is_converted flips once anything has been derived from the document.

    CONCURRENCY:
    - version_id is the optimistic lock; every conversion bumps it.
    """
    __tablename__ = "documents"
    __table_args__ = (
        db.UniqueConstraint("document_type", "document_number", name="uq_documents_type_number"),
        db.UniqueConstraint("document_type", "idempotency_key", name="uq_documents_type_idempotency_key"),
        db.Index("ix_documents_type_status_created", "document_type", "status", "created_at"),
        db.Index("ix_documents_source", "source_document_type", "source_document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    document_number = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(32), nullable=False, index=True)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True, index=True)
    sales_agent_id = db.Column(db.Integer, db.ForeignKey("sales_agents.id"), nullable=True, index=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Sales only: UNPAID / PARTIAL / PAID, driven by receipts
    payment_status = db.Column(db.String(16), nullable=True)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)

    conversion_status = db.Column(db.String(16), nullable=False, default="NONE")
    is_converted = db.Column(db.Boolean, nullable=False, default=False)

    # Waybills only: SALE / LOAN / CONVERSION
    waybill_type = db.Column(db.String(16), nullable=True)

    # Immediate lineage (the document this one was converted from)
    source_document_type = db.Column(db.String(32), nullable=True)
    source_document_id = db.Column(db.Integer, nullable=True)

    # Conversion waybills: the sale the loaned goods are attributed to
    reference_document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)

    idempotency_key = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "DocumentLine",
        backref="document",
        lazy=True,
        order_by="DocumentLine.line_number",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        payload = {
            "id": self.id,
            "document_type": self.document_type,
            "document_number": self.document_number,
            "status": self.status,
            "store_id": self.store_id,
            "customer_id": self.customer_id,
            "vendor_id": self.vendor_id,
            "sales_agent_id": self.sales_agent_id,
            "total_cents": self.total_cents,
            "payment_status": self.payment_status,
            "amount_paid_cents": self.amount_paid_cents,
            "conversion_status": self.conversion_status,
            "is_converted": self.is_converted,
            "waybill_type": self.waybill_type,
            "source_document_type": self.source_document_type,
            "source_document_id": self.source_document_id,
            "reference_document_id": self.reference_document_id,
            "idempotency_key": self.idempotency_key,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "version_id": self.version_id,
        }
        if include_lines:
            payload["lines"] = [line.to_dict() for line in self.lines]
        return payload


class DocumentLine(db.Model):
    """
    Line item on a Document.

    Quantity bookkeeping:
    - converted_quantity: how much of this line has been carried into a
      derived document of the next step (waybill, purchase, delivery...)
    - fulfilled_quantity: how much actually left (or arrived in) stock
    - backorder_quantity: shortfall still owed (sale lines only)
    """
    __tablename__ = "document_lines"
    __table_args__ = (
        db.UniqueConstraint("document_id", "line_number", name="uq_document_lines_doc_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False, default=0)

    # The line of the source document this one was derived from
    source_line_id = db.Column(db.Integer, db.ForeignKey("document_lines.id"), nullable=True, index=True)

    converted_quantity = db.Column(db.Integer, nullable=False, default=0)
    fulfilled_quantity = db.Column(db.Integer, nullable=False, default=0)
    backorder_quantity = db.Column(db.Integer, nullable=False, default=0)

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - (self.converted_quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "source_line_id": self.source_line_id,
            "converted_quantity": self.converted_quantity,
            "fulfilled_quantity": self.fulfilled_quantity,
            "backorder_quantity": self.backorder_quantity,
            "remaining_quantity": self.remaining_quantity,
        }


class DocumentLink(db.Model):
    """
    One "converted to" edge of the lineage forest.

    Keyed by (type, id) on both ends; targets may live outside the documents
    table (promissory notes), so the target side carries no foreign key.
    """
    __tablename__ = "document_links"
    __table_args__ = (
        db.UniqueConstraint(
            "source_document_type", "source_document_id",
            "target_document_type", "target_document_id",
            name="uq_document_links_source_target",
        ),
        db.Index("ix_document_links_source", "source_document_type", "source_document_id"),
        db.Index("ix_document_links_target", "target_document_type", "target_document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    source_document_type = db.Column(db.String(32), nullable=False)
    source_document_id = db.Column(db.Integer, nullable=False)
    target_document_type = db.Column(db.String(32), nullable=False)
    target_document_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_document_type": self.source_document_type,
            "source_document_id": self.source_document_id,
            "target_document_type": self.target_document_type,
            "target_document_id": self.target_document_id,
            "created_at": to_utc_z(self.created_at),
        }
