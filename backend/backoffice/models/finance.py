from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Commission(db.Model):
    """
    Sales-agent commission earned on a confirmed sale.

    One row per (agent, sale). Amount is computed once at confirmation and
    only changes through an explicit recalculation; once paid it is frozen.

    STATUS: PENDING -> APPROVED -> (paid) ; PENDING/APPROVED -> CANCELLED
    PAYMENT: UNPAID -> PAID
    """
    __tablename__ = "commissions"
    __table_args__ = (
        db.UniqueConstraint("sales_agent_id", "sale_id", name="uq_commissions_agent_sale"),
        db.UniqueConstraint("document_number", name="uq_commissions_document_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    sales_agent_id = db.Column(db.Integer, db.ForeignKey("sales_agents.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=False, index=True)

    base_amount_cents = db.Column(db.Integer, nullable=False)
    rate_bps = db.Column(db.Integer, nullable=False)
    withholding_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    deductions_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="UNPAID", index=True)

    financial_account_id = db.Column(db.Integer, db.ForeignKey("financial_accounts.id"), nullable=True)
    payout_reference = db.Column(db.String(64), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    recalculated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "sales_agent_id": self.sales_agent_id,
            "sale_id": self.sale_id,
            "base_amount_cents": self.base_amount_cents,
            "rate_bps": self.rate_bps,
            "withholding_tax_cents": self.withholding_tax_cents,
            "deductions_cents": self.deductions_cents,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "financial_account_id": self.financial_account_id,
            "payout_reference": self.payout_reference,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "paid_by_user_id": self.paid_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "recalculated_at": to_utc_z(self.recalculated_at) if self.recalculated_at else None,
            "version_id": self.version_id,
        }


class PromissoryNote(db.Model):
    """
    Customer's written promise to pay a face amount by a due date.

    outstanding_amount_cents = face_amount_cents - SUM(active receipts),
    maintained by the reconciliation job. Status is derived from the
    outstanding amount and the due date; see reconciliation_service.
    """
    __tablename__ = "promissory_notes"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_promissory_notes_document_number"),
        db.UniqueConstraint("idempotency_key", name="uq_promissory_notes_idempotency_key"),
        db.Index("ix_promissory_notes_status_due", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)

    source_document_type = db.Column(db.String(32), nullable=True)
    source_document_id = db.Column(db.Integer, nullable=True)

    face_amount_cents = db.Column(db.Integer, nullable=False)
    outstanding_amount_cents = db.Column(db.Integer, nullable=False)

    # OUTSTANDING, PARTIALLY_RECONCILED, RECONCILED, OVERDUE, CANCELLED
    status = db.Column(db.String(24), nullable=False, default="OUTSTANDING", index=True)

    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    last_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    receipts = db.relationship("Receipt", backref="promissory_note", lazy=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "source_document_type": self.source_document_type,
            "source_document_id": self.source_document_id,
            "face_amount_cents": self.face_amount_cents,
            "outstanding_amount_cents": self.outstanding_amount_cents,
            "status": self.status,
            "due_date": to_utc_z(self.due_date),
            "last_reconciled_at": to_utc_z(self.last_reconciled_at) if self.last_reconciled_at else None,
            "idempotency_key": self.idempotency_key,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
        }


class Receipt(db.Model):
    """
    Money received from a customer.

    May settle a sale directly, a promissory note, or both. Receipts are
    never deleted; voiding sets is_active False and the reconciliation job
    stops counting it.
    """
    __tablename__ = "receipts"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_receipts_document_number"),
        db.Index("ix_receipts_note_active", "promissory_note_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(64), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("documents.id"), nullable=True, index=True)
    promissory_note_id = db.Column(db.Integer, db.ForeignKey("promissory_notes.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    # CASH, CHECK, MOBILE_MONEY, BANK
    payment_method = db.Column(db.String(16), nullable=False, default="CASH")
    reference_number = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_number": self.document_number,
            "customer_id": self.customer_id,
            "sale_id": self.sale_id,
            "promissory_note_id": self.promissory_note_id,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "reference_number": self.reference_number,
            "is_active": self.is_active,
            "received_at": to_utc_z(self.received_at),
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "void_reason": self.void_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
