# Overview: Sales-agent commissions: computed once per (agent, sale), approved, paid out against a financial account.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import (
    ValidationError,
    NotFoundError,
    InvalidStateTransitionError,
    AlreadyPaidError,
)
from ..models import Commission, Document
from ..time_utils import utcnow
from .catalog_service import require_sales_agent, require_financial_account
from .concurrency import lock_for_update, begin_write_transaction, run_atomic
from .document_service import SALE, COMMISSION, COMMISSION_PAYOUT, load_for_update, next_document_number
from .filters import CommissionFilters

BPS_DENOMINATOR = 10_000


def _bps(amount_cents: int, bps: int) -> int:
    """amount * bps / 10000, nearest cent (half-up)."""
    numerator = amount_cents * bps
    return (numerator + (BPS_DENOMINATOR // 2)) // BPS_DENOMINATOR


def calculate_commission_amounts(sale: Document, rate_bps: int, deductions_cents: int = 0) -> dict:
    """
    Commission breakdown for a sale.

    base        = sale total minus lines of excluded products
    withholding = base * withholding-tax rate
    gross       = (base - withholding) * agent rate
    amount      = max(0, gross - deductions)
    """
    excluded = set(current_app.config.get("COMMISSION_EXCLUDED_PRODUCT_IDS") or [])
    excluded_total = sum(line.line_total_cents for line in sale.lines if line.product_id in excluded)
    base = max(0, sale.total_cents - excluded_total)
    withholding = _bps(base, current_app.config.get("COMMISSION_WITHHOLDING_TAX_BPS", 0))
    gross = _bps(base - withholding, rate_bps)
    return {
        "base_amount_cents": base,
        "rate_bps": rate_bps,
        "withholding_tax_cents": withholding,
        "deductions_cents": deductions_cents,
        "amount_cents": max(0, gross - deductions_cents),
    }


def _agent_rate(sales_agent_id: int) -> int:
    agent = require_sales_agent(sales_agent_id)
    if agent.commission_rate_bps is not None:
        return agent.commission_rate_bps
    return current_app.config["COMMISSION_RATE_BPS"]


def compute_commission_inner(sale: Document) -> Commission:
    """Create the sale's commission, or return the one already recorded (flush only)."""
    if not sale.sales_agent_id:
        raise ValidationError("sale has no sales agent", details={"sale_id": sale.id})
    existing = (
        db.session.query(Commission)
        .filter_by(sales_agent_id=sale.sales_agent_id, sale_id=sale.id)
        .first()
    )
    if existing is not None:
        return existing

    amounts = calculate_commission_amounts(sale, _agent_rate(sale.sales_agent_id))
    commission = Commission(
        document_number=next_document_number(COMMISSION),
        sales_agent_id=sale.sales_agent_id,
        sale_id=sale.id,
        status="PENDING",
        payment_status="UNPAID",
        **amounts,
    )
    db.session.add(commission)
    db.session.flush()
    return commission


def compute_commission(sale_id: int) -> Commission:
    def _op():
        begin_write_transaction()
        sale = load_for_update(SALE, sale_id)
        if sale.status in ("DRAFT", "CANCELLED"):
            raise InvalidStateTransitionError(
                f"commission is earned on confirmed sales (sale is {sale.status})",
                details={"status": sale.status},
            )
        return compute_commission_inner(sale)

    return run_atomic(_op)


def _load_for_update(commission_id: int) -> Commission:
    commission = (
        lock_for_update(db.session.query(Commission).filter_by(id=commission_id))
        .populate_existing()
        .first()
    )
    if commission is None:
        raise NotFoundError("commission not found", details={"commission_id": commission_id})
    return commission


def _ensure_unpaid(commission: Commission) -> None:
    if commission.payment_status == "PAID":
        raise AlreadyPaidError(
            "commission already paid",
            details={"commission_id": commission.id, "payout_reference": commission.payout_reference},
        )


def recalculate_commission(commission_id: int, deductions_cents: int | None = None) -> Commission:
    """Explicit correction: recompute from the sale as it stands now."""
    def _op():
        begin_write_transaction()
        commission = _load_for_update(commission_id)
        _ensure_unpaid(commission)
        if commission.status == "CANCELLED":
            raise InvalidStateTransitionError("commission is cancelled")

        deductions = commission.deductions_cents if deductions_cents is None else int(deductions_cents)
        if deductions < 0:
            raise ValidationError("deductions_cents cannot be negative")

        sale = db.session.get(Document, commission.sale_id)
        amounts = calculate_commission_amounts(sale, _agent_rate(commission.sales_agent_id), deductions)
        for field, value in amounts.items():
            setattr(commission, field, value)
        commission.recalculated_at = utcnow()
        db.session.flush()
        return commission

    return run_atomic(_op)


def approve_commission(commission_id: int) -> Commission:
    def _op():
        begin_write_transaction()
        commission = _load_for_update(commission_id)
        if commission.status != "PENDING":
            raise InvalidStateTransitionError(
                f"cannot approve a commission in status {commission.status}",
                details={"status": commission.status},
            )
        commission.status = "APPROVED"
        commission.approved_at = utcnow()
        db.session.flush()
        return commission

    return run_atomic(_op)


def _cancel(commission: Commission) -> None:
    _ensure_unpaid(commission)
    commission.status = "CANCELLED"
    commission.cancelled_at = utcnow()


def cancel_commission(commission_id: int) -> Commission:
    def _op():
        begin_write_transaction()
        commission = _load_for_update(commission_id)
        if commission.status == "CANCELLED":
            raise InvalidStateTransitionError("commission already cancelled")
        _cancel(commission)
        db.session.flush()
        return commission

    return run_atomic(_op)


def cancel_commissions_for_sale_inner(sale: Document) -> None:
    commissions = (
        lock_for_update(db.session.query(Commission).filter_by(sale_id=sale.id))
        .populate_existing()
        .all()
    )
    for commission in commissions:
        if commission.status != "CANCELLED":
            _cancel(commission)


def pay_commission(commission_id: int, financial_account_id: int, user_id: int | None = None) -> Commission:
    """
    Pay an approved commission from a financial account.

    Exactly once: a second payment raises AlreadyPaidError.
    """
    def _op():
        begin_write_transaction()
        commission = _load_for_update(commission_id)
        _ensure_unpaid(commission)
        if commission.status != "APPROVED":
            raise InvalidStateTransitionError(
                f"commission must be APPROVED to pay (is {commission.status})",
                details={"status": commission.status},
            )
        account = require_financial_account(financial_account_id)
        if not account.is_active:
            raise ValidationError("financial account is inactive")

        commission.payment_status = "PAID"
        commission.financial_account_id = account.id
        commission.payout_reference = next_document_number(COMMISSION_PAYOUT)
        commission.paid_at = utcnow()
        commission.paid_by_user_id = user_id
        db.session.flush()
        return commission

    commission = run_atomic(_op)
    current_app.logger.info(
        "Commission %s paid (%s cents) as %s",
        commission.document_number, commission.amount_cents, commission.payout_reference,
    )
    return commission


def list_commissions(filters: CommissionFilters | None = None) -> list[Commission]:
    filters = filters or CommissionFilters()
    q = db.session.query(Commission)
    if filters.sales_agent_id:
        q = q.filter(Commission.sales_agent_id == filters.sales_agent_id)
    if filters.sale_id:
        q = q.filter(Commission.sale_id == filters.sale_id)
    if filters.status:
        q = q.filter(Commission.status == filters.status)
    if filters.payment_status:
        q = q.filter(Commission.payment_status == filters.payment_status)
    return q.order_by(Commission.id.desc()).limit(filters.limit).all()
