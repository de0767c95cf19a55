# Overview: Sale lifecycle entry point; confirmation and the commission it earns.

from __future__ import annotations

from ..errors import ValidationError, InvalidStateTransitionError
from ..models import Document
from ..time_utils import utcnow
from .commission_service import compute_commission_inner
from .concurrency import begin_write_transaction, run_atomic
from .document_service import SALE, load_for_update


def confirm_sale(sale_id: int) -> Document:
    """
    DRAFT -> CONFIRMED.

    When the sale carries a sales agent, the commission is computed in the
    same transaction, so a confirmed sale never lacks its commission.
    """
    def _op():
        begin_write_transaction()
        sale = load_for_update(SALE, sale_id)
        if sale.status != "DRAFT":
            raise InvalidStateTransitionError(
                f"only DRAFT sales can be confirmed (is {sale.status})",
                details={"status": sale.status},
            )
        if not sale.lines:
            raise ValidationError("cannot confirm a sale without lines")

        sale.status = "CONFIRMED"
        sale.payment_status = sale.payment_status or "UNPAID"
        sale.updated_at = utcnow()
        if sale.sales_agent_id:
            compute_commission_inner(sale)
        return sale

    return run_atomic(_op)
