"""
Commission tests: calculation, idempotent computation, and the
approve -> pay lifecycle with its exactly-once payout.
"""

import pytest

from backoffice.errors import (
    AlreadyPaidError,
    InvalidStateTransitionError,
    ValidationError,
)
from backoffice.models import Commission, SalesAgent
from backoffice.services import commission_service, document_service
from backoffice.services.filters import CommissionFilters


class TestCalculation:
    def test_default_rate_on_confirmation(self, db_session, agent, product, make_sale):
        """2 x 1000 cents at 500 bps is 100 cents."""
        sale = make_sale([(product.id, 2)], sales_agent_id=agent.id)

        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        assert commission.base_amount_cents == 2000
        assert commission.rate_bps == 500
        assert commission.amount_cents == 100
        assert commission.status == "PENDING"
        assert commission.payment_status == "UNPAID"
        assert commission.document_number == "CM-000001"

    def test_compute_is_idempotent(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 2)], sales_agent_id=agent.id)

        first = commission_service.compute_commission(sale.id)
        second = commission_service.compute_commission(sale.id)

        assert first.id == second.id
        assert db_session.query(Commission).count() == 1

    def test_agent_rate_overrides_default(self, db_session, product, make_sale):
        agent = SalesAgent(name="Senior Agent", commission_rate_bps=1000)
        db_session.add(agent)
        db_session.commit()

        sale = make_sale([(product.id, 3)], sales_agent_id=agent.id)
        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        assert commission.rate_bps == 1000
        assert commission.amount_cents == 300

    def test_exclusions_and_withholding(self, app, db_session, agent, product, service_product, make_sale, monkeypatch):
        monkeypatch.setitem(app.config, "COMMISSION_EXCLUDED_PRODUCT_IDS", [service_product.id])
        monkeypatch.setitem(app.config, "COMMISSION_WITHHOLDING_TAX_BPS", 1000)

        sale = make_sale([(product.id, 10), (service_product.id, 1)], sales_agent_id=agent.id)
        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        assert sale.total_cents == 15000
        assert commission.base_amount_cents == 10000
        assert commission.withholding_tax_cents == 1000
        assert commission.amount_cents == 450

    def test_half_up_rounding(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 1, 1010)], sales_agent_id=agent.id)

        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        assert commission.amount_cents == 51

    def test_draft_sale_has_no_commission(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 1)], confirm=False, sales_agent_id=agent.id)

        assert db_session.query(Commission).count() == 0
        with pytest.raises(InvalidStateTransitionError):
            commission_service.compute_commission(sale.id)

    def test_sale_without_agent(self, db_session, product, make_sale):
        sale = make_sale([(product.id, 1)])

        with pytest.raises(ValidationError):
            commission_service.compute_commission(sale.id)


class TestRecalculation:
    def test_deductions_reduce_amount(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 4)], sales_agent_id=agent.id)
        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        updated = commission_service.recalculate_commission(commission.id, deductions_cents=50)

        assert updated.amount_cents == 150
        assert updated.deductions_cents == 50
        assert updated.recalculated_at is not None

    def test_deductions_never_go_negative(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 1)], sales_agent_id=agent.id)
        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        assert commission_service.recalculate_commission(commission.id, deductions_cents=500).amount_cents == 0
        with pytest.raises(ValidationError):
            commission_service.recalculate_commission(commission.id, deductions_cents=-1)

    def test_config_change_applies_only_on_recalculation(self, app, db_session, agent, product, make_sale, monkeypatch):
        sale = make_sale([(product.id, 2)], sales_agent_id=agent.id)
        commission = db_session.query(Commission).filter_by(sale_id=sale.id).one()

        monkeypatch.setitem(app.config, "COMMISSION_RATE_BPS", 1000)
        assert commission_service.compute_commission(sale.id).amount_cents == 100
        assert commission_service.recalculate_commission(commission.id).amount_cents == 200


class TestLifecycle:
    def _commission(self, db_session, agent, product, make_sale):
        sale = make_sale([(product.id, 2)], sales_agent_id=agent.id)
        return db_session.query(Commission).filter_by(sale_id=sale.id).one()

    def test_pay_exactly_once(self, db_session, agent, account, product, make_sale):
        commission = self._commission(db_session, agent, product, make_sale)
        commission_service.approve_commission(commission.id)

        paid = commission_service.pay_commission(commission.id, account.id, user_id=7)

        assert paid.payment_status == "PAID"
        assert paid.payout_reference == "CPO-000001"
        assert paid.financial_account_id == account.id
        assert paid.paid_by_user_id == 7
        assert paid.paid_at is not None

        with pytest.raises(AlreadyPaidError):
            commission_service.pay_commission(commission.id, account.id)
        with pytest.raises(AlreadyPaidError):
            commission_service.recalculate_commission(commission.id, deductions_cents=10)
        with pytest.raises(AlreadyPaidError):
            commission_service.cancel_commission(commission.id)

        db_session.expire_all()
        assert db_session.get(Commission, commission.id).payout_reference == "CPO-000001"

    def test_pending_commission_cannot_be_paid(self, db_session, agent, account, product, make_sale):
        commission = self._commission(db_session, agent, product, make_sale)

        with pytest.raises(InvalidStateTransitionError):
            commission_service.pay_commission(commission.id, account.id)

    def test_approve_twice_rejected(self, db_session, agent, product, make_sale):
        commission = self._commission(db_session, agent, product, make_sale)
        commission_service.approve_commission(commission.id)

        with pytest.raises(InvalidStateTransitionError):
            commission_service.approve_commission(commission.id)

    def test_cancelled_sale_cancels_commission(self, db_session, agent, product, make_sale):
        commission = self._commission(db_session, agent, product, make_sale)

        document_service.cancel_document(commission.sale_id)
        db_session.expire_all()

        assert db_session.get(Commission, commission.id).status == "CANCELLED"
        with pytest.raises(InvalidStateTransitionError):
            commission_service.approve_commission(commission.id)

    def test_list_filters(self, db_session, agent, product, make_sale):
        commission = self._commission(db_session, agent, product, make_sale)
        make_sale([(product.id, 1)], sales_agent_id=agent.id)
        commission_service.approve_commission(commission.id)

        approved = commission_service.list_commissions(CommissionFilters(status="APPROVED"))
        for_agent = commission_service.list_commissions(CommissionFilters(sales_agent_id=agent.id))

        assert [c.id for c in approved] == [commission.id]
        assert len(for_agent) == 2
