"""
Pytest fixtures for backoffice tests.

Provides an in-memory database (schema created once, rows wiped per test),
reference data fixtures and small helpers for seeding stock and sales.
"""

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Store, Product, Customer, Vendor, SalesAgent, FinancialAccount
from backoffice.services import document_service, inventory_service, sales_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'COMMISSION_RATE_BPS': 500,
        'COMMISSION_WITHHOLDING_TAX_BPS': 0,
        'COMMISSION_EXCLUDED_PRODUCT_IDS': [],
        'PROMISSORY_NOTE_TERM_DAYS': 30,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Main Warehouse", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Branch", code="BR1")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def product(db_session):
    product = Product(sku="CEM-50", name="Cement 50kg", price_cents=1000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def second_product(db_session):
    product = Product(sku="NAIL-1", name="Nails 1kg", price_cents=250)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def service_product(db_session):
    """A product that is not stock-tracked (installation fee)."""
    product = Product(sku="SVC-INSTALL", name="Installation", price_cents=5000, is_stock_tracked=False)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Acme Builders")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def vendor(db_session):
    vendor = Vendor(name="Cement Supply Co")
    db_session.add(vendor)
    db_session.commit()
    return vendor


@pytest.fixture(scope='function')
def agent(db_session):
    agent = SalesAgent(name="Jordan Agent")
    db_session.add(agent)
    db_session.commit()
    return agent


@pytest.fixture(scope='function')
def account(db_session):
    account = FinancialAccount(name="Operating Bank", chart_of_account_code="1010")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope='function')
def seed_stock(db_session):
    """Put quantity on hand for (product, store) through a manual adjustment."""
    def _seed(product_id, store_id, quantity):
        return inventory_service.post_stock_adjustment(
            product_id=product_id,
            store_id=store_id,
            delta=quantity,
            idempotency_key=f"SEED:{product_id}:{store_id}:{quantity}",
            note="seed",
        )
    return _seed


@pytest.fixture(scope='function')
def make_sale(db_session, store, customer):
    """Create (and by default confirm) a sale; lines are (product_id, quantity[, unit_price_cents])."""
    def _make(lines, *, confirm=True, sales_agent_id=None, store_id=None):
        sale = document_service.create_document(
            "SALE",
            store_id=store_id or store.id,
            customer_id=customer.id,
            sales_agent_id=sales_agent_id,
            lines=[
                {
                    "product_id": line[0],
                    "quantity": line[1],
                    "unit_price_cents": line[2] if len(line) > 2 else None,
                }
                for line in lines
            ],
        )
        if confirm:
            sale = sales_service.confirm_sale(sale.id)
        return sale
    return _make
