"""
Pytest fixtures for the ordering backend tests.

Provides the application (in-memory SQLite), a per-test table wipe,
catalog fixtures and an in-process fake payment gateway.
"""

import itertools

import pytest
from ordering import create_app
from ordering.extensions import db
from ordering.models import Branch, Product, ProductAttribute, ProductAttributeItem, StockRecord
from ordering.payments import IntentResult, IntentStatus, PaymentGateway, PaymentGatewayError, RefundResult


TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'CURRENCY': 'gbp',
    'DEFAULT_DELIVERY_FEE_CENTS': 500,
    'PAYMENT_GATEWAY_BACKEND': 'stripe',
    'PAYMENT_GATEWAY_URL': 'https://gateway.test',
    'PAYMENT_GATEWAY_SECRET_KEY': 'sk_test',
    'PAYMENT_WEBHOOK_SECRET': '',
    'STRICT_STOCK_RESERVATION': True,
}


class FakeGateway(PaymentGateway):
    """Records every call; failures are switched on per test."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.intents = {}
        self.created = []
        self.refunds = []
        self.cancelled = []
        self.fail_create = False
        self.fail_refund = False

    def create_intent(self, amount_cents, currency, description, *, metadata=None, idempotency_key=None):
        if self.fail_create:
            raise PaymentGatewayError("Payment gateway timed out", details={"timeout": True})
        intent_id = f"pi_test_{next(self._ids)}"
        self.intents[intent_id] = "requires_payment_method"
        self.created.append({
            "intent_id": intent_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "metadata": metadata or {},
        })
        return IntentResult(intent_id, f"{intent_id}_secret", "requires_payment_method", amount_cents)

    def get_intent_status(self, intent_id):
        if intent_id not in self.intents:
            raise PaymentGatewayError("No such payment intent", details={"status_code": 404})
        return IntentStatus(intent_id, self.intents[intent_id])

    def refund(self, intent_id, *, idempotency_key=None):
        if self.fail_refund:
            raise PaymentGatewayError("Payment gateway unreachable", details={"timeout": False})
        refund_id = f"re_test_{next(self._ids)}"
        self.refunds.append(intent_id)
        return RefundResult(refund_id, "succeeded", 0)

    def cancel_intent(self, intent_id):
        self.cancelled.append(intent_id)
        self.intents[intent_id] = "canceled"
        return IntentStatus(intent_id, "canceled")


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

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
        db.session.expunge_all()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    """Install a fresh fake gateway for the test."""
    previous = app.extensions["payment_gateway"]
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    yield fake
    app.extensions["payment_gateway"] = previous


@pytest.fixture(scope='function')
def branch(db_session):
    branch = Branch(name="Soho", code="SOH", timezone="UTC")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session):
    branch = Branch(name="Camden", code="CAM", timezone="UTC")
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def pizza(db_session, branch):
    """Unmanaged-stock product (always available), 10.00."""
    product = Product(branch_id=branch.id, name="Margherita", base_price_cents=1000)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def tiramisu(db_session, branch):
    """Managed-stock product with 5 on hand, 5.50."""
    product = Product(branch_id=branch.id, name="Tiramisu", base_price_cents=550)
    db_session.add(product)
    db_session.flush()
    db_session.add(StockRecord(product_id=product.id, is_managed=True, quantity=5, low_stock_threshold=2))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def extras(db_session, pizza):
    """Priced options for the pizza: extra cheese 1.50, jalapenos 0.75."""
    group = ProductAttribute(name="Extras", type="multiple")
    db_session.add(group)
    db_session.flush()
    cheese = ProductAttributeItem(product_id=pizza.id, attribute_id=group.id, name="Extra cheese", price_cents=150)
    jalapenos = ProductAttributeItem(product_id=pizza.id, attribute_id=group.id, name="Jalapenos", price_cents=75)
    db_session.add_all([cheese, jalapenos])
    db_session.commit()
    return {"group": group, "cheese": cheese, "jalapenos": jalapenos}


def stock_of(product_id: int) -> int:
    """Current on-hand quantity read straight from the table."""
    db.session.expire_all()
    return db.session.query(StockRecord.quantity).filter_by(product_id=product_id).scalar()
