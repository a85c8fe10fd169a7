"""
Pytest fixtures for orderdesk backend tests.

Provides test database setup, catalog/customer factories, a test client and
helpers for signing gateway notifications.
"""

import pytest
from orderdesk import create_app
from orderdesk.extensions import db, summary_cache
from orderdesk.models import Product, Customer
from orderdesk.services import identity_service
from orderdesk.services.gateway import get_gateway


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'VNPAY_TMN_CODE': 'TESTTMN1',
    'VNPAY_HASH_SECRET': 'test-hash-secret',
    'VNPAY_RETURN_URL': 'http://localhost:5173/payment/result',
}


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
        summary_cache.invalidate()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: make_product(price, stock, name=...) -> product id."""
    counter = {"n": 0}

    def _make(selling_price=10000, current_stock=10, name=None):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:04d}",
            name=name or f"Product {counter['n']}",
            selling_price=selling_price,
            current_stock=current_stock,
        )
        db_session.add(product)
        db_session.commit()
        return product.id

    return _make


@pytest.fixture(scope='function')
def customer(db_session):
    c = Customer(external_id="cust-1", name="Nguyen Van A", email="a@example.com")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def admin(db_session):
    c = Customer(external_id="admin-1", name="Shop Admin", is_admin=True)
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def customer_headers(customer):
    token = identity_service.issue_token(customer.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope='function')
def admin_headers(admin):
    token = identity_service.issue_token(admin.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def shipping():
    return {
        "recipient_name": "Nguyen Van A",
        "recipient_phone": "0901234567",
        "shipping_address": "12 Le Loi, District 1, Ho Chi Minh City",
        "recipient_email": "a@example.com",
    }


@pytest.fixture
def signed_params(app):
    """Build a gateway callback query string signed with the test secret."""
    def _build(txn_ref, amount, response_code="00", transaction_no="14000001", **extra):
        gateway = get_gateway()
        params = {
            "vnp_TmnCode": app.config["VNPAY_TMN_CODE"],
            "vnp_Amount": str(amount * 100),
            "vnp_TxnRef": txn_ref,
            "vnp_ResponseCode": response_code,
            "vnp_TransactionStatus": response_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_BankCode": "NCB",
            "vnp_BankTranNo": "VNP14000001",
            "vnp_CardType": "ATM",
            "vnp_PayDate": "20260115103000",
            "vnp_OrderInfo": f"Thanh toan don hang {txn_ref}",
        }
        params.update(extra)
        params["vnp_SecureHash"] = gateway.sign_params(params)
        return params

    return _build
