"""
Pytest fixtures for the duka order engine tests.

Provides an in-memory application, per-test data reset, catalog fixtures,
a scripted payment gateway and actor headers for the API.
"""

import pytest

from duka import create_app
from duka.extensions import db
from duka.models import Customer, Product, Supplier
from duka.services.mpesa_gateway import StkPushAccepted, StkQueryResult


class FakeGateway:
    """Stands in for MpesaGateway; records calls and returns scripted answers."""

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.query_results = {}
        self.initiate_error = None
        self.query_error = None
        self._counter = 0

    def initiate(self, phone_number, amount, account_reference, transaction_desc):
        if self.initiate_error:
            raise self.initiate_error
        self._counter += 1
        self.pushes.append({
            "phone_number": phone_number,
            "amount": amount,
            "account_reference": account_reference,
            "transaction_desc": transaction_desc,
        })
        return StkPushAccepted(
            merchant_request_id=f"29115-{self._counter}",
            checkout_request_id=f"ws_CO_TEST_{self._counter}",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    def query(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        if self.query_error:
            raise self.query_error
        return self.query_results.get(
            checkout_request_id,
            StkQueryResult(result_code=None, result_desc="The transaction is being processed"),
        )


def stk_callback(checkout_request_id, result_code=0, receipt="QKA1B2C3D4", amount=232, phone=254712345678):
    """Daraja STK callback envelope."""
    callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261018102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDER_RETRY_ATTEMPTS': 3,
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
def gateway(app):
    """Replace the app's M-Pesa gateway with a scripted fake."""
    original = app.extensions["mpesa_gateway"]
    fake = FakeGateway()
    app.extensions["mpesa_gateway"] = fake
    yield fake
    app.extensions["mpesa_gateway"] = original


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(name="Wanjiku Kamau", phone="254712345678", is_active=True)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Bidco Distributors", contact_person="Otieno", phone="254722000111", is_active=True)
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory for products; defaults to 100.00 KES at 16% VAT added on top."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "sku": f"SKU-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "selling_price_cents": 10000,
            "cost_price_cents": 7000,
            "vat_rate_bps": 1600,
            "is_vat_inclusive": False,
            "quantity_in_stock": 50,
            "is_service": False,
            "is_active": True,
        }
        fields.update(overrides)
        product = Product(**fields)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product(name="Unga 2kg")


@pytest.fixture(scope='function')
def service_product(make_product):
    return make_product(name="Delivery", selling_price_cents=20000, quantity_in_stock=0, is_service=True)


def actor_headers(role="cashier", actor_id=7) -> dict:
    return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}


@pytest.fixture
def cashier_headers():
    return actor_headers("cashier", 7)


@pytest.fixture
def manager_headers():
    return actor_headers("manager", 3)


@pytest.fixture
def clerk_headers():
    return actor_headers("inventory_clerk", 11)
