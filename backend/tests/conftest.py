"""
Pytest fixtures for Stockflow backend tests.

Provides an in-memory database per test, one user at every tier of the
distribution hierarchy, a seeded product and helpers that drive a stock
request through payment and approval.
"""

import itertools

import pytest
from stockflow import create_app
from stockflow.extensions import db
from stockflow.models import Role
from stockflow.services import auth_service, catalog_service, request_service
from stockflow.services.receipt_storage import ReceiptStore


PASSWORD = "Password123!"


class MemoryReceiptStore(ReceiptStore):
    """Receipt store that keeps nothing; hands out sequential references."""

    def __init__(self):
        self._counter = itertools.count(1)
        self.saved = []
        self.discarded = []

    def save(self, image):
        ref = f"receipts/test-{next(self._counter)}.png"
        self.saved.append(ref)
        return ref

    def discard(self, ref):
        self.discarded.append(ref)


@pytest.fixture(scope='function')
def app(tmp_path):
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'RECEIPT_UPLOAD_DIR': str(tmp_path / "receipts"),
        'RECEIPT_MAX_BYTES': 1024,
        'PAYMENT_UPI_ID': 'stockflow@testbank',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    return db.session


@pytest.fixture(scope='function')
def receipt_store():
    return MemoryReceiptStore()


def _make_user(username, role, parent=None):
    user = auth_service.create_user(
        username,
        f"{username}@stockflow.test",
        PASSWORD,
        role,
        parent_id=parent.id if parent else None,
    )
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def issuer(db_session):
    return _make_user("issuer", Role.ISSUER)


@pytest.fixture(scope='function')
def regional(db_session, issuer):
    return _make_user("regional", Role.REGIONAL_DISTRIBUTOR, issuer)


@pytest.fixture(scope='function')
def distributor(db_session, regional):
    return _make_user("dealer1", Role.DISTRIBUTOR, regional)


@pytest.fixture(scope='function')
def other_distributor(db_session, regional):
    return _make_user("dealer2", Role.DISTRIBUTOR, regional)


@pytest.fixture(scope='function')
def field_agent(db_session, distributor):
    return _make_user("agent1", Role.FIELD_AGENT, distributor)


@pytest.fixture(scope='function')
def product(db_session):
    """Product with 1000 units of central stock, 10 packets of 150 cents per unit."""
    product = catalog_service.create_product(
        "Seed Mix",
        packet_price_cents=150,
        packets_per_unit=10,
        stock_units=1000,
    )
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def verified_request(db_session, distributor, issuer, product, receipt_store):
    """Factory: submit a request and drive it to payment_status=verified."""
    def _make(quantity, requester=None):
        requester = requester or distributor
        req = request_service.submit_request(requester.id, product.id, quantity)
        request_service.attach_receipt(req.id, requester.id, image=None, store=receipt_store)
        request_service.verify_payment(req.id, issuer.id)
        db_session.commit()
        return req
    return _make


@pytest.fixture(scope='function')
def approved_lot(db_session, issuer, verified_request):
    """Factory: approve a verified request of the given size and return its lot."""
    def _make(quantity, requester=None):
        req = verified_request(quantity, requester)
        request_service.approve_request(req.id, issuer.id)
        db_session.commit()
        return req.lot
    return _make


def get_auth_token(client, username: str, password: str = PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.json.get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def issuer_headers(client, issuer):
    return auth_headers(get_auth_token(client, issuer.username))


@pytest.fixture(scope='function')
def regional_headers(client, regional):
    return auth_headers(get_auth_token(client, regional.username))


@pytest.fixture(scope='function')
def distributor_headers(client, distributor):
    return auth_headers(get_auth_token(client, distributor.username))


@pytest.fixture(scope='function')
def field_agent_headers(client, field_agent):
    return auth_headers(get_auth_token(client, field_agent.username))
