"""
Pytest fixtures for offer ledger backend tests.

Provides an application on in-memory SQLite, admin/buyer users with bearer
headers, offer factories, and a notifier that records instead of sending.
"""

from decimal import Decimal

import pytest
from offer_ledger import create_app
from offer_ledger.extensions import db
from offer_ledger.models.auth import ROLE_ADMIN, ROLE_BUYER
from offer_ledger.services import notification_service, offer_service, session_service
from offer_ledger.services.auth_service import Principal, create_user


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'NOTIFY_ASYNC': False,
    'NOTIFY_WEBHOOK_URL': None,
    'PROOF_STORAGE_URL': None,
    'LOG_LEVEL': 'INFO',
}


class RecordingNotifier:
    """Collects notification payloads for assertions."""

    def __init__(self):
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)

    def events(self):
        return [p['event'] for p in self.sent]


@pytest.fixture(scope='function')
def app():
    """Create application for testing (fresh in-memory database per test)."""
    app = create_app(TEST_CONFIG)

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
    yield db.session
    db.session.rollback()


@pytest.fixture(scope='function')
def notifier(app):
    """Swap in a recording notifier (delivery stays synchronous)."""
    recorder = RecordingNotifier()
    notification_service.init_app(app, notifier=recorder)
    return recorder


@pytest.fixture(scope='function')
def admin(db_session):
    return create_user("admin@ledger.test", ROLE_ADMIN, "Ada Admin")


@pytest.fixture(scope='function')
def second_admin(db_session):
    return create_user("ops@ledger.test", ROLE_ADMIN, "Otto Ops")


@pytest.fixture(scope='function')
def buyer(db_session):
    return create_user("buyer@ledger.test", ROLE_BUYER, "Tendai Moyo")


@pytest.fixture(scope='function')
def other_buyer(db_session):
    return create_user("other@ledger.test", ROLE_BUYER, "Rudo Banda")


@pytest.fixture(scope='function')
def admin_principal(admin):
    return Principal.for_user(admin)


@pytest.fixture(scope='function')
def second_admin_principal(second_admin):
    return Principal.for_user(second_admin)


@pytest.fixture(scope='function')
def buyer_principal(buyer):
    return Principal.for_user(buyer)


@pytest.fixture(scope='function')
def other_buyer_principal(other_buyer):
    return Principal.for_user(other_buyer)


@pytest.fixture(scope='function')
def admin_headers(admin):
    _, token = session_service.create_session(admin.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def buyer_headers(buyer):
    _, token = session_service.create_session(buyer.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def other_buyer_headers(other_buyer):
    _, token = session_service.create_session(other_buyer.id)
    return auth_headers(token)


@pytest.fixture(scope='function')
def make_offer(db_session):
    """Factory: submit a pending offer with sensible defaults."""
    def _make(principal, **overrides):
        fields = {
            'property_id': 'prop-harare-001',
            'offer_price': Decimal('250000.00'),
            'currency': 'USD',
            'deposit_amount': Decimal('25000.00'),
            'payment_method': 'installments',
            'estimated_timeline': '6_months',
        }
        fields.update(overrides)
        return offer_service.submit(principal, **fields)
    return _make


@pytest.fixture(scope='function')
def approved_offer(make_offer, buyer_principal, admin_principal):
    """A 250,000 USD offer approved by the admin, with its invoice issued."""
    offer = make_offer(buyer_principal)
    return offer_service.approve(admin_principal, offer.id)


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
