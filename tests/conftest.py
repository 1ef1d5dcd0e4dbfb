"""
Shared fixtures for the billing test suite.

Environment variables are set before any carepro import so the module-level
settings object picks them up.
"""

import os

TEST_ENV = {
    "ENVIRONMENT": "testing",
    "DATABASE_URL": "sqlite:///:memory:",
    "JWT_SECRET": "test-jwt-secret-with-at-least-32-characters",
    "GATEWAY_PROVIDER": "mock",
    "FLUTTERWAVE_WEBHOOK_HASH": "test-webhook-hash",
    "ENABLE_RATE_LIMITING": "false",
    "ADMIN_NOTIFICATION_RECIPIENTS": "admin-1,admin-2",
    "SENTRY_DSN": "",
    "REDIS_URL": "redis://localhost:6379/1",
}
os.environ.update(TEST_ENV)

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, SQLModel, create_engine, select  # noqa: E402
from sqlmodel.pool import StaticPool  # noqa: E402

from carepro.api.dependencies import get_clock, get_payment_gateway  # noqa: E402
from carepro.api.services.payments import PaymentService  # noqa: E402
from carepro.api.services.subscriptions import SubscriptionService  # noqa: E402
from carepro.core.settings import settings  # noqa: E402
from carepro.db import models  # noqa: E402,F401
from carepro.db.models import Gig, Notification, SubscriptionCreate  # noqa: E402
from carepro.db.session import get_session  # noqa: E402
from carepro.gateway.mock import MockGateway  # noqa: E402

# Test database configuration
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

START_TIME = datetime(2025, 1, 15, 9, 0, 0)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


@pytest.fixture(scope="function")
def setup_test_database():
    """Setup test database for each test."""
    SQLModel.metadata.create_all(test_engine)

    yield test_engine

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(setup_test_database):
    """Get database session for testing."""
    with Session(setup_test_database) as session:
        yield session


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gig(session):
    """A purchasable gig priced at 1000 per visit."""
    return TestHelpers.create_gig(session)


@pytest.fixture
def payment_service(session, gateway, clock):
    with PaymentService(session=session, gateway=gateway, clock=clock) as service:
        yield service


@pytest.fixture
def subscription_service(session, gateway, clock):
    with SubscriptionService(session=session, gateway=gateway, clock=clock) as service:
        yield service


@pytest.fixture
def client(session, gateway, clock):
    """TestClient sharing the test session, gateway and clock."""
    from carepro.api.main import app

    def get_session_override():
        yield session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def helpers():
    return TestHelpers


def auth_headers(user_id: str, role: str = "user", email: str = None) -> dict:
    """Bearer header carrying a JWT signed with the test secret."""
    payload = {
        "sub": user_id,
        "role": role,
        "email": email or f"{user_id}@example.com",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


class TestHelpers:
    """Helper utilities for billing tests."""

    auth_headers = staticmethod(auth_headers)

    @staticmethod
    def create_gig(session, caregiver_id="caregiver-1", price="1000", status="active", title="Home care visit"):
        """Create a gig."""
        gig = Gig(caregiver_id=caregiver_id, title=title, price=Decimal(price), status=status)
        session.add(gig)
        session.commit()
        session.refresh(gig)
        return gig

    @staticmethod
    def create_subscription(service, gig, client_id="client-1", billing_cycle="monthly",
                            frequency_per_week=2, payment_token="tok-card-1", order_id=None):
        """Create a subscription the way a settled recurring purchase does."""
        return service.create_subscription(SubscriptionCreate(
            client_id=client_id,
            caregiver_id=gig.caregiver_id,
            gig_id=gig.id,
            original_order_id=order_id or f"order-{gig.id[:8]}-{client_id}",
            billing_cycle=billing_cycle,
            frequency_per_week=frequency_per_week,
            price_per_visit=gig.price,
            email=f"{client_id}@example.com",
            payment_token=payment_token,
            card_last_four="4242" if payment_token else None,
            card_brand="VISA" if payment_token else None,
            initial_transaction_id="flw-initial-1",
        ))

    @staticmethod
    def reload(session, model, identifier):
        """Fetch a fresh copy of a row, discarding anything cached in the session."""
        session.expire_all()
        return session.get(model, identifier)

    @staticmethod
    def notifications(session, notification_type=None, recipient_role=None):
        statement = select(Notification)
        if notification_type:
            statement = statement.where(Notification.notification_type == notification_type)
        if recipient_role:
            statement = statement.where(Notification.recipient_role == recipient_role)
        return list(session.exec(statement).all())


# Custom markers for test categories
def pytest_collection_modifyitems(config, items):
    """Add custom markers to tests."""
    for item in items:
        if "webhook" in item.name or "webhook" in str(item.fspath):
            item.add_marker(pytest.mark.webhook)
        if "scheduler" in str(item.fspath):
            item.add_marker(pytest.mark.scheduler)
