"""
Shared fixtures: an in-memory SQLite store, a fresh change feed per test and
a dispatcher that records events instead of delivering them.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import db_models  # noqa: F401  (registers tables)
from app.models.db_models import ActorRole, PaymentStatus
from app.models.order_models import Actor, PackageSnapshot
from app.services.orders.notifications import NotificationDispatcher
from app.services.orders.order_service import OrderService
from app.services.orders.persistence import ChangeFeed


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

REQUESTER = Actor(user_id="client-1", role=ActorRole.REQUESTER)
PROVIDER = Actor(user_id="freelancer-1", role=ActorRole.PROVIDER)
ADMIN = Actor(user_id="admin-1", role=ActorRole.ADMINISTRATOR)
OTHER_REQUESTER = Actor(user_id="client-2", role=ActorRole.REQUESTER)

DEFAULT_PACKAGE = PackageSnapshot(revision_limit=3, delivery_time_days=5, price=Decimal("150000"))


class RecordingSink:
    """Collects every NotificationEvent it receives."""

    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    return NotificationDispatcher([sink])


@pytest.fixture
def service(db, dispatcher, feed):
    return OrderService(db, dispatcher=dispatcher, feed=feed)


@pytest.fixture
def make_order(service):
    """Place an order, optionally paid, as REQUESTER with PROVIDER."""
    def _make(package=DEFAULT_PACKAGE, paid=False, now=NOW, title="Desain logo"):
        order = service.create_order(
            requester_id=REQUESTER.user_id,
            provider_id=PROVIDER.user_id,
            title=title,
            package=package,
            now=now,
        )
        if paid:
            order = service.confirm_payment(order.id, ADMIN, now=now)
            assert order.payment_status == PaymentStatus.PAID
        return order
    return _make


@pytest.fixture
def active_order(service, make_order):
    order = make_order(paid=True)
    service.perform_action(order.id, "accept", PROVIDER, now=NOW + timedelta(hours=1))
    return service.gateway.get_order(order.id)


@pytest.fixture
def delivered_order(service, active_order):
    service.perform_action(active_order.id, "deliver", PROVIDER, now=NOW + timedelta(days=2))
    return service.gateway.get_order(active_order.id)
