import random
import string
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from booking_engine.app import create_app
from booking_engine.app.auth import actor_for
from booking_engine.app.cache import SlotCache
from booking_engine.app.dependencies import UserRole, create_db_engine, get_db, get_notifier, get_slot_cache
from booking_engine.app.models import Base, Organization, Service, User, utcnow
from booking_engine.app.notifications import NotificationResult
from booking_engine.app.workflow import AvailabilityProposal, ServiceConfigInput, propose_availability


def generate_random_email(role):
    return f"test_{role}_{''.join(random.choices(string.ascii_lowercase + string.digits, k=8))}@example.com"


def future_day(days=3):
    """Midnight (naive UTC) a few days from now."""
    return datetime.combine((utcnow() + timedelta(days=days)).date(), datetime.min.time())


def at(day, hour, minute=0):
    return day + timedelta(hours=hour, minutes=minute)


def persist(session_factory, obj):
    """Commit a row from its own short session and hand it back detached with its columns loaded.

    SQLite transactions here start with BEGIN IMMEDIATE, so a fixture session left
    inside a transaction would hold the write lock for the rest of the test.
    """
    session = session_factory(expire_on_commit=False)
    try:
        session.add(obj)
        session.commit()
    finally:
        session.close()
    return obj


def create_user(session_factory, role, organization_id=None):
    return persist(session_factory, User(name=f"Test {role.capitalize()}", email=generate_random_email(role),
                                         hashed_password="unused", role=role, organization_id=organization_id))


def service_config(service, duration=30, gap=0, price="50.00", online=False):
    return ServiceConfigInput(service_id=service.id, duration_minutes=duration, gap_minutes=gap,
                              price=Decimal(price), is_online_available=online)


def create_window(db, actor_user, provider, services, start, end, organization_id=None, cache=None, notifier=None,
                  **kwargs):
    proposal = AvailabilityProposal(provider_id=provider.id, start_time=start, end_time=end, services=services,
                                    organization_id=organization_id, **kwargs)
    result = propose_availability(db, actor_for(actor_user), proposal, cache=cache, notifier=notifier)
    assert result.success, result.error
    # end the read transaction the proposal left open
    db.rollback()
    return result.data


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'booking.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    yield engine
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
def redis_mock():
    redis = MagicMock()
    redis.get.return_value = None
    return redis


@pytest.fixture
def cache(redis_mock):
    return SlotCache(redis_mock, ttl=60, statistics_ttl=60)


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.notify.return_value = NotificationResult(success=True)
    return notifier


@pytest.fixture
def organization(session_factory):
    return persist(session_factory, Organization(name="Harbour Clinic"))


@pytest.fixture
def provider(session_factory):
    return create_user(session_factory, UserRole.PROVIDER.value)


@pytest.fixture
def other_provider(session_factory):
    return create_user(session_factory, UserRole.PROVIDER.value)


@pytest.fixture
def org_member(session_factory, organization):
    return create_user(session_factory, UserRole.ORGANIZATION.value, organization_id=organization.id)


@pytest.fixture
def client_user(session_factory):
    return create_user(session_factory, UserRole.CLIENT.value)


@pytest.fixture
def admin(session_factory):
    return create_user(session_factory, UserRole.ADMIN.value)


@pytest.fixture
def service(session_factory):
    return persist(session_factory, Service(name="Consultation"))


@pytest.fixture
def second_service(session_factory):
    return persist(session_factory, Service(name="Follow-up"))


@pytest.fixture
def client(database_url, engine, session_factory, redis_mock, notifier):
    app = create_app(database_url)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_slot_cache] = lambda: SlotCache(redis_mock, ttl=60, statistics_ttl=60)
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
