import datetime
import os
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-access-secret")
os.environ.setdefault("REFRESH_SECRET_KEY", "test-refresh-secret")
os.environ.setdefault("RESET_PASSWORD_SECRET_KEY", "test-reset-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tourhub import auth, models
from tourhub.database import Base, get_db
from tourhub.main import app
from tourhub.rate_limits import ALL_LIMITERS

# --- Test Database Setup ---
# One in-memory database shared by the test session and the webhook threadpool
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Provides a clean database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks everything the app lifespan starts: seeding, the Redis-backed
    rate limiter, the outbox poller and the maintenance scheduler.
    """
    mocker.patch("tourhub.main.run_startup_seeds", new_callable=MagicMock)
    mocker.patch("tourhub.main.FastAPILimiter.init", new_callable=AsyncMock)
    mocker.patch("tourhub.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("tourhub.main.run_maintenance_scheduler", new_callable=AsyncMock)


@pytest.fixture
def stripe_mock(mocker):
    """Replaces every Stripe call made through the payment gateway."""
    gateway = MagicMock()
    gateway.create_checkout_session = mocker.patch(
        "tourhub.payment_gateway.create_checkout_session",
        side_effect=lambda **kwargs: MagicMock(
            id=f"cs_test_{kwargs['metadata']['paymentId']}",
            url=f"https://checkout.stripe.test/{kwargs['metadata']['paymentId']}",
            status="open",
        ),
    )
    gateway.retrieve_checkout_session = mocker.patch(
        "tourhub.payment_gateway.retrieve_checkout_session",
        return_value=MagicMock(status="expired", url=None),
    )
    gateway.construct_event = mocker.patch("tourhub.payment_gateway.construct_event")
    gateway.create_transfer = mocker.patch("tourhub.payment_gateway.create_transfer", return_value="tr_test_1")
    gateway.create_refund = mocker.patch("tourhub.payment_gateway.create_refund", return_value="re_test_1")
    return gateway


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    for limiter in ALL_LIMITERS:
        app.dependency_overrides[limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# --- Data factories ---
def make_user(db, role: models.UserRole, email: str, **profile) -> models.User:
    user = models.User(
        email=email,
        hashed_password=auth.hash_password("secret123"),
        role=role,
        status=models.UserStatus.ACTIVE,
        need_password_change=False,
    )
    db.add(user)
    db.flush()
    name = profile.pop("name", email.split("@")[0])
    if role == models.UserRole.TOURIST:
        db.add(models.Tourist(user_id=user.id, name=name, email=email, **profile))
    elif role == models.UserRole.HOST:
        profile.setdefault("tour_limit", 4)
        profile.setdefault("blog_limit", 5)
        db.add(models.Host(user_id=user.id, name=name, email=email, **profile))
    else:
        db.add(models.Admin(user_id=user.id, name=name, email=email))
    db.commit()
    db.refresh(user)
    return user


def make_tour(db, host: models.Host, days_from_now: int = 10, **fields) -> models.Tour:
    start = models.utcnow() + datetime.timedelta(days=days_from_now)
    values = {
        "title": "Old Town Walk",
        "description": "A guided walk",
        "destination": "Lisbon",
        "price": Decimal("100.00"),
        "max_group_size": 10,
        "start_date": start,
        "end_date": start + datetime.timedelta(days=2),
    }
    values.update(fields)
    tour = models.Tour(host_id=host.id, **values)
    db.add(tour)
    db.commit()
    db.refresh(tour)
    return tour


def make_booking(db, user: models.User, tour: models.Tour, people: int = 1, **fields) -> models.Booking:
    booking = models.Booking(
        tour_id=tour.id,
        user_id=user.id,
        tourist_id=user.tourist.id,
        number_of_people=people,
        total_amount=Decimal(tour.price) * people,
        **fields,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def auth_header(user: models.User) -> dict:
    return {"Authorization": f"Bearer {auth.create_token(user, auth.ACCESS)}"}


@pytest.fixture
def tourist(db_session):
    return make_user(db_session, models.UserRole.TOURIST, "tourist@example.com")


@pytest.fixture
def other_tourist(db_session):
    return make_user(db_session, models.UserRole.TOURIST, "other@example.com")


@pytest.fixture
def host_user(db_session):
    return make_user(db_session, models.UserRole.HOST, "host@example.com")


@pytest.fixture
def admin(db_session):
    return make_user(db_session, models.UserRole.ADMIN, "admin@example.com")
