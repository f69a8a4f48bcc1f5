import fnmatch
import os
import sys
from datetime import date, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Must be set before config is imported
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config
from auth import create_access_token
from bookings import complete_booking, confirm_booking, create_booking
from cache import cache
from database import get_db, init_db
from identity import ensure_client_profile
from main import app
from models import Consultant, Service, User, ROLE_ADMIN, ROLE_CLIENT, ROLE_CONSULTANT
from notifications import notifier
from payments import PaymentIntentResult


class FakeRedis:
    """Dict-backed stand-in for the handful of redis commands the cache uses"""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    def scan_iter(self, match="*"):
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def ping(self):
        return True


class FakePaymentGateway:
    def __init__(self, status="requires_confirmation"):
        self.status = status
        self.calls = []

    async def create_payment_intent(self, amount, method):
        self.calls.append((amount, method))
        return PaymentIntentResult(status=self.status, id=f"pi_{len(self.calls)}")


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "enabled", True)
    monkeypatch.setattr(cache, "redis_client", fake)
    monkeypatch.setattr(cache, "pending_invalidations", set())
    return fake


@pytest.fixture(autouse=True)
def clean_notifications():
    notifier.drain()
    yield
    notifier.drain()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(config, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture(autouse=True)
def booking_rules(monkeypatch):
    monkeypatch.setattr(config, "REQUIRE_PAYMENT_FOR_COMPLETION", False)
    monkeypatch.setattr(config, "REQUIRE_PUBLISHED_SLOTS", False)


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # Not used as a context manager: lifespan would touch the real database
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


def make_user(db, email, role=ROLE_CLIENT, name=None):
    user = User(email=email, name=name or email.split("@")[0].title(), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    if role == ROLE_CLIENT:
        ensure_client_profile(db, user)
        db.commit()
    return user


@pytest.fixture()
def client_user(db):
    return make_user(db, "alice@example.com", name="Alice Client")


@pytest.fixture()
def other_client_user(db):
    return make_user(db, "bob@example.com", name="Bob Client")


@pytest.fixture()
def admin_user(db):
    return make_user(db, "admin@example.com", role=ROLE_ADMIN, name="Site Admin")


@pytest.fixture()
def consultant_user(db):
    return make_user(db, "dana@example.com", role=ROLE_CONSULTANT, name="Dana Consultant")


@pytest.fixture()
def consultant(db, consultant_user):
    profile = Consultant(user_id=consultant_user.id, specialty="Business Strategy", description="Growth advice")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture()
def other_consultant(db):
    user = make_user(db, "erin@example.com", role=ROLE_CONSULTANT, name="Erin Consultant")
    profile = Consultant(user_id=user.id, specialty="Tax")
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return profile


@pytest.fixture()
def service(db, consultant):
    item = Service(
        consultant_id=consultant.id,
        name="Strategy Session",
        description="One hour strategy review",
        price=120.0,
        duration=60,
        category="Business",
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@pytest.fixture()
def booking_day():
    return date.today() + timedelta(days=7)


@pytest.fixture()
def auth_headers():
    def build(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}
    return build


@pytest.fixture()
def book(db, consultant, service, booking_day):
    """Create a booking for a client at the given time, optionally moved along the lifecycle"""

    def build(user, at="10:00", status="pending", day=None, duration=None):
        booking = create_booking(
            db, user,
            consultant_id=consultant.id,
            service_id=service.id,
            date_value=(day or booking_day).isoformat(),
            time_value=at,
            duration=duration,
        )
        consultant_user = db.query(User).filter(User.id == consultant.user_id).one()
        if status in ("confirmed", "completed"):
            booking = confirm_booking(db, consultant_user, booking.id)
        if status == "completed":
            booking = complete_booking(db, consultant_user, booking.id)
        return booking

    return build
