"""
Pytest configuration and shared fixtures.
"""
import itertools
import pytest
from datetime import date, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_admin.core.models import (
    Base, User, Admin, Property, Booking, Payment, Message, Favorite, KycDocument,
)
from rental_admin.core import duplicate_models  # noqa: F401
from rental_admin.core.config import Settings, reset_settings


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all app-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "JWT_SECRET_KEY",
        "JWT_ALGORITHM",
        "ROLLBACK_WINDOW_MINUTES",
        "STALE_CASE_HOURS",
        "SCAN_LIMIT",
        "EMAIL_API_URL",
        "EMAIL_API_KEY",
        "EMAIL_FROM",
        "EMAIL_PROVIDER",
        "EMAIL_TIMEOUT_SECONDS",
        "LOG_LEVEL",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture(scope="function")
def app_env(clean_env, monkeypatch):
    """Minimal environment the services read settings from."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("JWT_SECRET_KEY", "test-secret")
    reset_settings()
    yield


@pytest.fixture(scope="function")
def test_db():
    """
    Create an in-memory SQLite database for testing.

    Fresh database for each test. StaticPool keeps one connection so the
    TestClient worker thread sees the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session factory
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    # Create session
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_db):
    """
    Alias for test_db fixture.
    """
    yield test_db


# =============================================================================
# Marketplace Fixtures
# =============================================================================

_sequence = itertools.count(1)


@pytest.fixture
def make_user(test_db):
    """Factory for users; every call gets a unique email unless one is given."""
    def _make_user(**kwargs):
        n = next(_sequence)
        values = {
            "name": f"User {n}",
            "email": f"user{n}@example.com",
            "role": "renter",
            "is_active": True,
            "kyc_status": "unsubmitted",
        }
        values.update(kwargs)
        user = User(**values)
        test_db.add(user)
        test_db.commit()
        test_db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_property(test_db, make_user):
    def _make_property(owner=None, **kwargs):
        owner = owner or make_user(role="owner")
        values = {
            "title": "2BHK Flat",
            "location": "Baneshwor, Kathmandu",
            "price": 25000.0,
            "bedrooms": 2,
            "owner_id": owner.id,
            "status": "Approved",
        }
        values.update(kwargs)
        prop = Property(**values)
        test_db.add(prop)
        test_db.commit()
        test_db.refresh(prop)
        return prop

    return _make_property


@pytest.fixture
def make_booking(test_db, make_property):
    def _make_booking(renter, prop=None, start=date(2026, 11, 1), nights=3, status="Approved"):
        prop = prop or make_property()
        booking = Booking(
            property_id=prop.id,
            renter_id=renter.id,
            from_date=start,
            to_date=start + timedelta(days=nights),
            status=status,
        )
        test_db.add(booking)
        test_db.commit()
        test_db.refresh(booking)
        return booking

    return _make_booking


@pytest.fixture
def make_payment(test_db):
    def _make_payment(renter, booking=None, amount=5000.0, status="Paid"):
        payment = Payment(
            booking_id=booking.id if booking else None,
            renter_id=renter.id,
            amount=amount,
            payment_method="eSewa",
            status=status,
        )
        test_db.add(payment)
        test_db.commit()
        test_db.refresh(payment)
        return payment

    return _make_payment


@pytest.fixture
def make_kyc_document(test_db):
    def _make_kyc_document(user, **kwargs):
        n = next(_sequence)
        values = {
            "user_id": user.id,
            "image_url": f"https://cdn.example.com/kyc/{n}.jpg",
            "public_id": f"kyc/{n}",
            "file_hash": f"hash{n}",
            "status": "pending",
        }
        values.update(kwargs)
        doc = KycDocument(**values)
        test_db.add(doc)
        test_db.commit()
        test_db.refresh(doc)
        return doc

    return _make_kyc_document


@pytest.fixture
def add_message(test_db):
    def _add_message(sender, receiver, content="Is the flat available?"):
        message = Message(sender_id=sender.id, receiver_id=receiver.id, content=content)
        test_db.add(message)
        test_db.commit()
        return message

    return _add_message


@pytest.fixture
def add_favorite(test_db):
    def _add_favorite(user, prop):
        favorite = Favorite(user_id=user.id, property_id=prop.id)
        test_db.add(favorite)
        test_db.commit()
        return favorite

    return _add_favorite


# =============================================================================
# Admin Fixtures
# =============================================================================

@pytest.fixture
def ops_admin(test_db):
    """Admin holding duplicates:read and duplicates:write through the ops role."""
    admin = Admin(username="ops", display_name="Ops Admin", role="ops_admin", permissions=[])
    test_db.add(admin)
    test_db.commit()
    test_db.refresh(admin)
    return admin


@pytest.fixture
def readonly_admin(test_db):
    admin = Admin(username="viewer", display_name="Read Only", role="readonly_admin", permissions=[])
    test_db.add(admin)
    test_db.commit()
    test_db.refresh(admin)
    return admin


@pytest.fixture
def mock_email_sender():
    """Email sender stand-in that reports every message as delivered."""
    from unittest.mock import MagicMock

    sender = MagicMock()
    sender.send_merge_notifications.return_value = {
        "source": {"sent": True, "provider": "test", "reason": None, "status_code": 202},
        "target": {"sent": True, "provider": "test", "reason": None, "status_code": 202},
    }
    return sender


@pytest.fixture
def settings(clean_env):
    """Settings built from explicit values only (no env, no .env file)."""
    return Settings(_env_file=None, database_url="sqlite:///:memory:", rollback_window_minutes=30)
