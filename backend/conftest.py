"""
Shared fixtures: in-memory database, signed-in users and Stripe stubs
"""
import os

# Settings are cached on first import, so the environment must be set before the app loads
os.environ.update({
    "DATABASE_URL": "sqlite://",
    "REDIS_URL": "",
    "LOG_FORMAT": "text",
    "LOG_LEVEL": "WARNING",
    "HOLD_REAPER_INTERVAL": "0",
    "SUPABASE_URL": "https://test.supabase.co",
    "SUPABASE_ANON_KEY": "anon-key",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "STRIPE_PRICE_PREMIUM": "price_premium",
    "STRIPE_PRICE_PRO": "price_pro",
    "STRIPE_PRICE_ENTERPRISE": "price_enterprise",
    "XAI_API_KEY": "",
    "MAPBOX_ACCESS_TOKEN": "",
    "GOOGLE_MAPS_API_KEY": "",
    "GOOGLE_PLACES_API_KEY": "",
    "TFL_API_KEY": "",
    "FCM_SERVER_KEY": "",
    "CRON_SECRET": "cron-secret",
})

import pytest
from datetime import datetime
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import patch

from auth import get_current_user, get_optional_user
from cache import cache
from database import get_db
from main import app
from models import Base, ParkingSpot, Profile, SubscriptionStatus, SubscriptionTier, UserRole

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db():
    """Fresh schema for every test"""
    Base.metadata.create_all(bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_cache():
    cache.memory_cache.clear()
    yield
    cache.memory_cache.clear()


@pytest.fixture
def client(db):
    """Test client whose requests share the test session"""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_optional_user] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Make requests run as the given profile"""
    def _login(profile):
        app.dependency_overrides[get_current_user] = lambda: profile
        app.dependency_overrides[get_optional_user] = lambda: profile
        return profile
    return _login


@pytest.fixture
def make_profile(db):
    def _make(user_id="user-1", tier=SubscriptionTier.FREE, status=SubscriptionStatus.INACTIVE,
              role=UserRole.USER, **kwargs):
        profile = Profile(
            id=user_id,
            email=kwargs.pop("email", f"{user_id}@example.com"),
            role=role,
            subscription_tier=tier,
            subscription_status=status,
            tags=[],
            **kwargs
        )
        db.add(profile)
        db.commit()
        return profile
    return _make


@pytest.fixture
def premium_user(make_profile):
    return make_profile("premium-1", SubscriptionTier.PREMIUM, SubscriptionStatus.ACTIVE)


@pytest.fixture
def admin_user(make_profile):
    return make_profile("admin-1", role=UserRole.ADMIN)


@pytest.fixture
def make_spot(db):
    def _make(latitude=40.7580, longitude=-73.9855, **kwargs):
        spot = ParkingSpot(
            name=kwargs.pop("name", "Times Square Garage"),
            latitude=latitude,
            longitude=longitude,
            is_available=kwargs.pop("is_available", True),
            status=kwargs.pop("status", "active"),
            **kwargs
        )
        db.add(spot)
        db.commit()
        return spot
    return _make


@pytest.fixture
def stripe_intents():
    """Stub PaymentIntent calls; each create returns a new intent id"""
    counter = {"n": 0}

    def _create(**params):
        counter["n"] += 1
        intent_id = f"pi_test_{counter['n']}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret", **params}

    with patch("stripe.PaymentIntent.create", side_effect=_create) as create, \
            patch("stripe.PaymentIntent.cancel") as cancel, \
            patch("stripe.Refund.create") as refund:
        yield {"create": create, "cancel": cancel, "refund": refund}


class FrozenClock:
    """Adjustable clock for services that take one"""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 6, 3, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FrozenClock()
