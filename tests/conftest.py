"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
import time
from collections.abc import Callable, Generator
from typing import Any, Optional

# The app engine is never used by the tests, but it is built at import time.
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import config
from app.db.base import Base
from app.db.session import get_db
from app.dependencies.auth import AuthenticatedUser, get_current_user, get_optional_user_id
from app.main import app
from app.models import PromoCode, PromoCodeType, Subscription, SubscriptionStatus, SubscriptionTier

TEST_USER_ID = "5cff2718-2d6a-42ba-aab8-ce494aad3074"
TEST_USER_EMAIL = "learner@example.com"
TEST_STRIPE_SECRET_KEY = "sk_test_123"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

# In-memory SQLite shared across threads and sessions
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def stripe_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STRIPE_SECRET_KEY", TEST_STRIPE_SECRET_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_ID_PREMIUM", "price_premium_monthly")


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, Any, None]:
    """Test client authenticated as TEST_USER_ID, using the test database session."""

    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        id=TEST_USER_ID, email=TEST_USER_EMAIL
    )
    app.dependency_overrides[get_optional_user_id] = lambda: TEST_USER_ID

    # No context manager: startup would run migrations against DATABASE_URL
    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(db_session: Session) -> Generator[TestClient, Any, None]:
    """Test client without an auth override, for 401 and webhook paths."""

    def override_get_db() -> Generator[Session, None, None]:
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def unconfigured_stripe(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "STRIPE_PRICE_ID_PREMIUM"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.setattr(config, name, "")


def sign_stripe_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does (HMAC-SHA256 over "t.payload")."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


@pytest.fixture
def post_stripe_event(anonymous_client: TestClient, stripe_settings: None) -> Callable[..., Any]:
    """Fixture factory: sign and POST a Stripe event to the webhook endpoint."""

    def _post(event_type: str, obj: dict, event_id: str = "evt_test_1", signature: Optional[str] = None):
        payload = stripe_event(event_type, obj, event_id)
        header = signature if signature is not None else sign_stripe_payload(payload)
        return anonymous_client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    return _post


@pytest.fixture
def make_subscription(db_session: Session) -> Callable[..., Subscription]:
    """Fixture factory: insert a subscriptions row."""

    def _make(user_id: str = TEST_USER_ID, **fields: Any) -> Subscription:
        row = Subscription(
            user_id=user_id,
            tier=fields.pop("tier", SubscriptionTier.FREE.value),
            status=fields.pop("status", SubscriptionStatus.ACTIVE.value),
            **fields,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _make


@pytest.fixture
def make_promo(db_session: Session) -> Callable[..., PromoCode]:
    """Fixture factory: insert a promo_codes row directly (no validation)."""

    def _make(code: str = "SUMMER25", **fields: Any) -> PromoCode:
        promo = PromoCode(
            code=code,
            active=fields.pop("active", True),
            current_uses=fields.pop("current_uses", 0),
            type=fields.pop("type", PromoCodeType.DURATION.value),
            duration_months=fields.pop("duration_months", 3),
            **fields,
        )
        db_session.add(promo)
        db_session.commit()
        db_session.refresh(promo)
        return promo

    return _make


@pytest.fixture
def user_id() -> str:
    """The id the authenticated test client acts as."""
    return TEST_USER_ID
