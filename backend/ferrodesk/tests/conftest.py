"""
Root test configuration and fixtures.

Provides an in-memory SQLite record store, a fresh in-memory cache and
the wired entitlement components for every test.

Shared fixtures:
- session_factory: sessionmaker bound to a per-test SQLite StaticPool engine
- settings: EntitlementSettings with zero delays so tests run fast
- cache / store_client / resolver / event_bus: the core components
- seed_subscription: insert rows directly (including expired ones)
- engine / client / auth_headers: the FastAPI app wired to the above
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from ferrodesk.auth.identity import Identity, IdentityProvider
from ferrodesk.config.settings import load_settings
from ferrodesk.database.session import init_schema
from ferrodesk.db_base import Base
from ferrodesk.entitlements.cache import EntitlementCacheLayer
from ferrodesk.entitlements.change_feed import InProcessChangeFeed
from ferrodesk.entitlements.engine import EntitlementEngine
from ferrodesk.entitlements.events import EventBus
from ferrodesk.entitlements.kv_store import InMemoryKeyValueStore
from ferrodesk.entitlements.resolver import EntitlementResolver
from ferrodesk.entitlements.store_client import EntitlementStoreClient
from ferrodesk.entitlements.trial import TrialWorkflow
from ferrodesk.models.base import generate_uuid
from ferrodesk.models.user_subscription import UserSubscription

TEST_JWT_SECRET = "test-secret-key-for-entitlement-tests"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """SQLite in-memory engine shared across threads for one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture
def seed_subscription(session_factory):
    """
    Factory fixture that inserts a user_subscriptions row directly.

    Usage:
        seed_subscription("user-1", "monthly", expires_in_days=30)
        seed_subscription("user-1", "trial", expires_in_days=-1, is_active=False)
    """
    def _seed(
        user_id: str,
        plan_type: str = "monthly",
        expires_in_days: float = 30,
        is_active: bool = True,
        activation_method: str = "admin",
        created_at: Optional[datetime] = None,
    ) -> UserSubscription:
        now = datetime.now(timezone.utc)
        row = UserSubscription(
            id=generate_uuid(),
            user_id=user_id,
            is_active=is_active,
            plan_type=plan_type,
            expires_at=now + timedelta(days=expires_in_days),
            activated_at=now,
            activation_method=activation_method,
            created_at=created_at or now,
        )
        with session_factory() as session:
            session.add(row)
            session.commit()
        return row

    return _seed


# =============================================================================
# Components
# =============================================================================

@pytest.fixture
def settings():
    """Packaged settings with every delay zeroed."""
    return load_settings(environ={}).with_overrides(
        remote_timeout_seconds=2.0,
        remote_max_retries=2,
        retry_base_delay_seconds=0.0,
        trial_propagation_delay_seconds=0.0,
        invalidation_debounce_seconds=0.01,
    )


@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def cache(kv_store):
    return EntitlementCacheLayer(kv_store)


@pytest.fixture
def change_feed():
    return InProcessChangeFeed()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store_client(session_factory, settings, change_feed):
    return EntitlementStoreClient(session_factory, settings, change_feed)


@pytest.fixture
def resolver(store_client, cache, settings):
    return EntitlementResolver(store_client, cache, settings)


@pytest.fixture
def trial_workflow(store_client, cache, event_bus, settings):
    return TrialWorkflow(store_client, cache, event_bus, settings)


# =============================================================================
# Identities
# =============================================================================

@pytest.fixture
def user():
    return Identity(user_id="user-1", email="yard@example.com")


@pytest.fixture
def other_user():
    return Identity(user_id="user-2", email="scale@example.com")


@pytest.fixture
def admin():
    return Identity(user_id="admin-1", email="owner@example.com", role="admin")


@pytest.fixture
def jwt_secret():
    return TEST_JWT_SECRET


@pytest.fixture
def identity_provider(jwt_secret):
    return IdentityProvider(secret=jwt_secret)


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def engine(session_factory, identity_provider, settings, kv_store, change_feed):
    return EntitlementEngine(
        session_factory=session_factory,
        identity_provider=identity_provider,
        settings=settings,
        kv_store=kv_store,
        change_feed=change_feed,
    )


@pytest.fixture
def client(engine):
    """TestClient running the app lifespan (invalidation bus started)."""
    from main import create_app

    app = create_app(engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(identity_provider):
    """
    Factory fixture returning Authorization headers for an identity.

    Usage:
        client.get("/api/entitlements/me", headers=auth_headers(user))
    """
    def _headers(identity: Identity, expires_in: int = 3600) -> dict:
        token = identity_provider.issue_token(identity, expires_in=expires_in)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
