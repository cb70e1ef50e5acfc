"""Tests for record store engine setup and the env-built application."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import inspect

from ferrodesk.database.session import (
    build_db_engine,
    database_url_from_env,
    get_db_engine,
    get_session_factory,
    init_schema,
    reset_db_engine,
)


@pytest.fixture
def sqlite_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_db_engine()
    yield
    reset_db_engine()


class TestDatabaseUrl:

    def test_missing_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError):
            database_url_from_env()

    def test_legacy_postgres_scheme_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://app:pw@db:5432/ferrodesk")

        assert database_url_from_env() == "postgresql://app:pw@db:5432/ferrodesk"


class TestEngine:

    def test_engine_and_factory_are_cached(self, sqlite_env):
        engine = get_db_engine()

        assert get_db_engine() is engine
        assert get_session_factory() is get_session_factory()

    def test_reset_rebuilds(self, sqlite_env):
        first = get_db_engine()

        reset_db_engine()

        assert get_db_engine() is not first

    def test_init_schema_creates_partial_indexes(self):
        engine = build_db_engine("sqlite://")

        init_schema(engine)

        indexes = {i["name"] for i in inspect(engine).get_indexes("user_subscriptions")}
        assert "uq_user_subscriptions_one_active" in indexes
        assert "uq_user_subscriptions_one_trial" in indexes
        engine.dispose()


class TestAppFromEnv:
    """The lifespan builds the engine when none is injected."""

    def test_lifespan_builds_engine(self, sqlite_env, monkeypatch, jwt_secret, user):
        from main import create_app

        monkeypatch.setenv("AUTH_JWT_SECRET", jwt_secret)
        app = create_app()

        with TestClient(app) as client:
            health = client.get("/health").json()
            token = app.state.engine.identity_provider.issue_token(user)
            me = client.get("/api/entitlements/me", headers={"Authorization": f"Bearer {token}"})

        assert health["database_configured"] is True
        assert health["cache_backend"] == "memory"
        assert health["invalidation_bus_running"] is True
        assert me.status_code == 200
        assert me.json()["has_access"] is False
