"""
Tests for the Gateway Application Factory.

These tests verify that:
1. create_app() returns a configured FastAPI instance
2. Middleware, exception handler and routes are registered
3. Collaborators are chosen from configuration or injected
4. The lifespan runs migrations for a database store and cleans up on shutdown
"""

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from gateway_metering.auth import RequestIDMiddleware, TrustedHeaderAuthResolver
from gateway_metering.config import LedgerEndpointConfig, MeteringConfig
from gateway_metering.credits import CreditLedgerClient, NoCreditLedger
from gateway_metering.errors import AdmissionDenied, StoreError
from gateway_metering.gateway import app as app_module
from gateway_metering.gateway import build_metering_state, create_app
from gateway_metering.postgres_store import PostgresUsageStore
from gateway_metering.proxy import UnconfiguredProviderProxy
from gateway_metering.rate_limit import RateLimiter
from gateway_metering.store import InMemoryUsageStore


class TestCreateApp:
    """Test the app factory."""

    def test_returns_fastapi(self, memory_store):
        app = create_app(MeteringConfig(), store=memory_store)
        assert isinstance(app, FastAPI)
        assert app.state.metering.store is memory_store

    def test_routes_registered(self, memory_store):
        app = create_app(MeteringConfig(), store=memory_store)
        route_paths = {route.path for route in app.routes}
        assert {
            "/_health/live",
            "/_health/ready",
            "/v1/usage",
            "/v1/transcription/usage",
            "/v1/models",
            "/v1/chat/completions",
            "/v1/web-search",
            "/v1/messages",
            "/anthropic/v1/messages",
            "/v1/listen",
        } <= route_paths

    def test_middleware_and_handler(self, memory_store):
        app = create_app(MeteringConfig(), store=memory_store)
        assert RequestIDMiddleware in [m.cls for m in app.user_middleware]
        assert AdmissionDenied in app.exception_handlers

    def test_custom_title_and_version(self, memory_store):
        app = create_app(MeteringConfig(), store=memory_store, title="Custom Gateway", version="1.2.3")
        assert app.title == "Custom Gateway"
        assert app.version == "1.2.3"


class TestBuildMeteringState:
    def test_defaults_without_backends(self):
        state = build_metering_state(MeteringConfig())

        assert isinstance(state.store, InMemoryUsageStore)
        assert isinstance(state.admission.daily._ledger, NoCreditLedger)
        assert isinstance(state.auth_resolver, TrustedHeaderAuthResolver)
        assert isinstance(state.provider_proxy, UnconfiguredProviderProxy)
        assert state.admission.rate_limiter is None

    def test_configured_backends(self):
        config = MeteringConfig(
            database_url="postgresql://db.test/metering",
            ledger=LedgerEndpointConfig(base_url="https://ledger.test", api_key="k"),
            rate_limit_enabled=True,
            redis_host="redis.test",
            ip_daily_limit=77,
            upgrade_url="https://upgrade.test",
        )

        state = build_metering_state(config)

        assert isinstance(state.store, PostgresUsageStore)
        assert isinstance(state.admission.daily._ledger, CreditLedgerClient)
        assert isinstance(state.admission.rate_limiter, RateLimiter)
        assert state.admission.rate_limiter.redis_host == "redis.test"
        assert state.admission.daily.ip_daily_limit == 77
        assert state.admission.upgrade_url == "https://upgrade.test"

    def test_injected_collaborators_win(self, memory_store, ledger):
        limiter = MagicMock()
        state = build_metering_state(
            MeteringConfig(database_url="postgresql://ignored"),
            store=memory_store,
            ledger=ledger,
            rate_limiter=limiter,
        )
        assert state.store is memory_store
        assert state.admission.daily._ledger is ledger
        assert state.admission.rate_limiter is limiter


class TestLifespan:
    def test_closes_store_and_limiter(self, memory_store):
        limiter = MagicMock()
        limiter.close = AsyncMock()
        memory_store.close = AsyncMock()

        with TestClient(create_app(MeteringConfig(), store=memory_store, rate_limiter=limiter)):
            pass

        memory_store.close.assert_awaited_once()
        limiter.close.assert_awaited_once()

    def test_runs_migrations_for_database_store(self):
        config = MeteringConfig(database_url="postgresql://db.test/metering")
        with patch.object(app_module, "run_migrations", AsyncMock()) as migrate, patch.object(
            PostgresUsageStore, "close", AsyncMock()
        ):
            with TestClient(create_app(config)):
                pass

        migrate.assert_awaited_once_with("postgresql://db.test/metering")

    def test_migration_failure_does_not_block_startup(self):
        config = MeteringConfig(database_url="postgresql://db.test/metering")
        failing = AsyncMock(side_effect=StoreError("migrate", OSError("refused")))
        with patch.object(app_module, "run_migrations", failing), patch.object(
            PostgresUsageStore, "close", AsyncMock()
        ):
            with TestClient(create_app(config)) as client:
                assert client.get("/_health/live").status_code == 200

    def test_migrations_can_be_disabled(self):
        config = MeteringConfig(database_url="postgresql://db.test/metering")
        with patch.object(app_module, "run_migrations", AsyncMock()) as migrate, patch.object(
            PostgresUsageStore, "close", AsyncMock()
        ):
            with TestClient(create_app(config, run_db_migrations=False)):
                pass

        migrate.assert_not_called()
