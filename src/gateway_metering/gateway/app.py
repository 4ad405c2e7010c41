"""
Gateway Application Factory (Composition Root)
==============================================

Wires the metering core into a FastAPI app in one place.

Load Order:
1. Load configuration (``MeteringConfig.from_env`` unless given)
2. Build collaborators: usage store, identity resolver, credit ledger,
   trackers, rate limiter, admission service
3. Add middleware (request correlation)
4. Register exception handler for admission denials
5. Register routes (health, usage, metered proxy)
6. Lifespan: HTTP client pool, metrics, migrations; cleanup on shutdown

Every collaborator can be injected, which is how tests run the full HTTP
surface against in-memory doubles.

Usage:
    from gateway_metering.gateway import create_app

    app = create_app()                       # from environment
    app = create_app(config, provider_proxy=MyProxy())
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from opentelemetry import metrics

from ..admission import AdmissionService
from ..auth import AuthResolver, RequestIDMiddleware, TrustedHeaderAuthResolver
from ..config import MeteringConfig
from ..credits import CreditLedger, CreditLedgerClient, NoCreditLedger
from ..daily_quota import DailyQuotaTracker
from ..errors import AdmissionDenied, StoreError
from ..http_client_pool import shutdown_http_client_pool, startup_http_client_pool
from ..identity import HttpIdentityDirectory, IdentityResolver
from ..metrics import init_metering_metrics
from ..observability import ErrorReporter
from ..postgres_store import PostgresUsageStore, run_migrations
from ..proxy import ProviderProxy, UnconfiguredProviderProxy
from ..rate_limit import RateLimiter
from ..routes import (
    MeteringState,
    admission_denied_handler,
    health_router,
    proxy_router,
    usage_router,
)
from ..store import InMemoryUsageStore, UsageStore
from ..transcription import TranscriptionQuotaTracker

logger = logging.getLogger(__name__)


def build_ledger(config: MeteringConfig) -> CreditLedger:
    """Credit ledger for the configured endpoint, or a no-credit stand-in."""
    if config.ledger is None:
        return NoCreditLedger()
    resolver = IdentityResolver(HttpIdentityDirectory(config.ledger))
    return CreditLedgerClient(config.ledger, resolver)


def build_store(config: MeteringConfig) -> UsageStore:
    if config.database_url:
        return PostgresUsageStore(config.database_url)
    logger.warning("DATABASE_URL not set: usage counters are kept in memory")
    return InMemoryUsageStore()


def build_metering_state(
    config: MeteringConfig,
    *,
    store: UsageStore | None = None,
    ledger: CreditLedger | None = None,
    provider_proxy: ProviderProxy | None = None,
    auth_resolver: AuthResolver | None = None,
    rate_limiter: RateLimiter | None = None,
    reporter: ErrorReporter | None = None,
) -> MeteringState:
    """Assemble the admission pipeline and its collaborators."""
    store = store if store is not None else build_store(config)
    ledger = ledger if ledger is not None else build_ledger(config)

    if rate_limiter is None and config.rate_limit_enabled:
        rate_limiter = RateLimiter(
            redis_host=config.redis_host,
            redis_port=config.redis_port,
            policies=config.tier_policies,
        )

    daily = DailyQuotaTracker(
        store,
        ledger,
        policies=config.tier_policies,
        ip_daily_limit=config.ip_daily_limit,
        reporter=reporter,
    )
    transcription = TranscriptionQuotaTracker(
        store, ledger, policies=config.tier_policies, reporter=reporter
    )
    admission = AdmissionService(
        daily,
        transcription,
        policies=config.tier_policies,
        rate_limiter=rate_limiter,
        upgrade_url=config.upgrade_url,
    )
    if auth_resolver is None:
        auth_resolver = TrustedHeaderAuthResolver(trusted_proxy_hops=config.trusted_proxy_hops)
    return MeteringState(
        config=config,
        store=store,
        admission=admission,
        auth_resolver=auth_resolver,
        provider_proxy=provider_proxy or UnconfiguredProviderProxy(),
    )


def _configure_middleware(app: FastAPI) -> None:
    # Request ID middleware - should be outermost for correlation
    app.add_middleware(RequestIDMiddleware)
    logger.debug("Added RequestIDMiddleware")


def _register_routes(app: FastAPI) -> None:
    app.include_router(health_router, prefix="")
    app.include_router(usage_router, prefix="")
    app.include_router(proxy_router, prefix="")
    logger.debug("Registered health, usage and proxy routes")


def create_app(
    config: MeteringConfig | None = None,
    *,
    store: UsageStore | None = None,
    ledger: CreditLedger | None = None,
    provider_proxy: ProviderProxy | None = None,
    auth_resolver: AuthResolver | None = None,
    rate_limiter: RateLimiter | None = None,
    reporter: ErrorReporter | None = None,
    run_db_migrations: bool = True,
    title: str = "Metered AI Gateway",
    version: str = "0.1.0",
) -> FastAPI:
    """
    Create the metered gateway app.

    Args:
        config: Metering configuration (default: loaded from environment)
        store / ledger / provider_proxy / auth_resolver / rate_limiter /
            reporter: collaborator overrides
        run_db_migrations: Create the usage tables on startup when a
            database is configured (default: True)

    Returns:
        A new FastAPI application instance
    """
    config = config or MeteringConfig.from_env()
    state = build_metering_state(
        config,
        store=store,
        ledger=ledger,
        provider_proxy=provider_proxy,
        auth_resolver=auth_resolver,
        rate_limiter=rate_limiter,
        reporter=reporter,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await startup_http_client_pool()
        init_metering_metrics(metrics.get_meter("gateway_metering"))

        if run_db_migrations and isinstance(state.store, PostgresUsageStore):
            try:
                await run_migrations(config.database_url)
            except StoreError as e:
                # Admission fails open while the database is unreachable.
                logger.error(f"Usage DB migrations failed: {e}")
        try:
            yield
        finally:
            await state.store.close()
            if state.admission.rate_limiter is not None:
                await state.admission.rate_limiter.close()
            await shutdown_http_client_pool()

    app = FastAPI(title=title, version=version, lifespan=lifespan)
    app.state.metering = state

    _configure_middleware(app)
    app.add_exception_handler(AdmissionDenied, admission_denied_handler)
    _register_routes(app)

    logger.info("Metered gateway app created")
    return app
