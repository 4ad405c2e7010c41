"""
Pytest configuration for unit tests.

Provides a shared OpenTelemetry tracer provider (so span assertions work in
any test) and the deterministic test doubles the metering core is built to
accept: an in-memory store, a failing store, a scripted credit ledger, a spy
error reporter and a controllable clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

# ============================================================================
# Shared OpenTelemetry configuration - set up once for all tracing tests
# ============================================================================

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.export import SimpleSpanProcessor

from gateway_metering.credits import CreditDeduction
from gateway_metering.errors import FailureKind, StoreError
from gateway_metering.metrics import reset_metering_metrics
from gateway_metering.store import InMemoryUsageStore

# Shared tracer provider and exporter for all tracing tests
_shared_exporter = InMemorySpanExporter()
_shared_provider = TracerProvider()
_shared_provider.add_span_processor(SimpleSpanProcessor(_shared_exporter))

# Set the global tracer provider once
trace.set_tracer_provider(_shared_provider)


@pytest.fixture
def shared_span_exporter():
    """
    Provides the shared span exporter for tests that need to verify spans.

    Clears spans before and after each test.
    """
    _shared_exporter.clear()
    yield _shared_exporter
    _shared_exporter.clear()


@pytest.fixture(autouse=True)
def _reset_metering_metrics():
    """Reset the metrics singleton between tests."""
    yield
    reset_metering_metrics()


# ============================================================================
# Test doubles
# ============================================================================


class ScriptedLedger:
    """Credit ledger double with a scripted deduction outcome."""

    def __init__(self, balance: float = 0, fail_with: FailureKind | None = None):
        self.balance = balance
        self.fail_with = fail_with
        self.deduct_calls: list[tuple[str, str]] = []
        self.balance_calls: list[str] = []

    async def deduct(self, account_id: str, reason: str) -> CreditDeduction:
        self.deduct_calls.append((account_id, reason))
        if self.fail_with is not None:
            return CreditDeduction(success=False, failure=self.fail_with)
        if self.balance < 1:
            return CreditDeduction(
                success=False,
                failure=FailureKind.LEDGER_REJECTED,
                error_message="insufficient balance",
            )
        self.balance -= 1
        return CreditDeduction(success=True, remaining=self.balance, transaction_id="tx-1")

    async def get_balance(self, account_id: str) -> float:
        self.balance_calls.append(account_id)
        if self.fail_with is not None:
            return 0
        return self.balance


class FailingUsageStore(InMemoryUsageStore):
    """Store whose every operation raises StoreError."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def _fail(self, operation: str) -> None:
        self.calls += 1
        raise StoreError(operation, ConnectionError("connection refused"))

    async def get_usage(self, key):
        self._fail("get_usage")

    async def save_usage(self, record):
        self._fail("save_usage")

    async def get_transcription(self, key):
        self._fail("get_transcription")

    async def create_transcription(self, record):
        self._fail("create_transcription")

    async def add_transcription_minutes(self, key, minutes, tier):
        self._fail("add_transcription_minutes")

    async def accumulate_transcription(self, key, minutes, tier):
        self._fail("accumulate_transcription")

    async def check_health(self):
        self._fail("check_health")


class SpyReporter:
    """ErrorReporter double recording every report."""

    def __init__(self) -> None:
        self.reports: list[tuple[BaseException, dict[str, Any]]] = []

    def report(self, error: BaseException, context: dict[str, Any]) -> None:
        self.reports.append((error, context))


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def memory_store() -> InMemoryUsageStore:
    return InMemoryUsageStore()


@pytest.fixture
def failing_store() -> FailingUsageStore:
    return FailingUsageStore()


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest.fixture
def spy_reporter() -> SpyReporter:
    return SpyReporter()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 14, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def make_ledger():
    """Factory for ledgers with a scripted balance or failure."""
    return ScriptedLedger
