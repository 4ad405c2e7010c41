"""
Unit Tests for the Failure Taxonomy
===================================

Tests cover:
1. Failure kind -> fail-open / fail-closed policy table
2. StoreError message, cause and kind
3. AdmissionDenied payload access

Run tests:
    uv run pytest tests/unit/test_errors.py -v
"""

import pytest

from gateway_metering.errors import (
    AdmissionDenied,
    FailureKind,
    FailurePolicy,
    StoreError,
    failure_policy,
)


class TestFailurePolicy:
    @pytest.mark.parametrize(
        "kind, expected",
        [
            (FailureKind.STORE_UNAVAILABLE, FailurePolicy.FAIL_OPEN),
            (FailureKind.LEDGER_UNAVAILABLE, FailurePolicy.FAIL_CLOSED),
            (FailureKind.LEDGER_REJECTED, FailurePolicy.FAIL_CLOSED),
            (FailureKind.IDENTITY_UNRESOLVABLE, FailurePolicy.NO_ACCOUNT),
        ],
    )
    def test_table(self, kind, expected):
        assert failure_policy(kind) is expected

    def test_every_kind_has_a_policy(self):
        for kind in FailureKind:
            assert isinstance(failure_policy(kind), FailurePolicy)


class TestStoreError:
    def test_message_and_cause(self):
        cause = TimeoutError("5s")
        error = StoreError("save_usage", cause)

        assert str(error) == "usage store save_usage failed: 5s"
        assert error.operation == "save_usage"
        assert error.cause is cause
        assert error.kind == FailureKind.STORE_UNAVAILABLE

    def test_without_cause(self):
        assert str(StoreError("get_usage")) == "usage store get_usage failed"


class TestAdmissionDenied:
    def test_payload_and_headers(self):
        denied = AdmissionDenied(
            429, {"error": "rate_limit_exceeded", "message": "slow down"}, {"Retry-After": "7"}
        )

        assert denied.status_code == 429
        assert denied.error == "rate_limit_exceeded"
        assert denied.headers == {"Retry-After": "7"}
        assert str(denied) == "slow down"

    def test_defaults(self):
        denied = AdmissionDenied(401, {"error": "authentication_required"})
        assert denied.headers == {}
        assert str(denied) == "authentication_required"
