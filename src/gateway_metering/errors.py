"""
Failure Taxonomy and Fail-Open / Fail-Closed Policy
===================================================

Every external dependency of the metering core (usage store, credit ledger,
identity directory) can fail. None of those failures is allowed to abort the
request pipeline; each one resolves to a well-defined allow/deny decision.

The mapping from failure kind to outcome lives in one place,
``failure_policy()``, so it can be asserted directly in tests:

    STORE_UNAVAILABLE      -> FAIL_OPEN   (allow with full remaining quota)
    LEDGER_UNAVAILABLE     -> FAIL_CLOSED (credit path only: "zero balance")
    LEDGER_REJECTED        -> FAIL_CLOSED
    IDENTITY_UNRESOLVABLE  -> NO_ACCOUNT  (credit path unavailable)

Usage:
    from gateway_metering.errors import FailureKind, FailurePolicy, failure_policy

    try:
        record = await store.get_usage(device_id)
    except StoreError:
        if failure_policy(FailureKind.STORE_UNAVAILABLE) is FailurePolicy.FAIL_OPEN:
            ...
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Classes of internal failure the metering core distinguishes."""

    IDENTITY_UNRESOLVABLE = "identity_unresolvable"
    STORE_UNAVAILABLE = "store_unavailable"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    LEDGER_REJECTED = "ledger_rejected"


class FailurePolicy(str, Enum):
    """Outcome a failure resolves to."""

    FAIL_OPEN = "open"  # allow the request
    FAIL_CLOSED = "closed"  # deny the credit path, keep the pipeline running
    NO_ACCOUNT = "no_account"  # behave as if the caller has no account


_POLICY_TABLE: dict[FailureKind, FailurePolicy] = {
    FailureKind.IDENTITY_UNRESOLVABLE: FailurePolicy.NO_ACCOUNT,
    FailureKind.STORE_UNAVAILABLE: FailurePolicy.FAIL_OPEN,
    FailureKind.LEDGER_UNAVAILABLE: FailurePolicy.FAIL_CLOSED,
    FailureKind.LEDGER_REJECTED: FailurePolicy.FAIL_CLOSED,
}


def failure_policy(kind: FailureKind) -> FailurePolicy:
    """Return the outcome policy for a failure kind."""
    return _POLICY_TABLE[kind]


class StoreError(Exception):
    """Raised by usage store adapters when a read or write fails."""

    kind = FailureKind.STORE_UNAVAILABLE

    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"usage store {operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class AdmissionDenied(Exception):
    """
    Raised by the admission pipeline when a request must be rejected.

    Carries the caller-facing JSON payload so the route layer can render it
    without re-deriving anything.
    """

    def __init__(
        self,
        status_code: int,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ):
        super().__init__(payload.get("message") or payload.get("error", "denied"))
        self.status_code = status_code
        self.payload = payload
        self.headers = headers or {}

    @property
    def error(self) -> str:
        return str(self.payload.get("error", ""))
