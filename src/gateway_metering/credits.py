"""
Credit Ledger Client
====================

Thin RPC boundary to the external credit ledger. The ledger owns balances and
makes each deduction atomic; this client only issues one call per deduction
and interprets the answer.

Failure handling:
- unresolved identity        -> CreditDeduction(success=False, remaining=0)
- transport error / non-2xx  -> failure (LEDGER_UNAVAILABLE)
- malformed body / success=false -> failure (LEDGER_REJECTED)
- get_balance() never raises; any failure reads as a zero balance

Wire format (PostgREST RPC):
    POST /rest/v1/rpc/deduct_credits
        {p_user_id, p_amount, p_type, p_description, p_reference_id}
    -> [{success, new_balance, transaction_id, error_message}]

    GET /rest/v1/user_credits?select=balance&user_id=eq.<id>&limit=1
    -> [{balance}]
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .auth import get_request_id
from .config import LedgerEndpointConfig
from .errors import FailureKind
from .http_client_pool import get_client_for_request
from .identity import IdentityResolver
from .metrics import record_credit_deduction

logger = logging.getLogger(__name__)

CREDIT_UNIT = 1

REASON_AI_QUERY = "ai_query"
REASON_TRANSCRIPTION = "transcription"


@dataclass
class CreditDeduction:
    """Outcome of a single deduction attempt."""

    success: bool
    remaining: float = 0
    transaction_id: str | None = None
    failure: FailureKind | None = None
    error_message: str | None = None


class CreditLedger(Protocol):
    """What the quota trackers need from the ledger."""

    async def deduct(self, account_id: str, reason: str) -> CreditDeduction: ...

    async def get_balance(self, account_id: str) -> float: ...


def make_reference_id() -> str:
    """
    Uniqueness reference for the ledger's own audit trail.

    The request id only correlates the deduction with gateway logs. Callers
    can choose it, so a server-generated suffix is always appended.
    """
    suffix = uuid.uuid4().hex[:12]
    request_id = get_request_id()
    if request_id:
        return f"gw-{request_id}-{suffix}"
    return f"gw-{int(time.time() * 1000)}-{suffix}"


class CreditLedgerClient:
    """HTTP client for the credit ledger."""

    def __init__(
        self,
        endpoint: LedgerEndpointConfig,
        resolver: IdentityResolver,
        client: httpx.AsyncClient | None = None,
    ):
        self._endpoint = endpoint
        self._resolver = resolver
        self._client = client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self._endpoint.url(path)
        kwargs.setdefault("headers", self._endpoint.headers())
        kwargs.setdefault("timeout", self._endpoint.timeout_seconds)
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with get_client_for_request(timeout=self._endpoint.timeout_seconds) as client:
            return await client.request(method, url, **kwargs)

    async def deduct(self, account_id: str, reason: str) -> CreditDeduction:
        """Deduct one credit unit from the account's balance."""
        canonical_id = await self._resolver.resolve(account_id)
        if not canonical_id:
            record_credit_deduction(reason, FailureKind.IDENTITY_UNRESOLVABLE.value)
            return CreditDeduction(
                success=False, failure=FailureKind.IDENTITY_UNRESOLVABLE
            )

        payload = {
            "p_user_id": canonical_id,
            "p_amount": CREDIT_UNIT,
            "p_type": reason,
            "p_description": f"{reason} via ai gateway",
            "p_reference_id": make_reference_id(),
        }

        try:
            response = await self._request("POST", "rest/v1/rpc/deduct_credits", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Credit deduction failed for {canonical_id}: {e}")
            record_credit_deduction(reason, FailureKind.LEDGER_UNAVAILABLE.value)
            return CreditDeduction(success=False, failure=FailureKind.LEDGER_UNAVAILABLE)

        if not response.is_success:
            logger.error(
                f"deduct_credits returned HTTP {response.status_code}: {response.text}"
            )
            record_credit_deduction(reason, FailureKind.LEDGER_UNAVAILABLE.value)
            return CreditDeduction(success=False, failure=FailureKind.LEDGER_UNAVAILABLE)

        try:
            body = response.json()
        except ValueError:
            body = None

        first = body[0] if isinstance(body, list) and body else None
        if not isinstance(first, dict) or first.get("success") is not True:
            error_message = first.get("error_message") if isinstance(first, dict) else None
            logger.info(
                f"Credit deduction rejected for {canonical_id}: "
                f"{error_message or 'malformed ledger response'}"
            )
            record_credit_deduction(reason, FailureKind.LEDGER_REJECTED.value)
            return CreditDeduction(
                success=False,
                failure=FailureKind.LEDGER_REJECTED,
                error_message=error_message,
            )

        remaining = first.get("new_balance")
        if not isinstance(remaining, (int, float)) or isinstance(remaining, bool):
            remaining = 0

        logger.info(f"Credit deducted for {canonical_id} ({reason}), remaining: {remaining}")
        record_credit_deduction(reason, "success")
        return CreditDeduction(
            success=True,
            remaining=remaining,
            transaction_id=first.get("transaction_id"),
        )

    async def get_balance(self, account_id: str) -> float:
        """Read the current balance. Returns 0 on any failure."""
        canonical_id = await self._resolver.resolve(account_id)
        if not canonical_id:
            return 0

        params = {
            "select": "balance",
            "user_id": f"eq.{canonical_id}",
            "limit": "1",
        }
        try:
            response = await self._request("GET", "rest/v1/user_credits", params=params)
        except httpx.HTTPError as e:
            logger.error(f"Balance read failed for {canonical_id}: {e}")
            return 0

        if not response.is_success:
            return 0

        try:
            rows = response.json()
        except ValueError:
            return 0

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            balance = rows[0].get("balance")
            if isinstance(balance, (int, float)) and not isinstance(balance, bool):
                return balance
        return 0


class NoCreditLedger:
    """Ledger stand-in used when no ledger endpoint is configured."""

    async def deduct(self, account_id: str, reason: str) -> CreditDeduction:
        return CreditDeduction(success=False, failure=FailureKind.LEDGER_UNAVAILABLE)

    async def get_balance(self, account_id: str) -> float:
        return 0
