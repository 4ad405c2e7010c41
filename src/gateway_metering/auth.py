"""
Caller Context and Request ID Middleware
========================================

Authentication itself happens upstream of the metering core. This module
defines the boundary:

1. ``AuthContext``: tier, device id and optional account id of the caller
2. ``AuthResolver``: anything that turns a request into an ``AuthContext``
3. ``TrustedHeaderAuthResolver``: reads the context from headers set by the
   authenticating edge (X-Device-Id, X-User-Id, X-User-Tier)
4. ``RequestIDMiddleware``: request correlation id, also carried in the ledger
   uniqueness reference
5. ``get_client_ip()``: client address for the anonymous IP abuse guard

Usage:
    from gateway_metering.auth import RequestIDMiddleware, get_request_id

    app.add_middleware(RequestIDMiddleware)
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional, Protocol

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import HTTPConnection
from starlette.responses import Response

from .tiers import UserTier

logger = logging.getLogger(__name__)

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"
DEVICE_ID_HEADER = "X-Device-Id"
USER_ID_HEADER = "X-User-Id"
USER_TIER_HEADER = "X-User-Tier"


def get_request_id() -> Optional[str]:
    """Current request's correlation id, or None outside a request."""
    return _request_id_ctx.get()


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, as established by the authentication layer."""

    tier: UserTier
    device_id: str
    user_id: str | None = None

    @property
    def metering_key(self) -> str:
        """Key for account-scoped metering (transcription)."""
        return self.user_id or self.device_id


class AuthResolver(Protocol):
    async def __call__(self, request: HTTPConnection) -> AuthContext: ...


def get_client_ip(request: HTTPConnection, trusted_proxy_hops: int = 0) -> str | None:
    """
    Extract the client address.

    Precedence: CF-Connecting-IP, then the X-Forwarded-For entry appended by
    the outermost of ``trusted_proxy_hops`` proxies (counted from the right),
    then the socket peer. With no trusted hops X-Forwarded-For is ignored,
    since any caller can set it.
    """
    cf_ip = request.headers.get("cf-connecting-ip", "").strip()
    if cf_ip:
        return cf_ip

    if trusted_proxy_hops > 0:
        entries = [
            entry.strip()
            for entry in request.headers.get("x-forwarded-for", "").split(",")
            if entry.strip()
        ]
        if len(entries) >= trusted_proxy_hops:
            return entries[-trusted_proxy_hops]

    if request.client:
        return request.client.host
    return None


class TrustedHeaderAuthResolver:
    """
    Builds the caller context from headers set by a trusted auth proxy.

    Missing or unknown tiers are treated as anonymous. A logged-in or
    subscribed tier without a user id is downgraded to anonymous.
    """

    def __init__(self, trusted_proxy_hops: int = 0):
        self.trusted_proxy_hops = trusted_proxy_hops

    async def __call__(self, request: HTTPConnection) -> AuthContext:
        user_id = request.headers.get(USER_ID_HEADER, "").strip() or None
        raw_tier = request.headers.get(USER_TIER_HEADER, "").strip().lower()

        try:
            tier = UserTier(raw_tier) if raw_tier else UserTier.ANONYMOUS
        except ValueError:
            logger.warning(f"Unknown tier header '{raw_tier}', treating as anonymous")
            tier = UserTier.ANONYMOUS

        if tier != UserTier.ANONYMOUS and not user_id:
            tier = UserTier.ANONYMOUS

        device_id = request.headers.get(DEVICE_ID_HEADER, "").strip()
        if not device_id:
            client_ip = get_client_ip(request, self.trusted_proxy_hops)
            device_id = user_id or f"anon:{client_ip or 'unknown'}"

        return AuthContext(tier=tier, device_id=device_id, user_id=user_id)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Inject request correlation ids.

    Reuses an incoming X-Request-ID or generates a UUID, exposes it through
    ``get_request_id()`` and echoes it on the response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER, "").strip()
        if not request_id:
            request_id = str(uuid.uuid4())

        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            _request_id_ctx.reset(token)
