"""
Unit Tests for Caller Context and Request IDs
=============================================

Tests cover:
1. Client IP precedence (CF-Connecting-IP, trusted X-Forwarded-For hops, peer)
2. Trusted-header auth resolution and tier downgrades
3. Metering key selection
4. Request ID middleware: reuse, generation, context variable reset

Run tests:
    uv run pytest tests/unit/test_auth.py -v
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from gateway_metering.auth import (
    AuthContext,
    RequestIDMiddleware,
    TrustedHeaderAuthResolver,
    get_client_ip,
    get_request_id,
)
from gateway_metering.tiers import UserTier


def _request(headers: dict[str, str] | None = None, client=("10.1.2.3", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestGetClientIp:
    def test_cloudflare_header_wins(self):
        request = _request({"CF-Connecting-IP": "1.1.1.1", "X-Forwarded-For": "2.2.2.2"})
        assert get_client_ip(request, trusted_proxy_hops=1) == "1.1.1.1"

    def test_forwarded_headers_ignored_without_trusted_proxy(self):
        request = _request({"X-Forwarded-For": "2.2.2.2", "X-Real-IP": "3.3.3.3"})
        assert get_client_ip(request) == "10.1.2.3"

    def test_forwarded_entry_from_the_right(self):
        request = _request({"X-Forwarded-For": "6.6.6.6, 2.2.2.2 , 10.0.0.1"})
        assert get_client_ip(request, trusted_proxy_hops=1) == "10.0.0.1"
        assert get_client_ip(request, trusted_proxy_hops=2) == "2.2.2.2"

    def test_short_forwarded_chain_uses_peer(self):
        request = _request({"X-Forwarded-For": "2.2.2.2"})
        assert get_client_ip(request, trusted_proxy_hops=2) == "10.1.2.3"

    def test_socket_peer(self):
        assert get_client_ip(_request()) == "10.1.2.3"

    def test_no_client(self):
        assert get_client_ip(_request(client=None)) is None


class TestTrustedHeaderAuthResolver:
    @pytest.mark.asyncio
    async def test_logged_in(self):
        ctx = await TrustedHeaderAuthResolver()(
            _request({"X-Device-Id": "dev-1", "X-User-Id": "user_a", "X-User-Tier": "Logged_In"})
        )
        assert ctx == AuthContext(tier=UserTier.LOGGED_IN, device_id="dev-1", user_id="user_a")

    @pytest.mark.asyncio
    async def test_missing_tier_is_anonymous(self):
        ctx = await TrustedHeaderAuthResolver()(_request({"X-Device-Id": "dev-1"}))
        assert ctx.tier == UserTier.ANONYMOUS
        assert ctx.user_id is None

    @pytest.mark.asyncio
    async def test_unknown_tier_is_anonymous(self):
        ctx = await TrustedHeaderAuthResolver()(
            _request({"X-Device-Id": "dev-1", "X-User-Id": "user_a", "X-User-Tier": "enterprise"})
        )
        assert ctx.tier == UserTier.ANONYMOUS

    @pytest.mark.asyncio
    async def test_tier_without_user_is_downgraded(self):
        ctx = await TrustedHeaderAuthResolver()(
            _request({"X-Device-Id": "dev-1", "X-User-Tier": "subscribed"})
        )
        assert ctx.tier == UserTier.ANONYMOUS

    @pytest.mark.asyncio
    async def test_device_falls_back_to_user_then_ip(self):
        resolver = TrustedHeaderAuthResolver()
        with_user = await resolver(_request({"X-User-Id": "user_a", "X-User-Tier": "logged_in"}))
        anon = await resolver(_request())

        assert with_user.device_id == "user_a"
        assert anon.device_id == "anon:10.1.2.3"

    @pytest.mark.asyncio
    async def test_anonymous_device_uses_trusted_hop(self):
        resolver = TrustedHeaderAuthResolver(trusted_proxy_hops=1)
        ctx = await resolver(_request({"X-Forwarded-For": "9.9.9.9, 2.2.2.2"}))
        assert ctx.device_id == "anon:2.2.2.2"


class TestAuthContext:
    def test_metering_key_prefers_account(self):
        assert AuthContext(UserTier.LOGGED_IN, "dev-1", "user_a").metering_key == "user_a"
        assert AuthContext(UserTier.ANONYMOUS, "dev-1").metering_key == "dev-1"


class TestRequestIDMiddleware:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(RequestIDMiddleware)

        @app.get("/echo")
        async def echo():
            return {"request_id": get_request_id()}

        return TestClient(app)

    def test_reuses_incoming_id(self, client):
        response = client.get("/echo", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"
        assert response.json() == {"request_id": "abc-123"}

    def test_generates_id(self, client):
        response = client.get("/echo")
        generated = response.headers["X-Request-ID"]
        assert len(generated) == 36
        assert response.json() == {"request_id": generated}

    def test_no_request_id_outside_request(self):
        assert get_request_id() is None
