"""
Unit Tests for Identity Resolution
==================================

Tests cover:
1. Identifier shape detection (canonical id vs UUID)
2. Resolver ordering: canonical passthrough, cache, directory lookup
3. Negative results are never cached
4. HTTP directory adapter against httpx.MockTransport

Run tests:
    uv run pytest tests/unit/test_identity.py -v
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from gateway_metering.config import LedgerEndpointConfig
from gateway_metering.identity import (
    HttpIdentityDirectory,
    IdentityResolver,
    InMemoryIdentityCache,
    is_canonical_id,
    is_uuid,
)

UUID = "3f2b8c1e-9a4d-4e6f-8b7a-1c2d3e4f5a6b"
CANONICAL = "user_2abcDEF123"

ENDPOINT = LedgerEndpointConfig(base_url="https://ledger.test", api_key="anon-key")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestShapes:
    @pytest.mark.parametrize("value", ["user_abc", "user_2abcDEF123", "user_0"])
    def test_canonical(self, value):
        assert is_canonical_id(value)

    @pytest.mark.parametrize("value", ["user_", "user-abc", "user_abc!", "usr_abc", UUID])
    def test_not_canonical(self, value):
        assert not is_canonical_id(value)

    def test_uuid_case_insensitive(self):
        assert is_uuid(UUID)
        assert is_uuid(UUID.upper())
        assert not is_uuid("not-a-uuid")
        assert not is_uuid(CANONICAL)


class TestIdentityResolver:
    @pytest.mark.asyncio
    async def test_canonical_id_passthrough_no_lookup_no_cache(self):
        directory = AsyncMock()
        cache = InMemoryIdentityCache()
        resolver = IdentityResolver(directory, cache)

        assert await resolver.resolve(CANONICAL) == CANONICAL
        directory.lookup.assert_not_called()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_uuid_lookup_is_cached(self):
        directory = AsyncMock()
        directory.lookup.return_value = CANONICAL
        cache = InMemoryIdentityCache()
        resolver = IdentityResolver(directory, cache)

        assert await resolver.resolve(UUID) == CANONICAL
        assert await resolver.resolve(UUID) == CANONICAL
        directory.lookup.assert_awaited_once_with(UUID)
        assert cache.get(UUID) == CANONICAL

    @pytest.mark.asyncio
    async def test_negative_result_not_cached(self):
        directory = AsyncMock()
        directory.lookup.return_value = None
        cache = InMemoryIdentityCache()
        resolver = IdentityResolver(directory, cache)

        assert await resolver.resolve(UUID) is None
        assert await resolver.resolve(UUID) is None
        assert directory.lookup.await_count == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_cache_hit_skips_directory(self):
        directory = AsyncMock()
        cache = InMemoryIdentityCache()
        cache.set(UUID, "user_cached")
        resolver = IdentityResolver(directory, cache)

        assert await resolver.resolve(UUID) == "user_cached"
        directory.lookup.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["", None, "device-123", "some@email.test"])
    async def test_other_shapes_unresolvable_without_network(self, value):
        directory = AsyncMock()
        resolver = IdentityResolver(directory)

        assert await resolver.resolve(value) is None
        directory.lookup.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_directory_configured(self):
        resolver = IdentityResolver(None)
        assert await resolver.resolve(UUID) is None
        assert await resolver.resolve(CANONICAL) == CANONICAL


class TestHttpIdentityDirectory:
    @pytest.mark.asyncio
    async def test_lookup_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers.get("apikey")
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=[{"clerk_id": CANONICAL}])

        async with _client(handler) as client:
            directory = HttpIdentityDirectory(ENDPOINT, client=client)
            assert await directory.lookup(UUID) == CANONICAL

        assert seen["url"].startswith("https://ledger.test/rest/v1/users?")
        assert f"id=eq.{UUID}" in seen["url"]
        assert "select=clerk_id" in seen["url"]
        assert "limit=1" in seen["url"]
        assert seen["apikey"] == "anon-key"
        assert seen["auth"] == "Bearer anon-key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, json=[]),
            httpx.Response(200, json=[{"clerk_id": None}]),
            httpx.Response(200, json={"clerk_id": CANONICAL}),
            httpx.Response(200, content=b"<html>"),
            httpx.Response(404, json={"message": "not found"}),
            httpx.Response(500, text="boom"),
        ],
    )
    async def test_lookup_failures_return_none(self, response):
        async with _client(lambda request: response) as client:
            directory = HttpIdentityDirectory(ENDPOINT, client=client)
            assert await directory.lookup(UUID) is None

    @pytest.mark.asyncio
    async def test_transport_error_returns_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        async with _client(handler) as client:
            directory = HttpIdentityDirectory(ENDPOINT, client=client)
            assert await directory.lookup(UUID) is None

    @pytest.mark.asyncio
    async def test_resolver_with_http_directory(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=json.dumps([{"clerk_id": CANONICAL}]))

        async with _client(handler) as client:
            resolver = IdentityResolver(HttpIdentityDirectory(ENDPOINT, client=client))
            assert await resolver.resolve(UUID) == CANONICAL
            assert await resolver.resolve(UUID) == CANONICAL

        assert len(calls) == 1
