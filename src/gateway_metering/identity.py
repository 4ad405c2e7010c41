"""
Identity Resolution
===================

Maps a caller-supplied identifier to the canonical account id the credit
ledger keys its rows by.

Identifier shapes:
- canonical account id: ``user_`` + alphanumeric suffix, used as-is
- UUID: looked up once in the identity directory, then cached for the
  lifetime of the process
- anything else: unresolvable, no network call

Negative results are never cached: a miss today may resolve tomorrow, and a
miss only costs one extra lookup.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

import httpx

from .config import LedgerEndpointConfig
from .http_client_pool import get_client_for_request

logger = logging.getLogger(__name__)

CANONICAL_ID_PATTERN = re.compile(r"^user_[a-zA-Z0-9]+$")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_canonical_id(value: str) -> bool:
    return bool(CANONICAL_ID_PATTERN.match(value))


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value))


class IdentityCache(Protocol):
    """Key/value cache of source id -> canonical id."""

    def get(self, source_id: str) -> str | None: ...

    def set(self, source_id: str, canonical_id: str) -> None: ...


class InMemoryIdentityCache:
    """Unbounded process-lifetime cache. No eviction, no TTL."""

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def get(self, source_id: str) -> str | None:
        return self._entries.get(source_id)

    def set(self, source_id: str, canonical_id: str) -> None:
        self._entries[source_id] = canonical_id

    def __len__(self) -> int:
        return len(self._entries)


class IdentityDirectory(Protocol):
    """Read-only lookup of the canonical id for an opaque id."""

    async def lookup(self, source_id: str) -> str | None: ...


class HttpIdentityDirectory:
    """
    Identity directory backed by a PostgREST-style ``users`` table.

    Issues ``GET /rest/v1/users?select=clerk_id&id=eq.<id>&limit=1``. Any
    transport error, non-2xx status or empty/null result is reported as None.
    """

    def __init__(
        self,
        endpoint: LedgerEndpointConfig,
        client: httpx.AsyncClient | None = None,
        table: str = "users",
        canonical_column: str = "clerk_id",
    ):
        self._endpoint = endpoint
        self._client = client
        self._table = table
        self._column = canonical_column

    async def lookup(self, source_id: str) -> str | None:
        url = self._endpoint.url(f"rest/v1/{self._table}")
        params = {"select": self._column, "id": f"eq.{source_id}", "limit": "1"}
        try:
            if self._client is not None:
                response = await self._client.get(
                    url,
                    params=params,
                    headers=self._endpoint.headers(),
                    timeout=self._endpoint.timeout_seconds,
                )
            else:
                async with get_client_for_request(
                    timeout=self._endpoint.timeout_seconds
                ) as client:
                    response = await client.get(
                        url,
                        params=params,
                        headers=self._endpoint.headers(),
                        timeout=self._endpoint.timeout_seconds,
                    )
        except httpx.HTTPError as e:
            logger.error(f"Identity lookup failed for {source_id}: {e}")
            return None

        if not response.is_success:
            logger.warning(
                f"Identity lookup for {source_id} returned HTTP {response.status_code}"
            )
            return None

        try:
            rows = response.json()
        except ValueError:
            logger.error(f"Identity lookup for {source_id} returned a non-JSON body")
            return None

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            value = rows[0].get(self._column)
            if isinstance(value, str) and value:
                return value
        return None


class IdentityResolver:
    """Resolves caller ids to canonical account ids with a lookup cache."""

    def __init__(
        self,
        directory: IdentityDirectory | None,
        cache: IdentityCache | None = None,
    ):
        self._directory = directory
        self._cache: IdentityCache = cache if cache is not None else InMemoryIdentityCache()

    async def resolve(self, caller_id: str | None) -> str | None:
        """
        Return the canonical account id for ``caller_id``, or None.

        Canonical ids are returned unchanged without touching the cache.
        """
        if not caller_id:
            return None
        if is_canonical_id(caller_id):
            return caller_id

        cached = self._cache.get(caller_id)
        if cached:
            return cached

        if not is_uuid(caller_id) or self._directory is None:
            return None

        canonical = await self._directory.lookup(caller_id)
        if canonical:
            self._cache.set(caller_id, canonical)
            logger.debug(f"Resolved {caller_id} -> {canonical}")
            return canonical
        return None
