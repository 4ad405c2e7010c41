"""
Shared Outbound HTTP Client
===========================

One ``httpx.AsyncClient`` shared by the credit ledger client and the identity
directory, so each admission decision reuses pooled connections instead of
opening a fresh TLS session per lookup.

Lifecycle:
    # app startup (gateway/app.py lifespan)
    await startup_http_client_pool()

    # app shutdown
    await shutdown_http_client_pool()

Outside the app lifespan (scripts, tests) ``get_client_for_request()`` falls
back to a short-lived client that is closed on exit.

Configuration (environment variables):
    HTTP_CLIENT_MAX_CONNECTIONS: pool size (default: 100)
    HTTP_CLIENT_MAX_KEEPALIVE: idle keep-alive connections (default: 20)
    HTTP_CLIENT_DEFAULT_TIMEOUT: default timeout in seconds (default: 60)
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

logger = logging.getLogger(__name__)

HTTP_CLIENT_MAX_CONNECTIONS = int(os.getenv("HTTP_CLIENT_MAX_CONNECTIONS", "100"))
HTTP_CLIENT_MAX_KEEPALIVE = int(os.getenv("HTTP_CLIENT_MAX_KEEPALIVE", "20"))
HTTP_CLIENT_DEFAULT_TIMEOUT = float(os.getenv("HTTP_CLIENT_DEFAULT_TIMEOUT", "60.0"))

_http_client: httpx.AsyncClient | None = None
_http_client_lock = threading.Lock()


def _create_client() -> httpx.AsyncClient:
    logger.info(
        f"HTTP client pool: creating shared client "
        f"(max_connections={HTTP_CLIENT_MAX_CONNECTIONS}, "
        f"max_keepalive={HTTP_CLIENT_MAX_KEEPALIVE})"
    )
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=HTTP_CLIENT_MAX_CONNECTIONS,
            max_keepalive_connections=HTTP_CLIENT_MAX_KEEPALIVE,
        ),
        timeout=httpx.Timeout(HTTP_CLIENT_DEFAULT_TIMEOUT),
    )


async def startup_http_client_pool() -> None:
    """Create the shared client. Idempotent."""
    global _http_client

    with _http_client_lock:
        if _http_client is None:
            _http_client = _create_client()
        else:
            logger.debug("HTTP client pool: already initialized (no-op)")


async def shutdown_http_client_pool() -> None:
    """Close the shared client if one exists. Idempotent."""
    global _http_client

    with _http_client_lock:
        client = _http_client
        _http_client = None

    if client is not None:
        await client.aclose()
        logger.info("HTTP client pool: shutdown complete")


def is_pool_initialized() -> bool:
    return _http_client is not None


@asynccontextmanager
async def get_client_for_request(
    timeout: float | None = None,
    **kwargs: Any,
) -> AsyncIterator[httpx.AsyncClient]:
    """
    Yield the shared client, or a per-request client when the pool is not up.

    Args:
        timeout: Timeout for the fallback client. With the shared client,
            pass the timeout on the individual request instead.
        **kwargs: Extra ``httpx.AsyncClient`` arguments for the fallback client
            (e.g. ``transport`` in tests).
    """
    client = _http_client
    if client is not None and not kwargs:
        yield client
        return

    async with httpx.AsyncClient(
        timeout=timeout if timeout is not None else HTTP_CLIENT_DEFAULT_TIMEOUT,
        **kwargs,
    ) as fallback:
        yield fallback
