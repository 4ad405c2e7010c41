"""
Provider Proxy Boundary
=======================

The metering core decides *whether* a request may reach an AI provider; what
happens afterwards (provider selection, streaming, retries) belongs to the
``ProviderProxy`` injected into the app.

``UnconfiguredProviderProxy`` is the default: admission still runs in full,
then the request is answered with 501 so a gateway deployed without a proxy
fails loudly instead of silently dropping traffic.
"""

from __future__ import annotations

import logging
from typing import Protocol

from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.responses import Response

from .admission import EndpointKind

logger = logging.getLogger(__name__)

# RFC 6455 "try again later"
WS_CLOSE_UNAVAILABLE = 1013


class ProviderProxy(Protocol):
    """Downstream hand-off for admitted requests."""

    async def forward(
        self, endpoint: EndpointKind, request: Request, body: bytes
    ) -> Response: ...

    async def stream_transcription(self, websocket: WebSocket) -> None: ...


class UnconfiguredProviderProxy:
    """Answers every admitted request with 501 Not Implemented."""

    async def forward(
        self, endpoint: EndpointKind, request: Request, body: bytes
    ) -> Response:
        logger.warning(f"No provider proxy configured for {endpoint.value} request")
        return JSONResponse(
            status_code=501,
            content={
                "error": "provider_not_configured",
                "message": f"No upstream provider is configured for {endpoint.value}",
            },
        )

    async def stream_transcription(self, websocket: WebSocket) -> None:
        logger.warning("No provider proxy configured for streaming transcription")
        await websocket.close(code=WS_CLOSE_UNAVAILABLE)
