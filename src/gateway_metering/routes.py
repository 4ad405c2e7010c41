"""
FastAPI Routes for the Metered Gateway
======================================

- Health probes (/_health/live, /_health/ready), unauthenticated
- Usage status (/v1/usage, /v1/transcription/usage), read-only
- Model listing (/v1/models): the tier allow-list, or the provider listing
  for tiers without restrictions
- Metered proxy endpoints: admission first, then hand-off to the injected
  ``ProviderProxy``
    POST /v1/chat/completions       daily quota, model check
    POST /v1/web-search             daily quota
    POST /v1/messages               account required, daily quota, model check
    POST /anthropic/v1/messages     account required, daily quota
    POST /v1/listen                 account required, transcription minutes
    WS   /v1/listen                 account required, read-only minute pre-check

Collaborators are read from ``app.state.metering`` (see ``MeteringState``),
set up by ``gateway.app.create_app``.

Usage:
    from gateway_metering.routes import health_router, usage_router, proxy_router

    app.include_router(health_router)
    app.include_router(usage_router)
    app.include_router(proxy_router)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection
from starlette.responses import Response

from .admission import AdmissionService, EndpointKind
from .auth import AuthContext, AuthResolver, get_client_ip, get_request_id
from .config import MeteringConfig
from .errors import AdmissionDenied, StoreError
from .proxy import ProviderProxy
from .store import UsageStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "gateway-metering"

# Health router - unauthenticated endpoints for Kubernetes probes
health_router = APIRouter(tags=["health"])

usage_router = APIRouter(tags=["usage"])

proxy_router = APIRouter(tags=["proxy"])


@dataclass
class MeteringState:
    """Collaborators shared by all routes."""

    config: MeteringConfig
    store: UsageStore
    admission: AdmissionService
    auth_resolver: AuthResolver
    provider_proxy: ProviderProxy


def get_metering_state(conn: HTTPConnection) -> MeteringState:
    return conn.app.state.metering


async def _caller(conn: HTTPConnection) -> tuple[MeteringState, AuthContext]:
    state = get_metering_state(conn)
    return state, await state.auth_resolver(conn)


def _client_ip(conn: HTTPConnection) -> str | None:
    return get_client_ip(conn, get_metering_state(conn).config.trusted_proxy_hops)


async def _json_body(request: Request) -> tuple[bytes, dict[str, Any] | None]:
    """Raw body plus its JSON object, or None when it is not a JSON object."""
    raw = await request.body()
    try:
        parsed = json.loads(raw) if raw else None
    except (json.JSONDecodeError, UnicodeDecodeError):
        return raw, None
    return raw, parsed if isinstance(parsed, dict) else None


def _with_headers(response: Response, headers: dict[str, str]) -> Response:
    for name, value in headers.items():
        response.headers[name] = value
    return response


def denial_response(exc: AdmissionDenied) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.payload, headers=exc.headers)


async def admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
    """Exception handler rendering denials as top-level JSON bodies."""
    return denial_response(exc)


# =============================================================================
# Health probes
# =============================================================================


@health_router.get("/_health/live")
async def liveness_probe():
    """
    Liveness probe. Does not touch dependencies; failures here restart the
    pod rather than reroute traffic.
    """
    return {"status": "alive", "service": SERVICE_NAME}


@health_router.get("/_health/ready")
async def readiness_probe(request: Request):
    """
    Readiness probe.

    Checks the usage store and, when enabled, the rate limiter's Redis. The
    metering core fails open on both, so an unhealthy dependency is reported
    but still degrades gracefully at request time.

    Returns:
        200 OK if all configured dependencies are healthy
        503 Service Unavailable otherwise
    """
    state = get_metering_state(request)
    checks: dict[str, Any] = {}
    is_ready = True

    try:
        await state.store.check_health()
        checks["usage_store"] = {"status": "healthy"}
    except StoreError:
        # don't leak backend details in the probe response
        checks["usage_store"] = {"status": "unhealthy", "error": "connection failed"}
        is_ready = False

    limiter = state.admission.rate_limiter
    if limiter is not None:
        if await limiter.ping():
            checks["redis"] = {"status": "healthy"}
        else:
            checks["redis"] = {"status": "unhealthy", "error": "connection failed"}
            is_ready = False

    response = {
        "status": "ready" if is_ready else "not_ready",
        "service": SERVICE_NAME,
        "checks": checks,
        "request_id": get_request_id() or "unknown",
    }
    if not is_ready:
        raise HTTPException(status_code=503, detail=response)
    return response


# =============================================================================
# Usage status
# =============================================================================


@usage_router.get("/v1/usage")
async def usage_status(request: Request):
    """Today's query usage plus the transcription snapshot. Never writes."""
    state, ctx = await _caller(request)
    await state.admission.check_rate_limit(ctx, "usage")

    status = await state.admission.daily.get_usage_status(ctx.device_id, ctx.tier)
    transcription = await state.admission.transcription.get_transcription_status(
        ctx.metering_key, ctx.tier
    )
    body = status.to_dict()
    body["transcription"] = transcription.to_dict()
    return body


@usage_router.get("/v1/transcription/usage")
async def transcription_usage_status(request: Request):
    state, ctx = await _caller(request)
    await state.admission.check_rate_limit(ctx, "usage")
    status = await state.admission.transcription.get_transcription_status(
        ctx.metering_key, ctx.tier
    )
    return status.to_dict()


@usage_router.get("/v1/models")
async def list_models(request: Request):
    """Models the caller's tier may use. Unrestricted tiers get the provider listing."""
    state, ctx = await _caller(request)
    await state.admission.check_rate_limit(ctx, "models")

    guard = state.admission.guard
    if guard.allows_all(ctx.tier):
        return await state.provider_proxy.forward(EndpointKind.MODELS, request, b"")
    return {
        "object": "list",
        "tier": ctx.tier.value,
        "data": [
            {"id": model, "object": "model", "owned_by": "gateway"}
            for model in guard.allowed_models(ctx.tier)
        ],
    }


# =============================================================================
# Metered proxy endpoints
# =============================================================================


@proxy_router.post("/v1/chat/completions")
async def chat_completions(request: Request):
    state, ctx = await _caller(request)
    raw, body = await _json_body(request)
    model = body.get("model") if body else None
    if not isinstance(model, str) or not model:
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_request", "message": "Request body must include a model"},
        )

    grant = await state.admission.admit_query(
        ctx, EndpointKind.CHAT, ip=_client_ip(request), model=model
    )
    response = await state.provider_proxy.forward(EndpointKind.CHAT, request, raw)
    return _with_headers(response, grant.headers)


@proxy_router.post("/v1/web-search")
async def web_search(request: Request):
    state, ctx = await _caller(request)
    raw = await request.body()
    grant = await state.admission.admit_query(
        ctx, EndpointKind.WEB_SEARCH, ip=_client_ip(request)
    )
    response = await state.provider_proxy.forward(EndpointKind.WEB_SEARCH, request, raw)
    return _with_headers(response, grant.headers)


@proxy_router.post("/v1/messages")
async def agent_messages(request: Request):
    """Agent SDK messages. Unparseable bodies are left to the provider to reject."""
    state, ctx = await _caller(request)
    raw, body = await _json_body(request)
    model = body.get("model") if body else None

    grant = await state.admission.admit_query(
        ctx,
        EndpointKind.MESSAGES,
        ip=_client_ip(request),
        model=model if isinstance(model, str) and model else None,
    )
    response = await state.provider_proxy.forward(EndpointKind.MESSAGES, request, raw)
    return _with_headers(response, grant.headers)


@proxy_router.post("/anthropic/v1/messages")
async def anthropic_messages(request: Request):
    """Anthropic-compatible alias for coding agents; metered like /v1/messages."""
    state, ctx = await _caller(request)
    raw = await request.body()
    grant = await state.admission.admit_query(
        ctx, EndpointKind.MESSAGES, ip=_client_ip(request)
    )
    response = await state.provider_proxy.forward(EndpointKind.MESSAGES, request, raw)
    return _with_headers(response, grant.headers)


def _header_int(conn: HTTPConnection, name: str) -> int | None:
    raw = conn.headers.get(name, "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


@proxy_router.post("/v1/listen")
async def transcribe_file(request: Request):
    state, ctx = await _caller(request)
    grant = await state.admission.admit_transcription(
        ctx,
        content_length=_header_int(request, "content-length"),
        sample_rate=_header_int(request, "sample_rate"),
    )
    raw = await request.body()
    response = await state.provider_proxy.forward(EndpointKind.TRANSCRIPTION, request, raw)
    return _with_headers(response, grant.headers)


@proxy_router.websocket("/v1/listen")
async def transcribe_stream(websocket: WebSocket):
    """Streaming transcription; denied with an HTTP response before upgrade."""
    state, ctx = await _caller(websocket)
    try:
        await state.admission.admit_transcription_stream(ctx)
    except AdmissionDenied as exc:
        await websocket.send_denial_response(denial_response(exc))
        return
    await state.provider_proxy.stream_transcription(websocket)
