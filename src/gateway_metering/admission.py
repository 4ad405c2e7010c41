"""
Admission Pipeline
==================

Composes the metering core into one pre-request decision per endpoint:

    rate limit -> account requirement -> model access -> quota (+ credits)

Every step either passes or raises ``AdmissionDenied`` carrying the exact
caller-facing payload:

- 401 ``authentication_required``: anonymous caller on an account-only
  endpoint (agent messages, transcription)
- 403 ``model_not_allowed``: model outside the tier's allow-list
- 429 ``rate_limit_exceeded``: per-minute limiter (with Retry-After)
- 429 ``daily_limit_exceeded`` / ``credits_exhausted``: daily query quota
- 429 ``transcription_quota_exhausted``: transcription minutes

A passing decision returns an ``AdmissionGrant`` whose ``headers`` (credit
balance, paid-via, transcription counters) are added to the downstream
response. All of them are additive and safe for clients to ignore.

Usage:
    grant = await admission.admit_query(ctx, EndpointKind.CHAT, ip=ip, model=model)
    response = await proxy.forward(request, body)
    response.headers.update(grant.headers)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .auth import AuthContext
from .config import DEFAULT_UPGRADE_URL
from .daily_quota import DailyQuotaTracker, UsageResult, format_timestamp
from .errors import AdmissionDenied
from .metrics import record_admission
from .observability import add_admission_span_attributes
from .rate_limit import RateLimiter
from .tiers import (
    DEFAULT_TIER_POLICIES,
    SUBSCRIPTION_PRICE,
    ModelAccessGuard,
    TierPolicy,
    UserTier,
)
from .transcription import (
    TranscriptionQuotaTracker,
    TranscriptionUsageResult,
    estimate_audio_minutes,
)

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES_MODEL = "claude-haiku-4-5-20251001"

ERROR_AUTH_REQUIRED = "authentication_required"
ERROR_MODEL_NOT_ALLOWED = "model_not_allowed"
ERROR_RATE_LIMITED = "rate_limit_exceeded"
ERROR_DAILY_LIMIT = "daily_limit_exceeded"
ERROR_CREDITS_EXHAUSTED = "credits_exhausted"
ERROR_TRANSCRIPTION_EXHAUSTED = "transcription_quota_exhausted"

HEADER_CREDITS_REMAINING = "X-Credits-Remaining"
HEADER_PAID_VIA = "X-Paid-Via"
HEADER_TX_USED = "X-Transcription-Minutes-Used"
HEADER_TX_GRANTED = "X-Transcription-Minutes-Granted"
HEADER_TX_REMAINING = "X-Transcription-Minutes-Remaining"


class EndpointKind(str, Enum):
    """Endpoint families seen by admission and the provider proxy."""

    CHAT = "chat"
    WEB_SEARCH = "web_search"
    MESSAGES = "messages"
    TRANSCRIPTION = "transcription"
    TRANSCRIPTION_STREAM = "transcription_stream"
    MODELS = "models"


_AUTH_MESSAGES = {
    EndpointKind.MESSAGES: "This endpoint requires authentication. Please log in.",
    EndpointKind.TRANSCRIPTION: "Cloud transcription requires an account. Please log in.",
    EndpointKind.TRANSCRIPTION_STREAM: "Cloud transcription requires an account. Please log in.",
}


@dataclass
class AdmissionGrant:
    """A passed admission decision."""

    headers: dict[str, str] = field(default_factory=dict)
    paid_via: str | None = None
    usage: UsageResult | None = None
    transcription: TranscriptionUsageResult | None = None


def _number(value: float) -> str:
    # Whole numbers without a trailing ".0"; never scientific notation
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def daily_denial_error(result: UsageResult) -> str:
    """
    Pick the error code for a denied daily-quota result.

    The IP abuse guard always reports ``daily_limit_exceeded``. Otherwise the
    code only depends on whether any credit balance is left.
    """
    if result.ip_limited:
        return ERROR_DAILY_LIMIT
    if (result.credits_remaining or 0) <= 0:
        return ERROR_CREDITS_EXHAUSTED
    return ERROR_DAILY_LIMIT


class AdmissionService:
    """Pre-request admission decisions for every metered endpoint."""

    def __init__(
        self,
        daily: DailyQuotaTracker,
        transcription: TranscriptionQuotaTracker,
        policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
        rate_limiter: RateLimiter | None = None,
        upgrade_url: str = DEFAULT_UPGRADE_URL,
    ):
        self.daily = daily
        self.transcription = transcription
        self.guard = ModelAccessGuard(policies)
        self.rate_limiter = rate_limiter
        self.upgrade_url = upgrade_url
        self._policies = policies

    # =========================================================================
    # Individual checks
    # =========================================================================

    def _deny(
        self,
        endpoint: EndpointKind | str,
        ctx: AuthContext,
        status_code: int,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> AdmissionDenied:
        name = endpoint.value if isinstance(endpoint, EndpointKind) else endpoint
        record_admission(name, ctx.tier.value, payload["error"])
        add_admission_span_attributes(name, ctx.tier.value, False, error=payload["error"])
        return AdmissionDenied(status_code, payload, headers)

    def _allow(self, endpoint: EndpointKind, ctx: AuthContext, grant: AdmissionGrant) -> AdmissionGrant:
        outcome = "paid_via_credits" if grant.paid_via else "allowed"
        record_admission(endpoint.value, ctx.tier.value, outcome)
        add_admission_span_attributes(
            endpoint.value, ctx.tier.value, True, paid_via=grant.paid_via
        )
        return grant

    async def check_rate_limit(self, ctx: AuthContext, endpoint: EndpointKind | str) -> None:
        """Per-minute limiter; a no-op when no limiter is configured."""
        if self.rate_limiter is None:
            return
        result = await self.rate_limiter.check(ctx.device_id, ctx.tier)
        if result.allowed:
            return
        retry_after = result.retry_after
        raise self._deny(
            endpoint,
            ctx,
            429,
            {
                "error": ERROR_RATE_LIMITED,
                "message": (
                    f"Rate limit of {result.limit} requests per minute exceeded. "
                    f"Retry in {retry_after}s"
                ),
                "limit": result.limit,
                "tier": ctx.tier.value,
                "retry_after": retry_after,
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": str(result.remaining),
            },
        )

    def require_account(self, ctx: AuthContext, endpoint: EndpointKind) -> None:
        if ctx.tier != UserTier.ANONYMOUS:
            return
        raise self._deny(
            endpoint,
            ctx,
            401,
            {
                "error": ERROR_AUTH_REQUIRED,
                "message": _AUTH_MESSAGES.get(endpoint, "Please log in."),
            },
        )

    def check_model(self, model: str, ctx: AuthContext, endpoint: EndpointKind) -> None:
        if self.guard.check(model, ctx.tier):
            return
        allowed = self.guard.allowed_models(ctx.tier)
        logger.info(f"Model '{model}' rejected for tier {ctx.tier.value}")
        raise self._deny(
            endpoint,
            ctx,
            403,
            {
                "error": ERROR_MODEL_NOT_ALLOWED,
                "message": (
                    f'Model "{model}" is not available for your tier ({ctx.tier.value}). '
                    f"Available models: {', '.join(allowed)}"
                ),
                "tier": ctx.tier.value,
                "allowed_models": allowed,
            },
        )

    # =========================================================================
    # Upgrade metadata
    # =========================================================================

    def denial_upgrade_options(
        self, tier: UserTier, transcription: bool = False
    ) -> dict[str, dict[str, str]]:
        """Upgrade paths shown on a 429. Keys only appear where they apply."""
        anonymous = self._policies[UserTier.ANONYMOUS]
        logged_in = self._policies[UserTier.LOGGED_IN]
        subscribed = self._policies[UserTier.SUBSCRIBED]

        options: dict[str, dict[str, str]] = {}
        if tier == UserTier.ANONYMOUS and not transcription:
            extra = logged_in.daily_query_limit - anonymous.daily_query_limit
            options["login"] = {"benefit": f"+{extra} daily queries, more models"}

        options["buy_credits"] = {
            "url": self.upgrade_url,
            "benefit": (
                "Credits extend your transcription limit"
                if transcription
                else "Credits extend your daily limit, use anytime"
            ),
        }

        if tier != UserTier.SUBSCRIBED:
            options["subscribe"] = {
                "url": self.upgrade_url,
                "benefit": (
                    "Unlimited cloud transcription"
                    if transcription
                    else f"{subscribed.daily_query_limit} queries/day, all models"
                ),
                "price": SUBSCRIPTION_PRICE,
            }
        return options

    # =========================================================================
    # Daily query endpoints
    # =========================================================================

    async def admit_query(
        self,
        ctx: AuthContext,
        endpoint: EndpointKind,
        ip: str | None = None,
        model: str | None = None,
    ) -> AdmissionGrant:
        """
        Admit a query-metered request (chat, web search, agent messages).

        ``model`` is checked against the tier's allow-list when given. Agent
        messages without a model are checked against the default messages
        model.
        """
        await self.check_rate_limit(ctx, endpoint)

        if endpoint == EndpointKind.MESSAGES:
            self.require_account(ctx, endpoint)
            model = model or DEFAULT_MESSAGES_MODEL
        if model is not None:
            self.check_model(model, ctx, endpoint)

        usage = await self.daily.track_usage(
            ctx.device_id, ctx.tier, account_id=ctx.user_id, ip=ip
        )
        if not usage.allowed:
            raise self._deny(endpoint, ctx, 429, self._daily_denial_payload(usage, ctx.tier))

        grant = AdmissionGrant(paid_via=usage.paid_via, usage=usage)
        if usage.paid_via and usage.credits_remaining is not None:
            grant.headers[HEADER_CREDITS_REMAINING] = _number(usage.credits_remaining)
            grant.headers[HEADER_PAID_VIA] = usage.paid_via
        return self._allow(endpoint, ctx, grant)

    def _daily_denial_payload(self, usage: UsageResult, tier: UserTier) -> dict[str, Any]:
        error = daily_denial_error(usage)
        resets_at = format_timestamp(usage.resets_at)
        if error == ERROR_CREDITS_EXHAUSTED:
            message = (
                "You've used all free queries and have no credits remaining. "
                f"Buy more at {self.upgrade_url}"
            )
        else:
            message = (
                f"You've used all {usage.limit} free AI queries for today. "
                f"Resets at {resets_at}"
            )
        return {
            "error": error,
            "message": message,
            "used_today": usage.used,
            "limit_today": usage.limit,
            "resets_at": resets_at,
            "tier": tier.value,
            "credits_remaining": usage.credits_remaining or 0,
            "upgrade_options": self.denial_upgrade_options(tier),
        }

    # =========================================================================
    # Transcription endpoints
    # =========================================================================

    async def admit_transcription(
        self,
        ctx: AuthContext,
        content_length: int | None,
        sample_rate: int | None = None,
    ) -> AdmissionGrant:
        """Admit a file transcription upload, metering its estimated minutes."""
        endpoint = EndpointKind.TRANSCRIPTION
        await self.check_rate_limit(ctx, endpoint)
        self.require_account(ctx, endpoint)

        audio_minutes = estimate_audio_minutes(content_length, sample_rate)
        usage = await self.transcription.track(ctx.metering_key, ctx.tier, audio_minutes)
        if not usage.allowed:
            raise self._deny(
                endpoint,
                ctx,
                429,
                {
                    "error": ERROR_TRANSCRIPTION_EXHAUSTED,
                    "message": self._transcription_message(usage.minutes_granted),
                    "minutes_used": usage.minutes_used,
                    "minutes_granted": usage.minutes_granted,
                    "minutes_remaining": 0,
                    "tier": ctx.tier.value,
                    "credits_remaining": usage.credits_remaining or 0,
                    "upgrade_options": self.denial_upgrade_options(ctx.tier, transcription=True),
                },
            )

        grant = AdmissionGrant(paid_via=usage.paid_via, transcription=usage)
        grant.headers[HEADER_TX_USED] = f"{usage.minutes_used:.2f}"
        grant.headers[HEADER_TX_GRANTED] = f"{usage.minutes_granted:.2f}"
        grant.headers[HEADER_TX_REMAINING] = f"{usage.minutes_remaining:.2f}"
        if usage.paid_via:
            grant.headers[HEADER_PAID_VIA] = usage.paid_via
            grant.headers[HEADER_CREDITS_REMAINING] = _number(usage.credits_remaining or 0)
        return self._allow(endpoint, ctx, grant)

    async def admit_transcription_stream(self, ctx: AuthContext) -> AdmissionGrant:
        """
        Pre-check before opening a streaming transcription session.

        Read-only: streamed minutes are metered by the session itself.
        """
        endpoint = EndpointKind.TRANSCRIPTION_STREAM
        self.require_account(ctx, endpoint)

        status = await self.transcription.get_transcription_status(ctx.metering_key, ctx.tier)
        if status.minutes_remaining <= 0 and ctx.tier != UserTier.SUBSCRIBED:
            raise self._deny(
                endpoint,
                ctx,
                429,
                {
                    "error": ERROR_TRANSCRIPTION_EXHAUSTED,
                    "message": self._transcription_message(status.minutes_granted),
                    "minutes_used": status.minutes_used,
                    "minutes_granted": status.minutes_granted,
                    "minutes_remaining": 0,
                    "tier": ctx.tier.value,
                    "upgrade_options": self.denial_upgrade_options(ctx.tier, transcription=True),
                },
            )
        return self._allow(endpoint, ctx, AdmissionGrant())

    def _transcription_message(self, granted: float) -> str:
        return (
            f"You've used all {_number(granted)} free transcription minutes. "
            f"Buy credits or subscribe at {self.upgrade_url}"
        )
