"""
Gateway Metering
================

Admission control and metering core for a multi-tenant AI API gateway.

For every inbound request it decides, before any provider call:
- whether the caller's tier may use the requested model
- whether the caller is under its daily query quota or its cumulative
  transcription-minute quota
- whether a prepaid credit can pay for the request once the free quota is spent

Features:
- Tier policies with YAML override and model allow-lists
- Per-device daily counter with UTC rollover and a per-IP abuse guard
- Cumulative transcription minutes with audio duration estimation
- Credit fallback through a PostgREST credit ledger with identity resolution
- Redis per-minute rate limiter
- Explicit fail-open / fail-closed policy per failure kind
- FastAPI gateway with usage endpoints and metered proxy routes

Usage:
    from gateway_metering.gateway import create_app

    app = create_app()
"""

from .admission import AdmissionGrant, AdmissionService, EndpointKind
from .auth import AuthContext, TrustedHeaderAuthResolver
from .config import LedgerEndpointConfig, MeteringConfig
from .counters import CounterHit, RollingDailyCounter
from .credits import CreditDeduction, CreditLedgerClient, NoCreditLedger
from .daily_quota import DailyQuotaTracker, UsageResult, UsageStatus, next_utc_midnight
from .errors import (
    AdmissionDenied,
    FailureKind,
    FailurePolicy,
    StoreError,
    failure_policy,
)
from .identity import IdentityResolver, InMemoryIdentityCache
from .store import InMemoryUsageStore, TranscriptionUsageRecord, UsageRecord, UsageStore
from .tiers import (
    DEFAULT_TIER_POLICIES,
    ModelAccessGuard,
    TierPolicy,
    UserTier,
    is_model_allowed,
    load_tier_policies,
)
from .transcription import (
    TranscriptionQuotaTracker,
    TranscriptionStatus,
    TranscriptionUsageResult,
    estimate_audio_minutes,
)

__version__ = "0.1.0"

__all__ = [
    # Tiers & model access
    "UserTier",
    "TierPolicy",
    "DEFAULT_TIER_POLICIES",
    "load_tier_policies",
    "is_model_allowed",
    "ModelAccessGuard",
    # Identity & credits
    "IdentityResolver",
    "InMemoryIdentityCache",
    "CreditLedgerClient",
    "NoCreditLedger",
    "CreditDeduction",
    # Store
    "UsageStore",
    "InMemoryUsageStore",
    "UsageRecord",
    "TranscriptionUsageRecord",
    "RollingDailyCounter",
    "CounterHit",
    # Trackers
    "DailyQuotaTracker",
    "UsageResult",
    "UsageStatus",
    "next_utc_midnight",
    "TranscriptionQuotaTracker",
    "TranscriptionUsageResult",
    "TranscriptionStatus",
    "estimate_audio_minutes",
    # Errors
    "FailureKind",
    "FailurePolicy",
    "failure_policy",
    "StoreError",
    "AdmissionDenied",
    # Admission
    "AdmissionService",
    "AdmissionGrant",
    "EndpointKind",
    "AuthContext",
    "TrustedHeaderAuthResolver",
    # Config
    "MeteringConfig",
    "LedgerEndpointConfig",
]
