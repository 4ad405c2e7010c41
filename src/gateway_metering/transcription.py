"""
Transcription Minute Quota
==========================

Cumulative, minute-based metering for cloud transcription. Unlike the daily
query quota nothing here resets on a day boundary: ``minutes_used`` only
grows and ``minutes_granted`` is fixed when the account first transcribes.

Tier behavior:
- anonymous: always denied, no store access
- unlimited grant (subscribed): always allowed; minutes are still added to an
  analytics counter, and a failure to do so never affects the decision
- granted tier (logged_in): record created on first use with the tier grant;
  a request that does not fit in the remaining grant falls back to one credit

Audio length is estimated from the request's Content-Length, see
``estimate_audio_minutes``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping

from .credits import REASON_TRANSCRIPTION, CreditLedger
from .daily_quota import PAID_VIA_CREDITS
from .errors import FailurePolicy, StoreError, failure_policy
from .metrics import record_transcription_minutes
from .observability import ErrorReporter, OTelErrorReporter
from .store import TranscriptionUsageRecord, UsageStore
from .tiers import DEFAULT_TIER_POLICIES, TierPolicy, UserTier

logger = logging.getLogger(__name__)

# Reported as "remaining" for unlimited grants
UNLIMITED_REMAINING = 999999

# 16 kHz mono 32-bit float WAV
WAV_HEADER_BYTES = 44
BYTES_PER_SAMPLE = 4
DEFAULT_SAMPLE_RATE = 16000
FALLBACK_MINUTES = 0.5
MIN_MINUTES = 0.01

# Caller-declared sample rates outside this range are metered at the default
MIN_SAMPLE_RATE = 8000
MAX_SAMPLE_RATE = 48000


def accepted_sample_rate(sample_rate: int | None) -> int:
    if sample_rate is None or not MIN_SAMPLE_RATE <= sample_rate <= MAX_SAMPLE_RATE:
        return DEFAULT_SAMPLE_RATE
    return sample_rate


def estimate_audio_minutes(
    content_length: int | None, sample_rate: int | None = DEFAULT_SAMPLE_RATE
) -> float:
    """
    Estimate audio duration in minutes from the upload size.

    Missing, zero or header-only lengths return a 30-second fallback; any real
    payload is floored at 0.01 minutes. The sample rate comes from the caller,
    so implausible values fall back to 16 kHz.
    """
    if not content_length or content_length <= WAV_HEADER_BYTES:
        return FALLBACK_MINUTES
    samples = (content_length - WAV_HEADER_BYTES) / BYTES_PER_SAMPLE
    seconds = samples / accepted_sample_rate(sample_rate)
    return max(MIN_MINUTES, seconds / 60)


@dataclass
class TranscriptionUsageResult:
    """Outcome of ``TranscriptionQuotaTracker.track``."""

    minutes_used: float
    minutes_granted: float
    minutes_remaining: float
    allowed: bool
    paid_via: str | None = None
    credits_remaining: float | None = None


@dataclass
class TranscriptionStatus:
    """Read-only snapshot returned by ``get_transcription_status``."""

    minutes_used: float
    minutes_granted: float
    minutes_remaining: float
    tier: UserTier

    def to_dict(self) -> dict[str, Any]:
        return {
            "minutes_used": self.minutes_used,
            "minutes_granted": self.minutes_granted,
            "minutes_remaining": self.minutes_remaining,
            "tier": self.tier.value,
        }


class TranscriptionQuotaTracker:
    """Cumulative transcription metering with credit fallback."""

    def __init__(
        self,
        store: UsageStore,
        ledger: CreditLedger,
        policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
        reporter: ErrorReporter | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._policies = policies
        self._reporter = reporter or OTelErrorReporter()

    def _grant(self, tier: UserTier) -> float:
        return self._policies[tier].transcription_minute_grant or 0.0

    async def track(
        self, account_id: str, tier: UserTier, audio_minutes: float
    ) -> TranscriptionUsageResult:
        """Meter ``audio_minutes`` for the account and decide admission."""
        if tier == UserTier.ANONYMOUS:
            return TranscriptionUsageResult(
                minutes_used=0, minutes_granted=0, minutes_remaining=0, allowed=False
            )

        if self._policies[tier].unlimited_transcription:
            await self._track_unlimited(account_id, tier, audio_minutes)
            return TranscriptionUsageResult(
                minutes_used=0,
                minutes_granted=0,
                minutes_remaining=UNLIMITED_REMAINING,
                allowed=True,
            )

        try:
            return await self._track_granted(account_id, tier, audio_minutes)
        except StoreError as e:
            if failure_policy(e.kind) is not FailurePolicy.FAIL_OPEN:
                raise
            self._reporter.report(
                e, {"operation": "track_transcription", "account_id": account_id, "tier": tier.value}
            )
            grant = self._grant(tier)
            return TranscriptionUsageResult(
                minutes_used=0, minutes_granted=grant, minutes_remaining=grant, allowed=True
            )

    async def _track_unlimited(
        self, account_id: str, tier: UserTier, audio_minutes: float
    ) -> None:
        try:
            await self._store.accumulate_transcription(account_id, audio_minutes, tier.value)
        except StoreError as e:
            # analytics only
            logger.error(f"Transcription tracking failed for subscriber {account_id}: {e}")
            self._reporter.report(
                e, {"operation": "accumulate_transcription", "account_id": account_id}
            )
            return
        record_transcription_minutes(tier.value, audio_minutes)

    async def _track_granted(
        self, account_id: str, tier: UserTier, audio_minutes: float
    ) -> TranscriptionUsageResult:
        record = await self._store.get_transcription(account_id)
        if record is None:
            record = TranscriptionUsageRecord(
                key=account_id,
                minutes_used=0.0,
                minutes_granted=self._grant(tier),
                tier=tier.value,
            )
            await self._store.create_transcription(record)
            logger.info(
                f"Granted {record.minutes_granted} transcription minutes to {account_id}"
            )

        used = record.minutes_used
        granted = record.minutes_granted
        remaining = max(0.0, granted - used)

        if remaining < audio_minutes:
            deduction = await self._ledger.deduct(account_id, REASON_TRANSCRIPTION)
            if not deduction.success:
                balance = await self._ledger.get_balance(account_id)
                logger.warning(
                    f"Transcription quota exhausted for {account_id}: "
                    f"{used:.2f}/{granted:.2f} min, credits: {balance}"
                )
                return TranscriptionUsageResult(
                    minutes_used=used,
                    minutes_granted=granted,
                    minutes_remaining=remaining,
                    allowed=False,
                    credits_remaining=balance,
                )

            logger.info(
                f"Transcription over grant for {account_id}, paid with credit "
                f"for {math.ceil(audio_minutes)} min (remaining: {deduction.remaining})"
            )
            await self._record(account_id, tier, audio_minutes)
            return TranscriptionUsageResult(
                minutes_used=used + audio_minutes,
                minutes_granted=granted,
                minutes_remaining=max(0.0, remaining - audio_minutes),
                allowed=True,
                paid_via=PAID_VIA_CREDITS,
                credits_remaining=deduction.remaining,
            )

        await self._record(account_id, tier, audio_minutes)
        return TranscriptionUsageResult(
            minutes_used=used + audio_minutes,
            minutes_granted=granted,
            minutes_remaining=max(0.0, remaining - audio_minutes),
            allowed=True,
        )

    async def _record(self, account_id: str, tier: UserTier, audio_minutes: float) -> None:
        await self._store.add_transcription_minutes(account_id, audio_minutes, tier.value)
        record_transcription_minutes(tier.value, audio_minutes)

    async def get_transcription_status(
        self, account_id: str, tier: UserTier
    ) -> TranscriptionStatus:
        """Snapshot of the account's transcription usage. Never writes."""
        if tier == UserTier.ANONYMOUS:
            return TranscriptionStatus(
                minutes_used=0, minutes_granted=0, minutes_remaining=0, tier=tier
            )
        if self._policies[tier].unlimited_transcription:
            return TranscriptionStatus(
                minutes_used=0,
                minutes_granted=0,
                minutes_remaining=UNLIMITED_REMAINING,
                tier=tier,
            )

        try:
            record = await self._store.get_transcription(account_id)
        except StoreError as e:
            self._reporter.report(
                e, {"operation": "get_transcription_status", "account_id": account_id}
            )
            record = None

        if record is not None:
            return TranscriptionStatus(
                minutes_used=record.minutes_used,
                minutes_granted=record.minutes_granted,
                minutes_remaining=max(0.0, record.minutes_granted - record.minutes_used),
                tier=tier,
            )

        grant = self._grant(tier)
        return TranscriptionStatus(
            minutes_used=0, minutes_granted=grant, minutes_remaining=grant, tier=tier
        )
