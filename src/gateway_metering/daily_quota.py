"""
Daily Query Quota
=================

Primary per-device request counter with a UTC day boundary, layered with a
per-IP abuse guard for anonymous callers and a credit fallback once the free
quota is spent.

Decision order for ``track_usage``:

1. Anonymous caller with a known IP: the ``ip:<address>`` counter is checked
   first against a fixed ceiling (independent of tier config). At the ceiling
   the request is denied before the device counter is read; otherwise the IP
   counter is incremented.
2. Device counter (see ``RollingDailyCounter``): create / roll over / increment
   while below the tier ceiling.
3. At the ceiling: if an account id is known, one credit is deducted from the
   ledger. Success admits the request with ``paid_via="credits"`` and leaves
   the free counter untouched; failure denies with the current balance.

``resets_at`` is always the next UTC midnight, computed per call.

Store failures fail open: the request is allowed with the full quota
reported, and the error goes to the configured ``ErrorReporter``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from .config import DEFAULT_IP_DAILY_LIMIT
from .counters import RollingDailyCounter
from .credits import REASON_AI_QUERY, CreditLedger
from .errors import FailurePolicy, StoreError, failure_policy
from .observability import ErrorReporter, OTelErrorReporter
from .store import IP_TRACKING_TIER, UsageStore, ip_key
from .tiers import DEFAULT_TIER_POLICIES, TierPolicy, UserTier, status_upgrade_options

logger = logging.getLogger(__name__)

PAID_VIA_CREDITS = "credits"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime | None = None) -> datetime:
    """Instant of the next UTC day boundary."""
    now = (now or utc_now()).astimezone(timezone.utc)
    tomorrow = now.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


@dataclass
class UsageResult:
    """Outcome of ``DailyQuotaTracker.track_usage``."""

    used: int
    limit: int
    remaining: int
    allowed: bool
    resets_at: datetime
    paid_via: str | None = None
    credits_remaining: float | None = None
    # True when the IP abuse guard, not the device counter, denied the request
    ip_limited: bool = False


@dataclass
class UsageStatus:
    """Read-only snapshot returned by ``get_usage_status``."""

    tier: UserTier
    used_today: int
    limit_today: int
    remaining: int
    resets_at: datetime
    model_access: list[str]
    upgrade_options: dict[str, dict[str, str]] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tier": self.tier.value,
            "used_today": self.used_today,
            "limit_today": self.limit_today,
            "remaining": self.remaining,
            "resets_at": format_timestamp(self.resets_at),
            "model_access": self.model_access,
        }
        if self.upgrade_options:
            data["upgrade_options"] = self.upgrade_options
        return data


class DailyQuotaTracker:
    """Per-device daily quota with IP abuse guard and credit fallback."""

    def __init__(
        self,
        store: UsageStore,
        ledger: CreditLedger,
        policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
        ip_daily_limit: int = DEFAULT_IP_DAILY_LIMIT,
        reporter: ErrorReporter | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._ledger = ledger
        self._policies = policies
        self._reporter = reporter or OTelErrorReporter()
        self._clock = clock
        # The per-call tier ceiling overrides this one for device keys.
        self._device_counter = RollingDailyCounter(
            store, policies[UserTier.LOGGED_IN].daily_query_limit
        )
        self._ip_counter = RollingDailyCounter(store, ip_daily_limit)

    @property
    def ip_daily_limit(self) -> int:
        return self._ip_counter.ceiling

    def policy(self, tier: UserTier) -> TierPolicy:
        return self._policies[tier]

    async def track_usage(
        self,
        device_id: str,
        tier: UserTier,
        account_id: str | None = None,
        ip: str | None = None,
    ) -> UsageResult:
        """Count one request for the device and decide whether it is admitted."""
        now = self._clock()
        today = now.astimezone(timezone.utc).date()
        resets_at = next_utc_midnight(now)
        limit = self._policies[tier].daily_query_limit

        try:
            if tier == UserTier.ANONYMOUS and ip:
                ip_hit = await self._ip_counter.consume(
                    ip_key(ip), today, tier=IP_TRACKING_TIER
                )
                if not ip_hit.admitted:
                    logger.warning(
                        f"IP abuse detected: {ip} has {ip_hit.count} queries today"
                    )
                    return UsageResult(
                        used=ip_hit.count,
                        limit=self._ip_counter.ceiling,
                        remaining=0,
                        allowed=False,
                        resets_at=resets_at,
                        ip_limited=True,
                    )

            hit = await self._device_counter.consume(
                device_id,
                today,
                tier=tier.value,
                account_id=account_id,
                ceiling=limit,
            )
        except StoreError as e:
            return self._on_store_error(e, "track_usage", device_id, tier, resets_at)

        if hit.admitted:
            logger.debug(f"Usage allowed for {device_id} ({tier.value}): {hit.count}/{limit}")
            return UsageResult(
                used=hit.count,
                limit=limit,
                remaining=max(0, limit - hit.count),
                allowed=True,
                resets_at=resets_at,
            )

        return await self._credit_fallback(device_id, account_id, hit.count, limit, resets_at)

    async def _credit_fallback(
        self,
        device_id: str,
        account_id: str | None,
        used: int,
        limit: int,
        resets_at: datetime,
    ) -> UsageResult:
        if account_id:
            deduction = await self._ledger.deduct(account_id, REASON_AI_QUERY)
            if deduction.success:
                logger.info(
                    f"Daily quota exhausted for {device_id}, paid with credit "
                    f"(remaining: {deduction.remaining})"
                )
                return UsageResult(
                    used=used,
                    limit=limit,
                    remaining=0,
                    allowed=True,
                    resets_at=resets_at,
                    paid_via=PAID_VIA_CREDITS,
                    credits_remaining=deduction.remaining,
                )
            if deduction.failure is not None:
                logger.info(
                    f"Credit fallback unavailable for {account_id}: "
                    f"{deduction.failure.value} -> {failure_policy(deduction.failure).value}"
                )

        balance = await self._ledger.get_balance(account_id) if account_id else 0
        logger.warning(f"Daily limit reached for {device_id}: {used}/{limit}")
        return UsageResult(
            used=used,
            limit=limit,
            remaining=0,
            allowed=False,
            resets_at=resets_at,
            credits_remaining=balance,
        )

    def _on_store_error(
        self,
        error: StoreError,
        operation: str,
        device_id: str,
        tier: UserTier,
        resets_at: datetime,
    ) -> UsageResult:
        if failure_policy(error.kind) is not FailurePolicy.FAIL_OPEN:
            raise error
        self._reporter.report(
            error, {"operation": operation, "device_id": device_id, "tier": tier.value}
        )
        limit = self._policies[tier].daily_query_limit
        return UsageResult(
            used=0, limit=limit, remaining=limit, allowed=True, resets_at=resets_at
        )

    async def get_usage_status(self, device_id: str, tier: UserTier) -> UsageStatus:
        """Snapshot of today's usage. Never writes; a stale day reads as zero."""
        now = self._clock()
        today = now.astimezone(timezone.utc).date()
        policy = self._policies[tier]

        used_today = 0
        try:
            used_today = await self._device_counter.peek(device_id, today)
        except StoreError as e:
            self._reporter.report(
                e, {"operation": "get_usage_status", "device_id": device_id, "tier": tier.value}
            )

        return UsageStatus(
            tier=tier,
            used_today=used_today,
            limit_today=policy.daily_query_limit,
            remaining=max(0, policy.daily_query_limit - used_today),
            resets_at=next_utc_midnight(now),
            model_access=list(policy.allowed_model_patterns),
            upgrade_options=status_upgrade_options(tier, self._policies),
        )
