"""
Rolling Daily Counter
=====================

One UTC-day counter abstraction shared by the per-device quota and the
per-IP abuse guard. Both rows live in the same request-count table and
follow the same state machine:

    NoRecord ──consume──> ActiveToday(count=1)
    ActiveToday(stale day) ──consume──> ActiveToday(count=1)   # rollover
    ActiveToday(count < ceiling) ──consume──> ActiveToday(count+1)
    ActiveToday(count >= ceiling) ──consume──> AtLimit (no write)

A rollover is write-then-allow: the first request of a new day is always
admitted. At the ceiling the stored count is left untouched so rejected
requests never inflate it.

Store errors propagate as ``StoreError``; the caller owns the fail-open
decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from .store import UsageRecord, UsageStore


@dataclass(frozen=True)
class CounterHit:
    """Result of one ``consume`` call."""

    count: int
    admitted: bool
    rolled_over: bool = False
    created: bool = False


def effective_count(record: UsageRecord | None, today: date) -> int:
    """Today's count for a record; a stale or missing record counts as 0."""
    if record is None or record.last_reset_day < today:
        return 0
    return record.daily_count


class RollingDailyCounter:
    """Day-scoped counter keyed by an arbitrary string."""

    def __init__(self, store: UsageStore, ceiling: int):
        if ceiling <= 0:
            raise ValueError("ceiling must be > 0")
        self._store = store
        self.ceiling = ceiling

    async def peek(self, key: str, today: date) -> int:
        """Read today's count without writing."""
        return effective_count(await self._store.get_usage(key), today)

    async def consume(
        self,
        key: str,
        today: date,
        tier: str,
        account_id: str | None = None,
        ceiling: int | None = None,
    ) -> CounterHit:
        """Count one request against ``key`` unless it is already at the ceiling."""
        limit = self.ceiling if ceiling is None else ceiling
        record = await self._store.get_usage(key)

        if record is None:
            await self._store.save_usage(
                UsageRecord(
                    key=key,
                    daily_count=1,
                    last_reset_day=today,
                    tier=tier,
                    account_id=account_id,
                )
            )
            return CounterHit(count=1, admitted=True, created=True)

        if record.last_reset_day < today:
            record.daily_count = 1
            record.last_reset_day = today
            record.tier = tier
            record.account_id = account_id
            await self._store.save_usage(record)
            return CounterHit(count=1, admitted=True, rolled_over=True)

        if record.daily_count >= limit:
            return CounterHit(count=record.daily_count, admitted=False)

        record.daily_count += 1
        record.tier = tier
        record.account_id = account_id
        await self._store.save_usage(record)
        return CounterHit(count=record.daily_count, admitted=True)
