"""
Usage Store Contract
====================

The metering core does not own its row store; it needs exactly these
operations from one:

Request-count table (keyed by device id, or ``"ip:" + address``):
- get_usage(key) -> UsageRecord | None
- save_usage(record)                  upsert

Transcription table (keyed by account id):
- get_transcription(key) -> TranscriptionUsageRecord | None
- create_transcription(record)        first grant
- add_transcription_minutes(key, minutes, tier)   additive update
- accumulate_transcription(key, minutes, tier)    upsert + add (analytics)

Adapters must raise ``StoreError`` for every backend failure; the trackers
turn it into a fail-open decision.

``InMemoryUsageStore`` is the process-local backend used when no database is
configured, and in tests.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone

IP_KEY_PREFIX = "ip:"
IP_TRACKING_TIER = "ip_tracking"


def ip_key(address: str) -> str:
    return f"{IP_KEY_PREFIX}{address}"


@dataclass
class UsageRecord:
    """Daily request counter for one device or IP."""

    key: str
    daily_count: int
    last_reset_day: date
    tier: str
    account_id: str | None = None
    updated_at: datetime | None = None


@dataclass
class TranscriptionUsageRecord:
    """Cumulative transcription ledger for one account."""

    key: str
    minutes_used: float
    minutes_granted: float
    tier: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class UsageStore(ABC):
    """Narrow interface over the usage tables."""

    @abstractmethod
    async def get_usage(self, key: str) -> UsageRecord | None: ...

    @abstractmethod
    async def save_usage(self, record: UsageRecord) -> None: ...

    @abstractmethod
    async def get_transcription(self, key: str) -> TranscriptionUsageRecord | None: ...

    @abstractmethod
    async def create_transcription(self, record: TranscriptionUsageRecord) -> None: ...

    @abstractmethod
    async def add_transcription_minutes(
        self, key: str, minutes: float, tier: str
    ) -> None: ...

    @abstractmethod
    async def accumulate_transcription(
        self, key: str, minutes: float, tier: str
    ) -> None: ...

    async def check_health(self) -> None:
        """Raise StoreError when the backend is unreachable."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryUsageStore(UsageStore):
    """Dict-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        self._usage: dict[str, UsageRecord] = {}
        self._transcription: dict[str, TranscriptionUsageRecord] = {}

    async def get_usage(self, key: str) -> UsageRecord | None:
        record = self._usage.get(key)
        return copy.copy(record) if record else None

    async def save_usage(self, record: UsageRecord) -> None:
        stored = copy.copy(record)
        stored.updated_at = datetime.now(timezone.utc)
        self._usage[record.key] = stored

    async def get_transcription(self, key: str) -> TranscriptionUsageRecord | None:
        record = self._transcription.get(key)
        return copy.copy(record) if record else None

    async def create_transcription(self, record: TranscriptionUsageRecord) -> None:
        now = datetime.now(timezone.utc)
        stored = copy.copy(record)
        stored.created_at = stored.created_at or now
        stored.updated_at = now
        self._transcription.setdefault(record.key, stored)

    async def add_transcription_minutes(self, key: str, minutes: float, tier: str) -> None:
        record = self._transcription.get(key)
        if record is None:
            return
        record.minutes_used += minutes
        record.tier = tier
        record.updated_at = datetime.now(timezone.utc)

    async def accumulate_transcription(self, key: str, minutes: float, tier: str) -> None:
        record = self._transcription.get(key)
        if record is None:
            await self.create_transcription(
                TranscriptionUsageRecord(
                    key=key, minutes_used=minutes, minutes_granted=0.0, tier=tier
                )
            )
            return
        await self.add_transcription_minutes(key, minutes, tier)
