"""
Metering Configuration
======================

Environment-driven configuration for the metering core.

Configuration (environment variables):
    DATABASE_URL: Postgres DSN for the usage tables (unset = in-memory store)
    METERING_LEDGER_URL: Base URL of the ledger / identity directory REST API
    METERING_LEDGER_API_KEY: API key for the ledger REST API
    METERING_LOOKUP_TIMEOUT_SECONDS: Timeout for ledger and directory calls (default: 5)
    METERING_IP_DAILY_LIMIT: Daily ceiling for the anonymous IP abuse guard (default: 200)
    METERING_TIER_CONFIG_PATH: Optional YAML file overriding the tier policies
    METERING_UPGRADE_URL: URL advertised in upgrade options
    METERING_TRUSTED_PROXY_HOPS: Proxies in front of the gateway whose X-Forwarded-For
        entries are trusted (default: 0, header ignored)
    METERING_RATE_LIMIT_ENABLED: Enable the per-minute limiter (default: false)
    REDIS_HOST: Redis host for the per-minute limiter (default: localhost)
    REDIS_PORT: Redis port (default: 6379)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from .tiers import DEFAULT_TIER_POLICIES, TierPolicy, UserTier, load_tier_policies

logger = logging.getLogger(__name__)

DEFAULT_IP_DAILY_LIMIT = 200
DEFAULT_LOOKUP_TIMEOUT_SECONDS = 5.0
DEFAULT_UPGRADE_URL = "https://screenpi.pe/onboarding"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value '{raw}', using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value '{raw}', using default {default}")
        return default


@dataclass(frozen=True)
class LedgerEndpointConfig:
    """Connection settings for the ledger / identity directory REST API."""

    base_url: str
    api_key: str = ""
    timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT_SECONDS

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }


@dataclass
class MeteringConfig:
    """Top-level configuration for the metering core."""

    database_url: str | None = None
    ledger: LedgerEndpointConfig | None = None
    ip_daily_limit: int = DEFAULT_IP_DAILY_LIMIT
    tier_config_path: str | None = None
    upgrade_url: str = DEFAULT_UPGRADE_URL
    trusted_proxy_hops: int = 0
    rate_limit_enabled: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    tier_policies: Mapping[UserTier, TierPolicy] = field(
        default_factory=lambda: DEFAULT_TIER_POLICIES
    )

    @classmethod
    def from_env(cls) -> "MeteringConfig":
        """Load configuration from environment variables."""
        ledger_url = os.getenv("METERING_LEDGER_URL", "").strip()
        ledger = None
        if ledger_url:
            ledger = LedgerEndpointConfig(
                base_url=ledger_url,
                api_key=os.getenv("METERING_LEDGER_API_KEY", ""),
                timeout_seconds=_env_float(
                    "METERING_LOOKUP_TIMEOUT_SECONDS", DEFAULT_LOOKUP_TIMEOUT_SECONDS
                ),
            )
        else:
            logger.warning(
                "METERING_LEDGER_URL not set: credit fallback and identity "
                "lookups are disabled"
            )

        ip_limit = _env_int("METERING_IP_DAILY_LIMIT", DEFAULT_IP_DAILY_LIMIT)
        if ip_limit <= 0:
            logger.warning(
                f"METERING_IP_DAILY_LIMIT must be > 0, using default {DEFAULT_IP_DAILY_LIMIT}"
            )
            ip_limit = DEFAULT_IP_DAILY_LIMIT

        proxy_hops = _env_int("METERING_TRUSTED_PROXY_HOPS", 0)
        if proxy_hops < 0:
            logger.warning("METERING_TRUSTED_PROXY_HOPS must be >= 0, using 0")
            proxy_hops = 0

        tier_path = os.getenv("METERING_TIER_CONFIG_PATH") or None
        policies = load_tier_policies(tier_path) if tier_path else DEFAULT_TIER_POLICIES

        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            ledger=ledger,
            ip_daily_limit=ip_limit,
            tier_config_path=tier_path,
            upgrade_url=os.getenv("METERING_UPGRADE_URL", DEFAULT_UPGRADE_URL),
            trusted_proxy_hops=proxy_hops,
            rate_limit_enabled=(
                os.getenv("METERING_RATE_LIMIT_ENABLED", "false").lower() == "true"
            ),
            redis_host=os.getenv("REDIS_HOST", "localhost"),
            redis_port=_env_int("REDIS_PORT", 6379),
            tier_policies=policies,
        )
