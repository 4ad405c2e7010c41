"""
Tier Policies and Model Access Guard
====================================

Static per-tier configuration for the metering core and the model allow-list
check built on top of it.

Tiers:
- anonymous:  device-identified callers without an account
- logged_in:  callers with an account but no subscription
- subscribed: paying subscribers (wildcard model access, unlimited transcription)

Each tier carries a daily query ceiling, a requests-per-minute ceiling, the
allowed model patterns and the transcription minute grant given on first use.
Policies are loaded once (defaults or a YAML override) and never mutated.

Model matching is intentionally loose: a model is allowed when, ignoring case,
the model name contains an allowed pattern or an allowed pattern contains the
model name. This tolerates dated suffixes such as
``claude-haiku-4-5-20251001`` for the pattern ``claude-haiku-4-5``.

YAML override format (METERING_TIER_CONFIG_PATH):

    tiers:
      anonymous:
        daily_query_limit: 25
        requests_per_minute: 15
        allowed_models: [claude-haiku-4-5, gemini-3-flash]
        transcription_minutes: 0
      logged_in: {...}
      subscribed:
        ...
        allowed_models: ["*"]
        transcription_minutes: unlimited
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

WILDCARD_PATTERN = "*"


class UserTier(str, Enum):
    """Caller classification determining quotas and model access."""

    ANONYMOUS = "anonymous"
    LOGGED_IN = "logged_in"
    SUBSCRIBED = "subscribed"


# Ascending order; each tier must be strictly more generous than the previous.
TIER_ORDER = (UserTier.ANONYMOUS, UserTier.LOGGED_IN, UserTier.SUBSCRIBED)


@dataclass(frozen=True)
class TierPolicy:
    """Immutable limits for one tier."""

    tier: UserTier
    daily_query_limit: int
    requests_per_minute: int
    allowed_model_patterns: tuple[str, ...]
    # None = unlimited (subscribers)
    transcription_minute_grant: float | None = 0.0

    def __post_init__(self) -> None:
        if self.daily_query_limit <= 0:
            raise ValueError(f"{self.tier.value}: daily_query_limit must be > 0")
        if self.requests_per_minute <= 0:
            raise ValueError(f"{self.tier.value}: requests_per_minute must be > 0")
        if not self.allowed_model_patterns:
            raise ValueError(f"{self.tier.value}: allowed_models must not be empty")
        if (
            self.transcription_minute_grant is not None
            and self.transcription_minute_grant < 0
        ):
            raise ValueError(f"{self.tier.value}: transcription_minutes must be >= 0")

    @property
    def allows_all_models(self) -> bool:
        return WILDCARD_PATTERN in self.allowed_model_patterns

    @property
    def unlimited_transcription(self) -> bool:
        return self.transcription_minute_grant is None


DEFAULT_TIER_POLICIES: Mapping[UserTier, TierPolicy] = MappingProxyType(
    {
        UserTier.ANONYMOUS: TierPolicy(
            tier=UserTier.ANONYMOUS,
            daily_query_limit=25,
            requests_per_minute=15,
            allowed_model_patterns=(
                "claude-haiku-4-5",
                "gemini-3-flash",
                "gemini-2.5-flash",
            ),
            transcription_minute_grant=0.0,
        ),
        UserTier.LOGGED_IN: TierPolicy(
            tier=UserTier.LOGGED_IN,
            daily_query_limit=50,
            requests_per_minute=25,
            allowed_model_patterns=(
                "claude-haiku-4-5",
                "claude-sonnet-4-5",
                "gpt-4o-mini",
                "gemini-3-flash",
                "gemini-2.5-flash",
                "gemini-3-pro",
            ),
            transcription_minute_grant=500.0,
        ),
        UserTier.SUBSCRIBED: TierPolicy(
            tier=UserTier.SUBSCRIBED,
            # hard cap to control provider cost
            daily_query_limit=200,
            requests_per_minute=60,
            allowed_model_patterns=(WILDCARD_PATTERN,),
            transcription_minute_grant=None,
        ),
    }
)


def validate_tier_policies(policies: Mapping[UserTier, TierPolicy]) -> None:
    """
    Validate cross-tier invariants.

    Raises:
        ValueError: If a tier is missing or the daily limits are not strictly
            increasing from anonymous to subscribed.
    """
    missing = [tier.value for tier in TIER_ORDER if tier not in policies]
    if missing:
        raise ValueError(f"Missing tier policies: {missing}")

    for lower, higher in zip(TIER_ORDER, TIER_ORDER[1:]):
        if policies[higher].daily_query_limit <= policies[lower].daily_query_limit:
            raise ValueError(
                f"daily_query_limit for {higher.value} "
                f"({policies[higher].daily_query_limit}) must exceed "
                f"{lower.value} ({policies[lower].daily_query_limit})"
            )


_ALLOWED_TIER_KEYS = {
    "daily_query_limit",
    "requests_per_minute",
    "allowed_models",
    "transcription_minutes",
}


def _parse_grant(value: Any, path: str) -> float | None:
    if value is None or (isinstance(value, str) and value.lower() == "unlimited"):
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'transcription_minutes' in {path} must be a number or 'unlimited'")
    return float(value)


def _parse_tier(tier: UserTier, data: Any) -> TierPolicy:
    path = f"tiers.{tier.value}"
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown = set(data.keys()) - _ALLOWED_TIER_KEYS
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")

    for key in ("daily_query_limit", "requests_per_minute", "allowed_models"):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")

    models = data["allowed_models"]
    if not isinstance(models, list) or not all(isinstance(m, str) and m for m in models):
        raise ValueError(f"'allowed_models' in {path} must be a list of strings")

    for key in ("daily_query_limit", "requests_per_minute"):
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' in {path} must be an integer")

    return TierPolicy(
        tier=tier,
        daily_query_limit=data["daily_query_limit"],
        requests_per_minute=data["requests_per_minute"],
        allowed_model_patterns=tuple(models),
        transcription_minute_grant=_parse_grant(
            data.get("transcription_minutes", 0), path
        ),
    )


def load_tier_policies(path: str | Path) -> Mapping[UserTier, TierPolicy]:
    """
    Load and validate tier policies from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML is invalid or a tier fails validation
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tier config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in tier config {path}: {e}") from e

    if not isinstance(raw, dict) or "tiers" not in raw:
        raise ValueError("Tier config must contain a 'tiers' section")

    unknown_top = set(raw.keys()) - {"tiers"}
    if unknown_top:
        raise ValueError(f"Unknown configuration keys: {unknown_top}")

    tiers_data = raw["tiers"]
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' must be a dictionary")

    valid_names = {tier.value for tier in UserTier}
    unknown_tiers = set(tiers_data.keys()) - valid_names
    if unknown_tiers:
        raise ValueError(f"Unknown tiers: {unknown_tiers}")

    policies = {
        tier: _parse_tier(tier, tiers_data[tier.value])
        for tier in UserTier
        if tier.value in tiers_data
    }
    validate_tier_policies(policies)

    logger.info(f"Loaded tier policies from {path}")
    return MappingProxyType(policies)


# =============================================================================
# Model Access Guard
# =============================================================================


def is_model_allowed(
    model: str,
    tier: UserTier,
    policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
) -> bool:
    """
    Check whether a model name is usable under a tier's allow-list.

    NOTE: bidirectional containment means a very short pattern (e.g. "gpt")
    would admit any model name containing it. Patterns are kept specific.
    """
    policy = policies[tier]
    if policy.allows_all_models:
        return True

    requested = model.lower()
    return any(
        pattern.lower() in requested or requested in pattern.lower()
        for pattern in policy.allowed_model_patterns
    )


class ModelAccessGuard:
    """Tier-bound model allow-list check."""

    def __init__(self, policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES):
        self._policies = policies

    def check(self, model: str, tier: UserTier) -> bool:
        return is_model_allowed(model, tier, self._policies)

    def allows_all(self, tier: UserTier) -> bool:
        return self._policies[tier].allows_all_models

    def allowed_models(self, tier: UserTier) -> list[str]:
        return list(self._policies[tier].allowed_model_patterns)


# =============================================================================
# Upgrade Suggestions
# =============================================================================

SUBSCRIPTION_PRICE = "$29/mo"


def status_upgrade_options(
    tier: UserTier,
    policies: Mapping[UserTier, TierPolicy] = DEFAULT_TIER_POLICIES,
) -> dict[str, dict[str, str]] | None:
    """Upgrade suggestions shown in usage status. None for the top tier."""
    anonymous = policies[UserTier.ANONYMOUS]
    logged_in = policies[UserTier.LOGGED_IN]
    subscribed = policies[UserTier.SUBSCRIBED]

    subscribe = {
        "benefit": (
            f"{subscribed.daily_query_limit} queries/day, all models, "
            "unlimited cloud transcription"
        ),
    }

    if tier == UserTier.ANONYMOUS:
        extra = logged_in.daily_query_limit - anonymous.daily_query_limit
        return {
            "login": {"benefit": f"+{extra} daily queries, more models"},
            "subscribe": subscribe,
        }
    if tier == UserTier.LOGGED_IN:
        return {"subscribe": subscribe}
    return None
