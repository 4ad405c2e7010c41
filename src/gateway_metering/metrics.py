"""
OTel Metric Instruments for Admission and Metering
==================================================

Counters recorded by the metering core:

- gateway.admission.decisions: allow/deny decisions by endpoint kind, tier
  and outcome (allowed, paid_via_credits, denial error code)
- gateway.credits.deductions: credit deduction attempts by reason and outcome
- gateway.transcription.minutes: metered transcription minutes by tier

Instruments are registered once from a Meter. Until ``init_metering_metrics``
is called the ``record_*`` helpers are no-ops, so library users that never
configure OpenTelemetry pay nothing.

Usage:
    from opentelemetry import metrics
    from gateway_metering.metrics import init_metering_metrics

    init_metering_metrics(metrics.get_meter("gateway_metering"))
"""

import logging
from typing import Optional

from opentelemetry.metrics import Counter, Meter

logger = logging.getLogger(__name__)


class MeteringMetrics:
    """Registry of the metering core's metric instruments."""

    def __init__(self, meter: Meter) -> None:
        self._meter = meter

        self.admission_decisions: Counter = meter.create_counter(
            name="gateway.admission.decisions",
            description="Admission decisions taken by the metering core",
            unit="{decision}",
        )

        self.credit_deductions: Counter = meter.create_counter(
            name="gateway.credits.deductions",
            description="Credit deduction attempts against the ledger",
            unit="{deduction}",
        )

        self.transcription_minutes: Counter = meter.create_counter(
            name="gateway.transcription.minutes",
            description="Metered cloud transcription minutes",
            unit="min",
        )

        logger.info("MeteringMetrics: all instruments created")


_metering_metrics: Optional[MeteringMetrics] = None


def init_metering_metrics(meter: Meter) -> MeteringMetrics:
    """Initialize the global MeteringMetrics singleton."""
    global _metering_metrics
    _metering_metrics = MeteringMetrics(meter)
    return _metering_metrics


def get_metering_metrics() -> Optional[MeteringMetrics]:
    return _metering_metrics


def reset_metering_metrics() -> None:
    """Reset the singleton (tests)."""
    global _metering_metrics
    _metering_metrics = None


def record_admission(endpoint: str, tier: str, outcome: str) -> None:
    m = _metering_metrics
    if m:
        m.admission_decisions.add(
            1, {"endpoint": endpoint, "tier": tier, "outcome": outcome}
        )


def record_credit_deduction(reason: str, outcome: str) -> None:
    m = _metering_metrics
    if m:
        m.credit_deductions.add(1, {"reason": reason, "outcome": outcome})


def record_transcription_minutes(tier: str, minutes: float) -> None:
    m = _metering_metrics
    if m and minutes > 0:
        m.transcription_minutes.add(minutes, {"tier": tier})
