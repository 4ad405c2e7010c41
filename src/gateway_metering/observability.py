"""
Error Reporting and Span Attributes
===================================

The metering core never lets an internal failure escape: store errors fail
open, ledger errors fail closed for the credit path. Those failures still
have to be visible, so trackers hand them to an ``ErrorReporter``.

The default ``OTelErrorReporter`` logs the failure and records it on the
current OpenTelemetry span (exception event + error status). Any other
collaborator (Sentry, a test spy) only needs a ``report(error, context)``
method.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

ADMISSION_ENDPOINT_ATTR = "admission.endpoint"
ADMISSION_TIER_ATTR = "admission.tier"
ADMISSION_ALLOWED_ATTR = "admission.allowed"
ADMISSION_PAID_VIA_ATTR = "admission.paid_via"
ADMISSION_ERROR_ATTR = "admission.error"


class ErrorReporter(Protocol):
    def report(self, error: BaseException, context: Dict[str, Any]) -> None: ...


class OTelErrorReporter:
    """Log the error and attach it to the active span."""

    def report(self, error: BaseException, context: Dict[str, Any]) -> None:
        logger.error(
            f"Metering failure ({type(error).__name__}): {error}",
            extra={"metering_context": context},
        )
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.record_exception(
                error,
                attributes={f"metering.{k}": str(v) for k, v in context.items()},
            )
            span.set_status(Status(StatusCode.ERROR, str(error)))


def add_admission_span_attributes(
    endpoint: str,
    tier: str,
    allowed: bool,
    paid_via: Optional[str] = None,
    error: Optional[str] = None,
    span: Any = None,
) -> None:
    """Annotate a span (current span by default) with the admission outcome."""
    if span is None:
        span = trace.get_current_span()
    if span is None or not span.is_recording():
        return

    span.set_attribute(ADMISSION_ENDPOINT_ATTR, endpoint)
    span.set_attribute(ADMISSION_TIER_ATTR, tier)
    span.set_attribute(ADMISSION_ALLOWED_ATTR, allowed)
    if paid_via:
        span.set_attribute(ADMISSION_PAID_VIA_ATTR, paid_via)
    if error:
        span.set_attribute(ADMISSION_ERROR_ATTR, error)
