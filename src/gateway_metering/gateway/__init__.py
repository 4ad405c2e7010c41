"""FastAPI composition root for the metered gateway."""

from .app import build_metering_state, create_app

__all__ = ["build_metering_state", "create_app"]
