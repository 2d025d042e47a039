"""Core utilities for the quota service."""

from offerquota.app.core.config import settings
from offerquota.app.core.logging import get_log_context, get_logger, setup_logging
from offerquota.app.core.periods import current_period, normalize_period, period_iso

__all__ = [
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "current_period",
    "normalize_period",
    "period_iso",
]
