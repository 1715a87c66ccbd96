"""
Internal invariant checks.

User input never raises from the engine. A broken internal invariant (for
example a negative week index reaching the aggregator) is a programmer error:
it raises outside production and is logged and ignored in production.
"""

import logging

from cashflow_planner.config import get_settings

logger = logging.getLogger(__name__)


class InvariantViolation(ValueError):
    """Raised when the engine is handed structurally impossible data."""


def report_invariant_violation(message: str) -> None:
    """Raise in development, log in production."""
    if get_settings().app_env == "production":
        logger.error(f"Invariant violation ignored: {message}")
        return
    raise InvariantViolation(message)
