"""Utility modules."""

from .health import HealthMonitor, HealthRecord, summarize_health
from .logging import delivery_context, setup_logging

__all__ = [
    "setup_logging",
    "delivery_context",
    "HealthMonitor",
    "HealthRecord",
    "summarize_health",
]
