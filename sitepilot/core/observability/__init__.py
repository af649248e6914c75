"""Observability: in-memory metrics for the scheduler."""
from sitepilot.core.observability.metrics import SchedulerMetrics, get_metrics

__all__ = [
    "SchedulerMetrics",
    "get_metrics",
]
