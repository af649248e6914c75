"""
Simple in-memory metrics for the scheduler: fires per outcome, processed commands per status.
"""
import logging
from typing import Dict

logger = logging.getLogger("sitepilot.scheduler.metrics")


class SchedulerMetrics:
    """In-memory counters for schedule fires and processed commands."""

    def __init__(self) -> None:
        self._fires_total = 0
        self._fires_by_outcome: Dict[str, int] = {}
        self._commands_total = 0
        self._commands_by_status: Dict[str, int] = {}
        self._commands_by_type: Dict[str, int] = {}

    def record_fire(self, outcome: str) -> None:
        self._fires_total += 1
        self._fires_by_outcome[outcome] = self._fires_by_outcome.get(outcome, 0) + 1

    def record_command(self, job_type: str, status: str) -> None:
        self._commands_total += 1
        self._commands_by_status[status] = self._commands_by_status.get(status, 0) + 1
        self._commands_by_type[job_type] = self._commands_by_type.get(job_type, 0) + 1

    def get_fire_stats(self) -> Dict[str, int]:
        return {"fires_total": self._fires_total, **self._fires_by_outcome}

    def get_command_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "by_status": dict(self._commands_by_status),
            "by_type": dict(self._commands_by_type),
        }

    def reset(self) -> None:
        self.__init__()


_metrics = SchedulerMetrics()


def get_metrics() -> SchedulerMetrics:
    return _metrics
