"""
Gate evaluation: fail-closed reads of the global automation switch and job-type gates.

No caching; every check goes to the store so a gate flip is seen on the next fire or poll.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sitepilot.core.scheduler.interfaces import GateStore
from sitepilot.core.scheduler.models import UNAFFILIATED_PUBLISHER

logger = logging.getLogger(__name__)

AUTOMATION_DISABLED = "automation_disabled"


@dataclass(frozen=True)
class JobGate:
    """A job-type specific gate and the reason recorded when it is closed."""
    name: str
    denial_reason: str


# Job types that declare a gate. Types not listed here have no job gate.
JOB_GATES: Dict[str, JobGate] = {
    UNAFFILIATED_PUBLISHER: JobGate(
        name="unaffiliated_auto_publish_enabled",
        denial_reason="unaffiliated_auto_publish_disabled",
    ),
}


def gate_for(job_type: str) -> Optional[JobGate]:
    return JOB_GATES.get(job_type)


class GateEvaluator:
    """Read-side permission checks. Store errors and missing rows mean closed."""

    def __init__(self, store: GateStore):
        self._store = store

    async def is_automation_enabled(self, site_key: str) -> bool:
        try:
            return (await self._store.is_automation_enabled(site_key)) is True
        except Exception as e:
            logger.warning("gate automation_enabled read failed site=%s: %s", site_key, e)
            return False

    async def is_job_gate_open(self, site_key: str, job_type: str) -> bool:
        if gate_for(job_type) is None:
            return True
        try:
            return (await self._store.is_job_gate_open(site_key, job_type)) is True
        except Exception as e:
            logger.warning("gate %s read failed site=%s: %s", job_type, site_key, e)
            return False

    async def check(self, site_key: str, job_type: str) -> Optional[str]:
        """Return the denial reason of the first closed gate, or None if all are open."""
        if not await self.is_automation_enabled(site_key):
            return AUTOMATION_DISABLED
        if not await self.is_job_gate_open(site_key, job_type):
            return JOB_GATES[job_type].denial_reason
        return None
