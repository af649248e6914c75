"""
Abstract store interfaces consumed by the scheduler.

The host application injects implementations; SqlAutomationStore in
sitepilot.core.scheduler.storage implements all of them.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sitepilot.core.scheduler.models import Command, CommandCreate, CommandPatch, Schedule


class ScheduleStore(ABC):
    """Read side of schedules plus the atomic claim."""

    @abstractmethod
    async def list_enabled_schedules(self, site_key: str, supported_types: Sequence[str]) -> List[Schedule]:
        """Enabled schedules for a site, restricted to supported_types."""
        pass

    @abstractmethod
    async def claim_schedule(self, schedule_id: str, claim_window: timedelta, now: datetime) -> bool:
        """
        Atomically set last_scheduled_at=now if it is unset or older than now - claim_window.

        Returns True iff this call performed the claim.
        """
        pass


class CommandStore(ABC):
    """The durable command queue."""

    @abstractmethod
    async def create_command(self, data: CommandCreate) -> Command:
        pass

    @abstractmethod
    async def update_command(self, command_id: str, patch: CommandPatch) -> None:
        pass

    @abstractmethod
    async def find_running_command(self, site_key: str, type: str) -> Optional[Command]:
        """A STARTED command with no processed_at for (site_key, type), if any."""
        pass

    @abstractmethod
    async def list_pending_commands(self, site_key: str, supported_types: Sequence[str], limit: int) -> List[Command]:
        """Oldest-first pending commands."""
        pass


class GateStore(ABC):
    """Raw gate reads. Missing rows are reported as False / None, never as open."""

    @abstractmethod
    async def is_automation_enabled(self, site_key: str) -> bool:
        pass

    @abstractmethod
    async def is_job_gate_open(self, site_key: str, job_type: str) -> Optional[bool]:
        """None when the job type's gate has no row for this site."""
        pass


class AuditSink(ABC):
    """Fire-and-forget audit trail."""

    @abstractmethod
    async def emit(self, kind: str, fields: Dict[str, Any], severity: str = "INFO") -> None:
        pass


class AutomationAdminStore(ABC):
    """Write side used by the admin service (never by the scheduling core)."""

    @abstractmethod
    async def get_schedule(self, site_key: str, job_type: str) -> Optional[Schedule]:
        pass

    @abstractmethod
    async def list_schedules(self, site_key: str) -> List[Schedule]:
        pass

    @abstractmethod
    async def upsert_schedule(
        self,
        site_key: str,
        job_type: str,
        cron: str,
        timezone: str,
        enabled: Optional[bool] = None,
    ) -> Schedule:
        pass

    @abstractmethod
    async def set_automation_enabled(self, site_key: str, enabled: bool) -> None:
        pass

    @abstractmethod
    async def set_job_gate(self, site_key: str, job_type: str, enabled: bool) -> None:
        pass

    @abstractmethod
    async def get_gates(self, site_key: str) -> Dict[str, bool]:
        """Stored job gates for a site, keyed by gate name."""
        pass

    @abstractmethod
    async def fail_pending_commands(self, site_key: str, error: str, now: datetime) -> int:
        pass

    @abstractmethod
    async def latest_command(self, site_key: str, type: str) -> Optional[Command]:
        pass
