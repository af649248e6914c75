"""
Automation admin operations: schedules, gates, manual runs.

Used by the host application's admin surface. The scheduling core never calls this;
it only sees the effects through the store on its next reconcile/fire/poll.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sitepilot.core.scheduler.cron import CronExpression
from sitepilot.core.scheduler.gates import AUTOMATION_DISABLED, JOB_GATES, gate_for
from sitepilot.core.scheduler.interfaces import AutomationAdminStore, CommandStore, GateStore
from sitepilot.core.scheduler.models import (
    DISCOVERY_SWEEP,
    FAILURE,
    STARTED,
    SUPPORTED_JOB_TYPES,
    UNAFFILIATED_PUBLISHER,
    UTC,
    Command,
    CommandCreate,
    CommandPatch,
    Schedule,
    utcnow,
)
from sitepilot.core.scheduler.validation import (
    AlreadyRunningError,
    AutomationPausedError,
    validate_job_type,
    validate_timezone,
)

logger = logging.getLogger(__name__)

CANCELLED_BY_ADMIN = "cancelled_by_admin"

DEFAULT_CRON: Dict[str, str] = {
    DISCOVERY_SWEEP: "*/30 * * * *",
    UNAFFILIATED_PUBLISHER: "0 * * * *",
}
FALLBACK_CRON = "0 */6 * * *"


def default_cron(job_type: str) -> str:
    return DEFAULT_CRON.get(job_type, FALLBACK_CRON)


class AutomationService:
    """Admin operations over a store implementing the admin, command and gate interfaces."""

    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    @property
    def admin(self) -> AutomationAdminStore:
        return self._store

    @property
    def commands(self) -> CommandStore:
        return self._store

    @property
    def gates(self) -> GateStore:
        return self._store

    async def upsert_schedule(
        self,
        site_key: str,
        job_type: str,
        enabled: Optional[bool] = None,
        cron: Optional[str] = None,
        timezone: str = UTC,
    ) -> Schedule:
        """
        Create or update the schedule for (site, job type).

        Validates job type, timezone and cron before writing anything. With no cron
        given the stored one is kept, or the job type's default for a new row.
        New rows start disabled unless enabled=True is passed.
        """
        validate_job_type(job_type)
        validate_timezone(timezone)
        existing = await self.admin.get_schedule(site_key, job_type)
        if cron is None:
            cron = existing.cron if existing else default_cron(job_type)
        cron = CronExpression.parse(cron).source

        schedule = await self.admin.upsert_schedule(site_key, job_type, cron=cron, timezone=timezone, enabled=enabled)
        logger.info(
            "automation schedule upserted site=%s job=%s cron=%s enabled=%s",
            site_key, job_type, schedule.cron, schedule.enabled,
        )
        return schedule

    async def set_automation_enabled(self, site_key: str, enabled: bool) -> int:
        """
        Flip the site's global automation switch.

        Disabling also fails every pending command for the site with automation_disabled.
        Returns the number of commands failed.
        """
        await self.admin.set_automation_enabled(site_key, enabled)
        failed = 0
        if not enabled:
            failed = await self.admin.fail_pending_commands(site_key, AUTOMATION_DISABLED, self._clock())
        logger.info("automation enabled=%s site=%s failed_pending=%s", enabled, site_key, failed)
        return failed

    async def set_job_gate(self, site_key: str, job_type: str, enabled: bool) -> None:
        validate_job_type(job_type)
        if gate_for(job_type) is None:
            raise ValueError(f"job type {job_type!r} has no gate")
        await self.admin.set_job_gate(site_key, job_type, enabled)
        logger.info("automation gate %s=%s site=%s", gate_for(job_type).name, enabled, site_key)

    async def request_run(self, site_key: str, job_type: str) -> Command:
        """
        Queue a manual run.

        Raises AutomationPausedError when automation is off for the site and
        AlreadyRunningError when a command of this type is still running.
        Job gates are left to the processor, which records the denial.
        """
        validate_job_type(job_type)
        if (await self.gates.is_automation_enabled(site_key)) is not True:
            raise AutomationPausedError(site_key)
        running = await self.commands.find_running_command(site_key, job_type)
        if running is not None:
            raise AlreadyRunningError(site_key, job_type, running.id)

        command = await self.commands.create_command(
            CommandCreate(
                site_key=site_key,
                type=job_type,
                status=STARTED,
                requested_at=self._clock(),
                metadata={"manual": True},
            )
        )
        logger.info("automation manual run queued site=%s job=%s command=%s", site_key, job_type, command.id)
        return command

    async def cancel_run(self, site_key: str, job_type: str) -> bool:
        """Mark the running command of a type FAILURE (cancelled_by_admin). False if none is running."""
        validate_job_type(job_type)
        running = await self.commands.find_running_command(site_key, job_type)
        if running is None:
            return False
        await self.commands.update_command(
            running.id,
            CommandPatch(status=FAILURE, processed_at=self._clock(), error=CANCELLED_BY_ADMIN),
        )
        logger.info("automation run cancelled site=%s job=%s command=%s", site_key, job_type, running.id)
        return True

    async def overview(self, site_key: str) -> Dict[str, Any]:
        """Automation flag, gates, schedules (with next run) and latest command per job type."""
        now = self._clock()
        automation_enabled = (await self.gates.is_automation_enabled(site_key)) is True
        stored_gates = await self.admin.get_gates(site_key)
        gates = {gate.name: bool(stored_gates.get(gate.name, False)) for gate in JOB_GATES.values()}

        schedules = []
        for schedule in await self.admin.list_schedules(site_key):
            next_run = None
            if schedule.enabled:
                try:
                    next_run = CronExpression.parse(schedule.cron).next_run(now)
                except ValueError as e:
                    logger.warning("automation overview: invalid cron for %s: %s", schedule.key, e)
            schedules.append({**schedule.model_dump(), "next_run_at": next_run})

        jobs = {}
        for job_type in SUPPORTED_JOB_TYPES:
            latest = await self.admin.latest_command(site_key, job_type)
            jobs[job_type] = {
                "latest": latest.model_dump() if latest else None,
                "running": bool(latest and latest.is_running),
            }

        return {
            "site_key": site_key,
            "automation_enabled": automation_enabled,
            "gates": gates,
            "schedules": schedules,
            "jobs": jobs,
        }
