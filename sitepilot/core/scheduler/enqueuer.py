"""
Timer-fire handler: turn one schedule fire into at most one queued command.

Order per fire: idempotent claim -> automation gate -> job gate -> duplicate-run guard -> enqueue.
Denials are recorded as FAILURE commands (for visibility) plus a scheduled_run_skipped event.
Nothing after the claim raises out of enqueue(); a store failure skips the fire.
"""
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sitepilot.core.observability.metrics import SchedulerMetrics, get_metrics
from sitepilot.core.scheduler.audit import (
    SCHEDULED_RUN_SKIPPED,
    SCHEDULED_RUN_STARTED,
    emit_safely,
)
from sitepilot.core.scheduler.gates import AUTOMATION_DISABLED, GateEvaluator, gate_for
from sitepilot.core.scheduler.interfaces import AuditSink, CommandStore, ScheduleStore
from sitepilot.core.scheduler.models import (
    FAILURE,
    STARTED,
    CommandCreate,
    Schedule,
    is_supported_job_type,
    utcnow,
)

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "already_running"

DEFAULT_CLAIM_WINDOW = timedelta(seconds=30)


class EnqueueOutcome(str, Enum):
    ENQUEUED = "enqueued"
    CLAIM_LOST = "claim_lost"
    AUTOMATION_DISABLED = "automation_disabled"
    GATE_CLOSED = "gate_closed"
    ALREADY_RUNNING = "already_running"
    UNSUPPORTED = "unsupported_job_type"
    STORE_ERROR = "store_error"


def scheduled_metadata(schedule: Schedule) -> Dict[str, Any]:
    """Metadata carried by every command a schedule creates."""
    return {
        "scheduled": True,
        "scheduleId": schedule.id,
        "cron": schedule.cron,
        "timezone": schedule.timezone,
    }


class CommandEnqueuer:
    """Handles schedule fires for any (site, job type)."""

    def __init__(
        self,
        schedules: ScheduleStore,
        commands: CommandStore,
        gates: GateEvaluator,
        audit: AuditSink,
        claim_window: timedelta = DEFAULT_CLAIM_WINDOW,
        clock: Callable = utcnow,
        metrics: Optional[SchedulerMetrics] = None,
    ):
        self._schedules = schedules
        self._commands = commands
        self._gates = gates
        self._audit = audit
        self._claim_window = claim_window
        self._clock = clock
        self._metrics = metrics or get_metrics()

    async def enqueue(self, schedule: Schedule) -> EnqueueOutcome:
        """Handle one fire. Never raises."""
        try:
            outcome = await self._enqueue(schedule)
        except Exception as e:
            logger.exception(
                "scheduler enqueue failed site=%s job=%s schedule=%s: %s",
                schedule.site_key, schedule.job_type, schedule.id, e,
            )
            outcome = EnqueueOutcome.STORE_ERROR
        self._metrics.record_fire(outcome.value)
        return outcome

    async def _enqueue(self, schedule: Schedule) -> EnqueueOutcome:
        if not is_supported_job_type(schedule.job_type):
            logger.info("scheduler unsupported_job_type job=%s schedule=%s", schedule.job_type, schedule.id)
            return EnqueueOutcome.UNSUPPORTED

        now = self._clock()

        # De-dupe near-simultaneous fires (rescheduled timers, restart replay)
        try:
            claimed = await self._schedules.claim_schedule(schedule.id, self._claim_window, now)
        except Exception as e:
            logger.warning("scheduler claim failed schedule=%s: %s", schedule.id, e)
            claimed = False
        if not claimed:
            logger.info(
                "scheduler already_scheduled_recently site=%s job=%s schedule=%s",
                schedule.site_key, schedule.job_type, schedule.id,
            )
            return EnqueueOutcome.CLAIM_LOST

        if not await self._gates.is_automation_enabled(schedule.site_key):
            logger.info(
                "scheduler skipped_automation_disabled site=%s job=%s schedule=%s",
                schedule.site_key, schedule.job_type, schedule.id,
            )
            await self._record_skip(schedule, now, AUTOMATION_DISABLED)
            return EnqueueOutcome.AUTOMATION_DISABLED

        if not await self._gates.is_job_gate_open(schedule.site_key, schedule.job_type):
            reason = gate_for(schedule.job_type).denial_reason
            logger.info(
                "scheduler skipped_gate_closed site=%s job=%s schedule=%s reason=%s",
                schedule.site_key, schedule.job_type, schedule.id, reason,
            )
            await self._record_skip(schedule, now, reason)
            return EnqueueOutcome.GATE_CLOSED

        running = await self._commands.find_running_command(schedule.site_key, schedule.job_type)
        if running is not None:
            logger.info(
                "scheduler already_running site=%s job=%s running=%s",
                schedule.site_key, schedule.job_type, running.id,
            )
            await self._record_skip(schedule, now, ALREADY_RUNNING, runningId=running.id)
            return EnqueueOutcome.ALREADY_RUNNING

        command = await self._commands.create_command(
            CommandCreate(
                site_key=schedule.site_key,
                type=schedule.job_type,
                status=STARTED,
                requested_at=now,
                metadata=scheduled_metadata(schedule),
            )
        )
        logger.info(
            "scheduler enqueued site=%s job=%s schedule=%s command=%s",
            schedule.site_key, schedule.job_type, schedule.id, command.id,
        )
        await emit_safely(self._audit, SCHEDULED_RUN_STARTED, self._fields(schedule, commandId=command.id))
        return EnqueueOutcome.ENQUEUED

    async def _record_skip(self, schedule: Schedule, now, reason: str, **extra: Any) -> None:
        """Write a FAILURE command describing why this fire did not run, then audit it."""
        metadata = {**scheduled_metadata(schedule), "skipped": True, "reason": reason, **extra}
        command_id = None
        try:
            command = await self._commands.create_command(
                CommandCreate(
                    site_key=schedule.site_key,
                    type=schedule.job_type,
                    status=FAILURE,
                    requested_at=now,
                    processed_at=now,
                    error=reason,
                    metadata=metadata,
                )
            )
            command_id = command.id
        except Exception as e:
            logger.warning("scheduler could not record skip schedule=%s reason=%s: %s", schedule.id, reason, e)
        await emit_safely(
            self._audit,
            SCHEDULED_RUN_SKIPPED,
            self._fields(schedule, reason=reason, commandId=command_id, **extra),
        )

    @staticmethod
    def _fields(schedule: Schedule, **extra: Any) -> Dict[str, Any]:
        return {
            "jobType": schedule.job_type,
            "siteKey": schedule.site_key,
            "scheduleId": schedule.id,
            **extra,
        }
