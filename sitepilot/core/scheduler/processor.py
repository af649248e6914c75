"""
Command processor: run pending commands through their job handlers.

Per command: re-check gates -> invoke handler -> record SUCCESS/FAILURE.
Scheduled commands (metadata.scheduled) also get scheduled_run_* audit events.
Handler errors are recorded on the command and never reach the poll loop.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from sitepilot.core.observability.metrics import SchedulerMetrics, get_metrics
from sitepilot.core.scheduler.audit import (
    SCHEDULED_RUN_COMPLETED,
    SCHEDULED_RUN_SKIPPED,
    emit_safely,
)
from sitepilot.core.scheduler.gates import GateEvaluator
from sitepilot.core.scheduler.interfaces import AuditSink, CommandStore
from sitepilot.core.scheduler.jobs import JobHandlerRegistry
from sitepilot.core.scheduler.models import (
    FAILURE,
    SUCCESS,
    SUPPORTED_JOB_TYPES,
    Command,
    CommandPatch,
    HandlerResult,
    JobContext,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3


@dataclass
class ProcessSummary:
    """Counts for one processing pass."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    gated: int = 0


class CommandProcessor:
    """Dequeues pending commands for one site and runs them."""

    def __init__(
        self,
        commands: CommandStore,
        gates: GateEvaluator,
        handlers: JobHandlerRegistry,
        audit: AuditSink,
        site_key: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        supported_types: Sequence[str] = SUPPORTED_JOB_TYPES,
        clock: Callable = utcnow,
        metrics: Optional[SchedulerMetrics] = None,
    ):
        self._commands = commands
        self._gates = gates
        self._handlers = handlers
        self._audit = audit
        self._site_key = site_key
        self._batch_size = batch_size
        self._supported_types = tuple(supported_types)
        self._clock = clock
        self._metrics = metrics or get_metrics()

    async def process_once(self) -> ProcessSummary:
        """Process one bounded batch of the oldest pending commands."""
        summary = ProcessSummary()
        try:
            pending = await self._commands.list_pending_commands(
                self._site_key, self._supported_types, self._batch_size
            )
        except Exception as e:
            logger.warning("processor list_pending failed site=%s: %s", self._site_key, e)
            return summary

        for command in pending:
            outcome = await self.process_command(command)
            summary.processed += 1
            if outcome == SUCCESS:
                summary.succeeded += 1
            elif outcome == "gated":
                summary.gated += 1
            else:
                summary.failed += 1
        return summary

    async def process_command(self, command: Command) -> str:
        """Process one command. Returns SUCCESS, FAILURE or 'gated'. Never raises."""
        try:
            outcome = await self._process(command)
        except Exception as e:
            logger.exception("processor command %s (%s) could not be recorded: %s", command.id, command.type, e)
            outcome = FAILURE
        self._metrics.record_command(command.type, outcome)
        return outcome

    async def _process(self, command: Command) -> str:
        # Gates may have changed since the command was enqueued
        reason = await self._gates.check(command.site_key, command.type)
        if reason is not None:
            logger.info("processor gated command=%s job=%s reason=%s", command.id, command.type, reason)
            await self._commands.update_command(
                command.id,
                CommandPatch(status=FAILURE, processed_at=self._clock(), error=reason),
            )
            if command.is_scheduled:
                await emit_safely(
                    self._audit,
                    SCHEDULED_RUN_COMPLETED,
                    self._fields(command, status=FAILURE, reason=reason),
                )
            return "gated"

        try:
            result = await self._run_handler(command)
        except Exception as e:
            logger.warning("processor handler failed command=%s job=%s: %s", command.id, command.type, e)
            return await self._record_failure(command, e)

        # The handler has run; from here on the command must end terminal either way
        try:
            result_data = result.model_dump(mode="json")
            await self._commands.update_command(
                command.id,
                CommandPatch(
                    status=SUCCESS,
                    processed_at=self._clock(),
                    metadata={**command.metadata, "result": result_data},
                ),
            )
        except Exception as e:
            logger.exception("processor could not record result command=%s job=%s: %s", command.id, command.type, e)
            return await self._record_failure(command, e)
        logger.info(
            "processor completed command=%s job=%s skipped=%s",
            command.id, command.type, result.skipped,
        )
        if command.is_scheduled:
            reason = (result.reason or "skipped") if result.skipped else None
            if result.skipped:
                await emit_safely(self._audit, SCHEDULED_RUN_SKIPPED, self._fields(command, reason=reason))
            await emit_safely(
                self._audit,
                SCHEDULED_RUN_COMPLETED,
                self._fields(command, status=SUCCESS, skipped=result.skipped, reason=reason),
            )
        return SUCCESS

    async def _record_failure(self, command: Command, error: Exception) -> str:
        """Mark the command FAILURE with the error message. Store errors propagate."""
        message = str(error) or error.__class__.__name__
        await self._commands.update_command(
            command.id,
            CommandPatch(status=FAILURE, processed_at=self._clock(), error=message),
        )
        if command.is_scheduled:
            await emit_safely(
                self._audit,
                SCHEDULED_RUN_COMPLETED,
                self._fields(command, status=FAILURE, error=message),
                severity="ERROR",
            )
        return FAILURE

    async def _run_handler(self, command: Command) -> HandlerResult:
        handler = self._handlers.get(command.type)
        if handler is None:
            raise LookupError(f"no_handler:{command.type}")
        ctx = JobContext(site_key=command.site_key, command_id=command.id, scheduled=command.is_scheduled)
        value = handler(ctx)
        if inspect.isawaitable(value):
            value = await value
        return HandlerResult.coerce(value)

    @staticmethod
    def _fields(command: Command, **extra: Any) -> Dict[str, Any]:
        return {
            "jobType": command.type,
            "siteKey": command.site_key,
            "commandId": command.id,
            "scheduleId": command.metadata.get("scheduleId"),
            **extra,
        }
