"""
Automation schedule runtime: reconciliation loop + command processor loop.

- reconcile(): align live ScheduleTasks with the enabled schedules in the store
- process loop: run pending commands through their job handlers
Both loops keep running across any number of individual failures.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from sitepilot.core.config import settings
from sitepilot.core.observability.metrics import SchedulerMetrics, get_metrics
from sitepilot.core.scheduler.audit import LoggingAuditSink
from sitepilot.core.scheduler.enqueuer import CommandEnqueuer
from sitepilot.core.scheduler.gates import GateEvaluator
from sitepilot.core.scheduler.interfaces import AuditSink, CommandStore, GateStore, ScheduleStore
from sitepilot.core.scheduler.jobs import JobHandlerRegistry, get_job_registry
from sitepilot.core.scheduler.models import SUPPORTED_JOB_TYPES, RuntimeConfig, utcnow
from sitepilot.core.scheduler.processor import CommandProcessor, ProcessSummary
from sitepilot.core.scheduler.task import ScheduleTask, TaskRegistry
from sitepilot.core.scheduler.validation import RuntimeAlreadyStartedError

logger = logging.getLogger(__name__)


class RuntimeHandle:
    """Returned by start(); stop() shuts down both loops and every armed task."""

    def __init__(self, runtime: "SchedulerRuntime"):
        self._runtime = runtime

    @property
    def runtime(self) -> "SchedulerRuntime":
        return self._runtime

    @property
    def running(self) -> bool:
        return self._runtime.running

    async def stop(self) -> None:
        """Idempotent."""
        await self._runtime.stop()


class SchedulerRuntime:
    """Owns the task registry, the enqueuer and the processor for one site."""

    def __init__(
        self,
        config: RuntimeConfig,
        schedules: ScheduleStore,
        commands: CommandStore,
        gates: GateStore,
        audit: Optional[AuditSink] = None,
        handlers: Optional[JobHandlerRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[SchedulerMetrics] = None,
    ):
        self.config = config
        self._schedules = schedules
        self._clock = clock
        self.registry = TaskRegistry()
        evaluator = GateEvaluator(gates)
        audit = audit or LoggingAuditSink()
        metrics = metrics or get_metrics()
        self.enqueuer = CommandEnqueuer(
            schedules,
            commands,
            evaluator,
            audit,
            claim_window=timedelta(seconds=config.claim_window_seconds),
            clock=clock,
            metrics=metrics,
        )
        self.processor = CommandProcessor(
            commands,
            evaluator,
            handlers if handlers is not None else get_job_registry(),
            audit,
            site_key=config.site_key,
            batch_size=config.batch_size,
            clock=clock,
            metrics=metrics,
        )
        self._loops: List[asyncio.Task] = []
        self._started = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._started and not self._stopped

    async def reconcile(self) -> None:
        """One reconciliation pass. Never raises."""
        site_key = self.config.site_key
        try:
            rows = await self._schedules.list_enabled_schedules(site_key, SUPPORTED_JOB_TYPES)
        except Exception as e:
            logger.warning("scheduler reconcile read failed site=%s: %s", site_key, e)
            return

        desired = {row.key: row for row in rows}

        # stop removed
        for key in self.registry.keys():
            if key not in desired:
                task = self.registry.remove(key)
                task.stop()
                logger.info("scheduler removed key=%s", key)

        # add/update
        for key, row in desired.items():
            existing = self.registry.get(key)
            try:
                if existing is None:
                    task = ScheduleTask(row, self.enqueuer.enqueue, clock=self._clock)
                    self.registry.add(task)
                    task.start()
                    logger.info(
                        "scheduler registered key=%s cron=%s timezone=%s next=%s",
                        key, row.cron, row.timezone, task.next_fire_at,
                    )
                else:
                    # Always update; ScheduleTask skips rescheduling when nothing changed.
                    existing.update(row)
            except Exception as e:
                logger.warning("scheduler invalid_schedule key=%s: %s", key, e)

    async def process_pending(self) -> ProcessSummary:
        """One command-processing pass. Never raises."""
        return await self.processor.process_once()

    async def start(self) -> RuntimeHandle:
        """Initial reconcile, then both poll loops. Raises if already started."""
        if self._started:
            raise RuntimeAlreadyStartedError(f"scheduler runtime for {self.config.site_key!r} already started")
        self._started = True
        await self.reconcile()
        self._loops = [
            asyncio.create_task(self._poll_loop("reconcile", self.config.poll_seconds, self.reconcile)),
            asyncio.create_task(
                self._poll_loop("process", self.config.process_every_seconds, self.process_pending)
            ),
        ]
        logger.info(
            "Scheduler runtime started site=%s (reconcile every %ss, process every %ss)",
            self.config.site_key, self.config.poll_seconds, self.config.process_every_seconds,
        )
        return RuntimeHandle(self)

    async def stop(self) -> None:
        """Cancel both loops, stop every task and wait for fires already running. Idempotent."""
        if self._stopped or not self._started:
            self._stopped = True
            return
        self._stopped = True
        for loop_task in self._loops:
            loop_task.cancel()
        inflight = self.registry.stop_all()
        for loop_task in self._loops:
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        self._loops = []
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        logger.info("Scheduler runtime stopped site=%s", self.config.site_key)

    async def _poll_loop(self, name: str, interval: int, tick: Callable[[], Awaitable]) -> None:
        """Async loop: every `interval` seconds run tick()."""
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                logger.exception("scheduler %s tick failed: %s", name, e)


async def start(
    config: RuntimeConfig,
    *,
    store,
    handlers: Optional[JobHandlerRegistry] = None,
    audit: Optional[AuditSink] = None,
    clock: Callable[[], datetime] = utcnow,
) -> RuntimeHandle:
    """
    Build and start a runtime where `store` provides schedules, commands and gates.

    The store doubles as the audit sink when it implements AuditSink and no sink is given.
    """
    if audit is None and isinstance(store, AuditSink):
        audit = store
    runtime = SchedulerRuntime(
        config,
        schedules=store,
        commands=store,
        gates=store,
        audit=audit,
        handlers=handlers,
        clock=clock,
    )
    return await runtime.start()


_runtime_handle: Optional[RuntimeHandle] = None


async def start_scheduler(handlers: Optional[JobHandlerRegistry] = None) -> Optional[RuntimeHandle]:
    """Start the process-wide runtime from settings, over the default SQL store."""
    global _runtime_handle
    if _runtime_handle is not None:
        return _runtime_handle
    if not settings.scheduler_enabled:
        logger.info("Scheduler runtime disabled (SCHEDULER_ENABLED=0)")
        return None
    from sitepilot.core.memory.db import init_db
    from sitepilot.core.scheduler.storage import SqlAutomationStore

    init_db()
    _runtime_handle = await start(RuntimeConfig.from_settings(), store=SqlAutomationStore(), handlers=handlers)
    return _runtime_handle


async def stop_scheduler() -> None:
    """Stop the process-wide runtime."""
    global _runtime_handle
    if _runtime_handle is None:
        return
    await _runtime_handle.stop()
    _runtime_handle = None
