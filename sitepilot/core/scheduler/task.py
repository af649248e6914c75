"""
Live schedule timers.

A ScheduleTask owns exactly one pending asyncio timer for one schedule:
fire -> run the enqueue handler -> re-arm for the next matching minute.

States: Stopped (initial, and after stop()) and Armed. An armed task whose cron
matches nothing in the next ~31 days has no pending timer until its next update().
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from sitepilot.core.scheduler.cron import CronExpression
from sitepilot.core.scheduler.models import Schedule, ScheduleKey, utcnow
from sitepilot.core.scheduler.validation import validate_timezone

logger = logging.getLogger(__name__)

FireHandler = Callable[[Schedule], Awaitable[Any]]


class ScheduleTask:
    """Owns one schedule's timer. Construction validates timezone and cron."""

    def __init__(
        self,
        schedule: Schedule,
        on_fire: FireHandler,
        clock: Callable[[], datetime] = utcnow,
    ):
        validate_timezone(schedule.timezone)
        self._cron = CronExpression.parse(schedule.cron)
        self._schedule = schedule
        self._on_fire = on_fire
        self._clock = clock
        self._timer: Optional[asyncio.TimerHandle] = None
        self._next_fire_at: Optional[datetime] = None
        # Minute of the last fire; re-arming never targets it again
        self._last_fire_at: Optional[datetime] = None
        self._inflight: Optional[asyncio.Task] = None
        self._stopped = True

    @property
    def key(self) -> ScheduleKey:
        return self._schedule.key

    @property
    def schedule(self) -> Schedule:
        return self._schedule

    @property
    def cron(self) -> CronExpression:
        return self._cron

    @property
    def next_fire_at(self) -> Optional[datetime]:
        """When the pending timer will fire, or None if no timer is pending."""
        return self._next_fire_at

    @property
    def inflight(self) -> Optional[asyncio.Task]:
        """The fire currently running, if any."""
        return self._inflight

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def armed(self) -> bool:
        return not self._stopped and self._schedule.enabled

    def start(self) -> None:
        """Stopped -> Armed (only if the schedule is enabled)."""
        self._stopped = False
        self._reschedule()

    def update(self, schedule: Schedule) -> None:
        """
        Apply a new schedule row. Raises InvalidCronError / UnsupportedTimezoneError
        and keeps the previous state when the new row does not validate.
        """
        validate_timezone(schedule.timezone)
        cron = self._cron if schedule.cron == self._schedule.cron else CronExpression.parse(schedule.cron)

        unchanged = (
            schedule.cron == self._schedule.cron
            and schedule.enabled == self._schedule.enabled
            and schedule.id == self._schedule.id
        )
        self._schedule = schedule
        self._cron = cron
        if unchanged and (self._timer is not None or self._inflight is not None):
            return
        if not unchanged:
            logger.info("scheduler updated key=%s cron=%s enabled=%s", self.key, schedule.cron, schedule.enabled)
        self._reschedule()

    def stop(self) -> None:
        """Cancel the pending timer. Idempotent; an in-flight fire completes but does not re-arm."""
        self._stopped = True
        self._cancel_timer()

    async def fire(self) -> None:
        """Run one fire, then re-arm. Errors from the handler are logged, never raised."""
        try:
            await self._on_fire(self._schedule)
        except Exception as e:
            logger.exception("scheduler fire failed key=%s: %s", self.key, e)
        finally:
            self._reschedule()

    def _on_timer(self) -> None:
        self._timer = None
        self._last_fire_at = self._next_fire_at
        self._next_fire_at = None
        self._inflight = asyncio.ensure_future(self._run_inflight())

    async def _run_inflight(self) -> None:
        try:
            await self.fire()
        finally:
            self._inflight = None

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._next_fire_at = None

    def _reschedule(self) -> None:
        self._cancel_timer()
        if self._stopped or not self._schedule.enabled:
            return

        now = self._clock()
        after = now
        if self._last_fire_at is not None and self._last_fire_at > after:
            after = self._last_fire_at
        next_at = self._cron.next_run(after)
        if next_at is None:
            logger.warning(
                "scheduler no_next_run schedule=%s key=%s cron=%s",
                self._schedule.id, self.key, self._schedule.cron,
            )
            return

        delay = max(0.0, (next_at - now).total_seconds())
        loop = asyncio.get_running_loop()
        self._next_fire_at = next_at
        self._timer = loop.call_later(delay, self._on_timer)


class TaskRegistry:
    """Live ScheduleTasks keyed by (site, job type)."""

    def __init__(self):
        self._tasks: Dict[ScheduleKey, ScheduleTask] = {}

    def get(self, key: ScheduleKey) -> Optional[ScheduleTask]:
        return self._tasks.get(key)

    def add(self, task: ScheduleTask) -> None:
        self._tasks[task.key] = task

    def remove(self, key: ScheduleKey) -> Optional[ScheduleTask]:
        return self._tasks.pop(key, None)

    def keys(self) -> List[ScheduleKey]:
        return list(self._tasks.keys())

    def stop_all(self) -> List[asyncio.Task]:
        """Stop every task and empty the registry. Returns the fires still running."""
        inflight = []
        for task in self._tasks.values():
            task.stop()
            if task.inflight is not None:
                inflight.append(task.inflight)
        self._tasks.clear()
        return inflight

    def __contains__(self, key: ScheduleKey) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[ScheduleKey]:
        return iter(list(self._tasks))
