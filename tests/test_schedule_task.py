"""
Tests for ScheduleTask timers and the task registry.
"""
import asyncio
from datetime import timedelta

import pytest

from tests.helpers import SITE, FakeClock, at


def _schedule(cron="*/15 * * * *", **kwargs):
    from sitepilot.core.scheduler.models import DISCOVERY_SWEEP, Schedule
    values = {"id": "sched-1", "site_key": SITE, "job_type": DISCOVERY_SWEEP, "cron": cron}
    values.update(kwargs)
    return Schedule(**values)


async def _noop(schedule):
    return None


def test_construction_rejects_non_utc_timezone():
    from sitepilot.core.scheduler.task import ScheduleTask
    from sitepilot.core.scheduler.validation import UnsupportedTimezoneError
    with pytest.raises(UnsupportedTimezoneError):
        ScheduleTask(_schedule(timezone="Europe/Amsterdam"), _noop)


def test_construction_rejects_bad_cron():
    from sitepilot.core.scheduler.task import ScheduleTask
    from sitepilot.core.scheduler.validation import InvalidCronError
    with pytest.raises(InvalidCronError):
        ScheduleTask(_schedule(cron="bad cron"), _noop)


def test_start_arms_next_matching_minute():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        task = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        assert task.stopped
        task.start()
        try:
            assert task.armed
            assert task.next_fire_at == at(12, 15)
        finally:
            task.stop()
        assert task.next_fire_at is None
        assert task.stopped

    asyncio.run(run())


def test_disabled_schedule_is_not_armed():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        task = ScheduleTask(_schedule(enabled=False), _noop, clock=FakeClock(at(12, 7)))
        task.start()
        assert not task.armed
        assert task.next_fire_at is None

    asyncio.run(run())


def test_fire_then_rearm_for_following_slot():
    from sitepilot.core.scheduler.task import ScheduleTask

    fired = []

    async def on_fire(schedule):
        fired.append(schedule.id)

    async def run():
        clock = FakeClock(at(12, 14, 59) + timedelta(milliseconds=900))
        task = ScheduleTask(_schedule(), on_fire, clock=clock)
        task.start()
        assert task.next_fire_at == at(12, 15)
        await asyncio.sleep(0.3)
        try:
            assert fired == ["sched-1"]
            # Clock has not moved; the fired minute is never targeted again
            assert task.next_fire_at == at(12, 30)
        finally:
            task.stop()

    asyncio.run(run())


def test_fire_error_still_rearms():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def on_fire(schedule):
        raise RuntimeError("boom")

    async def run():
        task = ScheduleTask(_schedule(), on_fire, clock=FakeClock(at(12, 7)))
        task.start()
        await task.fire()
        try:
            assert task.next_fire_at == at(12, 15)
        finally:
            task.stop()

    asyncio.run(run())


def test_stop_is_idempotent_and_prevents_rearm():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        task = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        task.start()
        task.stop()
        task.stop()
        await task.fire()
        assert task.next_fire_at is None

    asyncio.run(run())


def test_update_cron_changes_next_fire():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        task = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        task.start()
        try:
            task.update(_schedule(cron="0 * * * *"))
            assert task.next_fire_at == at(13, 0)
            assert task.schedule.cron == "0 * * * *"
        finally:
            task.stop()

    asyncio.run(run())


def test_update_unchanged_keeps_timer():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        clock = FakeClock(at(12, 7))
        task = ScheduleTask(_schedule(), _noop, clock=clock)
        task.start()
        try:
            clock.advance(600)
            task.update(_schedule())
            assert task.next_fire_at == at(12, 15)
        finally:
            task.stop()

    asyncio.run(run())


def test_update_with_bad_cron_keeps_previous_state():
    from sitepilot.core.scheduler.task import ScheduleTask
    from sitepilot.core.scheduler.validation import InvalidCronError

    async def run():
        task = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        task.start()
        try:
            with pytest.raises(InvalidCronError):
                task.update(_schedule(cron="61 * * * *"))
            assert task.schedule.cron == "*/15 * * * *"
            assert task.next_fire_at == at(12, 15)
        finally:
            task.stop()

    asyncio.run(run())


def test_update_disable_cancels_timer():
    from sitepilot.core.scheduler.task import ScheduleTask

    async def run():
        task = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        task.start()
        task.update(_schedule(enabled=False))
        assert task.next_fire_at is None
        assert not task.armed
        task.stop()

    asyncio.run(run())


def test_registry_stop_all():
    from sitepilot.core.scheduler.models import UNAFFILIATED_PUBLISHER
    from sitepilot.core.scheduler.task import ScheduleTask, TaskRegistry

    async def run():
        registry = TaskRegistry()
        first = ScheduleTask(_schedule(), _noop, clock=FakeClock(at(12, 7)))
        second = ScheduleTask(
            _schedule(id="sched-2", job_type=UNAFFILIATED_PUBLISHER, cron="0 * * * *"),
            _noop,
            clock=FakeClock(at(12, 7)),
        )
        for task in (first, second):
            registry.add(task)
            task.start()
        assert len(registry) == 2
        assert first.key in registry
        assert str(first.key) == f"{SITE}::DISCOVERY_SWEEP"

        registry.stop_all()
        assert len(registry) == 0
        assert first.stopped and second.stopped
        assert first.next_fire_at is None

    asyncio.run(run())
