"""
Tests for the automation admin service.
"""
import asyncio

import pytest

from tests.helpers import SITE, at


def _service(store, clock):
    from sitepilot.core.scheduler.service import AutomationService
    return AutomationService(store, clock=clock)


def test_upsert_uses_default_cron_and_starts_disabled(store, clock):
    svc = _service(store, clock)
    sweep = asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP"))
    publisher = asyncio.run(svc.upsert_schedule(SITE, "UNAFFILIATED_PUBLISHER"))
    assert sweep.cron == "*/30 * * * *"
    assert publisher.cron == "0 * * * *"
    assert sweep.enabled is False
    assert sweep.timezone == "UTC"


def test_upsert_keeps_stored_cron_and_enabled(store, clock):
    svc = _service(store, clock)
    asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP", enabled=True, cron="*/5 * * * *"))
    updated = asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP"))
    assert updated.cron == "*/5 * * * *"
    assert updated.enabled is True
    assert len(asyncio.run(store.list_schedules(SITE))) == 1


def test_upsert_normalizes_whitespace(store, clock):
    svc = _service(store, clock)
    schedule = asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP", cron="  0   */2 * * * "))
    assert schedule.cron == "0 */2 * * *"


def test_upsert_validates_before_writing(store, clock):
    from sitepilot.core.scheduler.validation import (
        InvalidCronError,
        UnsupportedJobTypeError,
        UnsupportedTimezoneError,
    )

    svc = _service(store, clock)
    with pytest.raises(InvalidCronError):
        asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP", cron="61 * * * *"))
    with pytest.raises(UnsupportedTimezoneError):
        asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP", timezone="America/New_York"))
    with pytest.raises(UnsupportedJobTypeError):
        asyncio.run(svc.upsert_schedule(SITE, "NEWSLETTER"))
    assert asyncio.run(store.list_schedules(SITE)) == []


def test_request_run_while_paused(store, clock):
    from sitepilot.core.scheduler.validation import AutomationPausedError

    svc = _service(store, clock)
    with pytest.raises(AutomationPausedError):
        asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))


def test_request_run_and_already_running(store, clock):
    from sitepilot.core.scheduler.validation import AlreadyRunningError

    svc = _service(store, clock)
    asyncio.run(svc.set_automation_enabled(SITE, True))
    command = asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))
    assert command.status == "STARTED"
    assert command.metadata == {"manual": True}
    assert not command.is_scheduled

    with pytest.raises(AlreadyRunningError) as exc:
        asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))
    assert exc.value.running_id == command.id


def test_cancel_run(store, clock):
    svc = _service(store, clock)
    assert asyncio.run(svc.cancel_run(SITE, "DISCOVERY_SWEEP")) is False

    asyncio.run(svc.set_automation_enabled(SITE, True))
    command = asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))
    assert asyncio.run(svc.cancel_run(SITE, "DISCOVERY_SWEEP")) is True

    done = asyncio.run(store.get_command(command.id))
    assert done.status == "FAILURE"
    assert done.error == "cancelled_by_admin"
    assert done.processed_at == clock.now


def test_disabling_automation_fails_pending_commands(store, clock):
    svc = _service(store, clock)
    asyncio.run(svc.set_automation_enabled(SITE, True))
    first = asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))
    asyncio.run(svc.set_job_gate(SITE, "UNAFFILIATED_PUBLISHER", True))
    second = asyncio.run(svc.request_run(SITE, "UNAFFILIATED_PUBLISHER"))

    assert asyncio.run(svc.set_automation_enabled(SITE, False)) == 2
    for command_id in (first.id, second.id):
        done = asyncio.run(store.get_command(command_id))
        assert done.status == "FAILURE"
        assert done.error == "automation_disabled"


def test_set_job_gate_requires_gated_job(store, clock):
    svc = _service(store, clock)
    with pytest.raises(ValueError):
        asyncio.run(svc.set_job_gate(SITE, "DISCOVERY_SWEEP", True))


def test_overview(store, clock):
    svc = _service(store, clock)
    asyncio.run(svc.upsert_schedule(SITE, "DISCOVERY_SWEEP", enabled=True, cron="*/15 * * * *"))
    asyncio.run(svc.upsert_schedule(SITE, "UNAFFILIATED_PUBLISHER"))
    asyncio.run(svc.set_automation_enabled(SITE, True))
    command = asyncio.run(svc.request_run(SITE, "DISCOVERY_SWEEP"))

    overview = asyncio.run(svc.overview(SITE))
    assert overview["automation_enabled"] is True
    assert overview["gates"] == {"unaffiliated_auto_publish_enabled": False}

    schedules = {s["job_type"]: s for s in overview["schedules"]}
    assert schedules["DISCOVERY_SWEEP"]["next_run_at"] == at(12, 15)
    assert schedules["UNAFFILIATED_PUBLISHER"]["next_run_at"] is None

    assert overview["jobs"]["DISCOVERY_SWEEP"]["running"] is True
    assert overview["jobs"]["DISCOVERY_SWEEP"]["latest"]["id"] == command.id
    assert overview["jobs"]["UNAFFILIATED_PUBLISHER"] == {"latest": None, "running": False}
