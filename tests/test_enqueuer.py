"""
Tests for the timer-fire handler: claim, gates, duplicate-run guard, enqueue.
"""
import asyncio
from datetime import timedelta

from tests.helpers import SITE


def _setup(store, job_type="DISCOVERY_SWEEP", automation=True, cron="*/15 * * * *"):
    async def run():
        schedule = await store.upsert_schedule(SITE, job_type, cron=cron, timezone="UTC", enabled=True)
        await store.set_automation_enabled(SITE, automation)
        return schedule
    return asyncio.run(run())


def _enqueuer(store, clock, metrics=None):
    from sitepilot.core.scheduler.enqueuer import CommandEnqueuer
    from sitepilot.core.scheduler.gates import GateEvaluator
    return CommandEnqueuer(
        store, store, GateEvaluator(store), store,
        claim_window=timedelta(seconds=30), clock=clock, metrics=metrics,
    )


def test_enqueue_creates_started_command(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store)
    outcome = asyncio.run(_enqueuer(store, clock).enqueue(schedule))
    assert outcome == EnqueueOutcome.ENQUEUED

    commands = asyncio.run(store.list_commands(SITE))
    assert len(commands) == 1
    command = commands[0]
    assert command.status == "STARTED"
    assert command.processed_at is None
    assert command.requested_at == clock.now
    assert command.metadata == {
        "scheduled": True,
        "scheduleId": schedule.id,
        "cron": "*/15 * * * *",
        "timezone": "UTC",
    }

    events = asyncio.run(store.list_audit_events(site_key=SITE))
    assert [e["kind"] for e in events] == ["scheduled_run_started"]
    assert events[0]["details"]["commandId"] == command.id

    stored = asyncio.run(store.get_schedule(SITE, "DISCOVERY_SWEEP"))
    assert stored.last_scheduled_at == clock.now


def test_second_fire_within_claim_window_is_dropped(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store)
    enqueuer = _enqueuer(store, clock)
    assert asyncio.run(enqueuer.enqueue(schedule)) == EnqueueOutcome.ENQUEUED
    clock.advance(10)
    assert asyncio.run(enqueuer.enqueue(schedule)) == EnqueueOutcome.CLAIM_LOST

    # Dropped fires leave no trace in the queue
    assert len(asyncio.run(store.list_commands(SITE))) == 1


def test_fire_after_claim_window_hits_running_guard(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store)
    enqueuer = _enqueuer(store, clock)
    asyncio.run(enqueuer.enqueue(schedule))
    first = asyncio.run(store.list_commands(SITE))[0]

    clock.advance(31)
    assert asyncio.run(enqueuer.enqueue(schedule)) == EnqueueOutcome.ALREADY_RUNNING

    skipped = asyncio.run(store.list_commands(SITE))[0]
    assert skipped.status == "FAILURE"
    assert skipped.error == "already_running"
    assert skipped.processed_at == clock.now
    assert skipped.metadata["skipped"] is True
    assert skipped.metadata["runningId"] == first.id

    kinds = [e["kind"] for e in asyncio.run(store.list_audit_events(site_key=SITE))]
    assert kinds == ["scheduled_run_started", "scheduled_run_skipped"]


def test_automation_disabled_records_failure(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store, automation=False)
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.AUTOMATION_DISABLED

    commands = asyncio.run(store.list_commands(SITE))
    assert len(commands) == 1
    assert commands[0].status == "FAILURE"
    assert commands[0].error == "automation_disabled"
    assert commands[0].metadata["reason"] == "automation_disabled"

    events = asyncio.run(store.list_audit_events(site_key=SITE))
    assert [e["kind"] for e in events] == ["scheduled_run_skipped"]
    assert events[0]["details"]["reason"] == "automation_disabled"
    assert events[0]["details"]["commandId"] == commands[0].id


def test_publisher_gate_closed(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store, job_type="UNAFFILIATED_PUBLISHER", cron="0 * * * *")
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.GATE_CLOSED

    command = asyncio.run(store.list_commands(SITE))[0]
    assert command.status == "FAILURE"
    assert command.error == "unaffiliated_auto_publish_disabled"


def test_publisher_gate_open(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store, job_type="UNAFFILIATED_PUBLISHER", cron="0 * * * *")
    asyncio.run(store.set_job_gate(SITE, "UNAFFILIATED_PUBLISHER", True))
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.ENQUEUED


def test_unsupported_job_type_ignored(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome
    from sitepilot.core.scheduler.models import Schedule

    schedule = Schedule(id="x", site_key=SITE, job_type="NEWSLETTER", cron="* * * * *")
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.UNSUPPORTED
    assert asyncio.run(store.list_commands(SITE)) == []


def test_claim_failure_skips_fire(store, clock, fresh_metrics):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store)

    async def broken_claim(*args, **kwargs):
        raise RuntimeError("database is locked")

    store.claim_schedule = broken_claim
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.CLAIM_LOST
    assert asyncio.run(store.list_commands(SITE)) == []
    assert fresh_metrics.get_fire_stats() == {"fires_total": 1, "claim_lost": 1}


def test_store_failure_after_claim_never_raises(store, clock):
    from sitepilot.core.scheduler.enqueuer import EnqueueOutcome

    schedule = _setup(store)

    async def broken_find(*args, **kwargs):
        raise RuntimeError("database is locked")

    store.find_running_command = broken_find
    assert asyncio.run(_enqueuer(store, clock).enqueue(schedule)) == EnqueueOutcome.STORE_ERROR
    assert asyncio.run(store.list_commands(SITE)) == []


def test_audit_failure_does_not_block_enqueue(store, clock):
    from sitepilot.core.scheduler.enqueuer import CommandEnqueuer, EnqueueOutcome
    from sitepilot.core.scheduler.gates import GateEvaluator
    from sitepilot.core.scheduler.interfaces import AuditSink

    class BrokenSink(AuditSink):
        async def emit(self, kind, fields, severity="INFO"):
            raise RuntimeError("sink down")

    schedule = _setup(store)
    enqueuer = CommandEnqueuer(store, store, GateEvaluator(store), BrokenSink(), clock=clock)
    assert asyncio.run(enqueuer.enqueue(schedule)) == EnqueueOutcome.ENQUEUED
    assert len(asyncio.run(store.list_commands(SITE))) == 1
