"""
Scheduler persistence backed by SQLAlchemy (SQLite by default).

SqlAutomationStore implements every store interface the scheduler consumes, plus
the admin write side and a database audit sink. Each call runs in its own session
on a worker thread.
"""
import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sitepilot.core.memory.db import db_session, get_session_factory
from sitepilot.core.memory.models import CommandRecord, ScheduleRecord
from sitepilot.core.memory.repository import (
    AuditEventRepository,
    AutomationConfigRepository,
    AutomationGateRepository,
    CommandRepository,
    ScheduleRepository,
)
from sitepilot.core.scheduler.audit import format_message
from sitepilot.core.scheduler.gates import gate_for
from sitepilot.core.scheduler.interfaces import (
    AuditSink,
    AutomationAdminStore,
    CommandStore,
    GateStore,
    ScheduleStore,
)
from sitepilot.core.scheduler.models import Command, CommandCreate, CommandPatch, Schedule

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Aware (or naive UTC) datetime -> naive UTC for storage."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Stored naive UTC -> aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def schedule_from_record(record: ScheduleRecord) -> Schedule:
    return Schedule(
        id=record.id,
        site_key=record.site_key,
        job_type=record.job_type,
        enabled=bool(record.enabled),
        cron=record.cron,
        timezone=record.timezone,
        last_scheduled_at=from_db_time(record.last_scheduled_at),
    )


def command_from_record(record: CommandRecord) -> Command:
    return Command(
        id=record.id,
        site_key=record.site_key,
        type=record.type,
        status=record.status,
        requested_at=from_db_time(record.requested_at),
        processed_at=from_db_time(record.processed_at),
        error=record.error,
        metadata=dict(record.metadata_json or {}),
    )


class SqlAutomationStore(ScheduleStore, CommandStore, GateStore, AuditSink, AutomationAdminStore):
    """
    All scheduler stores over one SQLAlchemy session factory.

    Database work runs in the loop's default executor, one session per call,
    opened inside the worker thread. An in-memory database shares a single
    connection, so calls against it are serialized.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()
        bind = self._session_factory.kw.get("bind")
        self._lock: Optional[threading.Lock] = (
            threading.Lock() if bind is not None and isinstance(bind.pool, StaticPool) else None
        )

    def _session(self):
        return db_session(self._session_factory)

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def _work() -> T:
            if self._lock is None:
                with self._session() as db:
                    return fn(db)
            with self._lock:
                with self._session() as db:
                    return fn(db)

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, _work)

    # --- ScheduleStore ---

    async def list_enabled_schedules(self, site_key: str, supported_types: Sequence[str]) -> List[Schedule]:
        def _list(db: Session) -> List[Schedule]:
            records = ScheduleRepository.list_enabled(db, site_key, supported_types)
            return [schedule_from_record(r) for r in records]

        return await self._run(_list)

    async def claim_schedule(self, schedule_id: str, claim_window: timedelta, now: datetime) -> bool:
        now_db = to_db_time(now)
        return await self._run(lambda db: ScheduleRepository.claim(db, schedule_id, now_db, now_db - claim_window))

    # --- CommandStore ---

    async def create_command(self, data: CommandCreate) -> Command:
        def _create(db: Session) -> Command:
            record = CommandRepository.create(
                db,
                site_key=data.site_key,
                type=data.type,
                status=data.status,
                requested_at=to_db_time(data.requested_at),
                processed_at=to_db_time(data.processed_at),
                error=data.error,
                metadata=data.metadata,
            )
            return command_from_record(record)

        return await self._run(_create)

    async def update_command(self, command_id: str, patch: CommandPatch) -> None:
        changes = patch.changes()
        if "processed_at" in changes:
            changes["processed_at"] = to_db_time(changes["processed_at"])

        def _update(db: Session) -> None:
            record = CommandRepository.update(db, command_id, **changes)
            if record is None:
                logger.warning("update_command: command %s not found", command_id)

        await self._run(_update)

    async def find_running_command(self, site_key: str, type: str) -> Optional[Command]:
        def _find(db: Session) -> Optional[Command]:
            record = CommandRepository.find_running(db, site_key, type)
            return command_from_record(record) if record else None

        return await self._run(_find)

    async def list_pending_commands(self, site_key: str, supported_types: Sequence[str], limit: int) -> List[Command]:
        def _list(db: Session) -> List[Command]:
            records = CommandRepository.list_pending(db, site_key, supported_types, limit)
            return [command_from_record(r) for r in records]

        return await self._run(_list)

    async def get_command(self, command_id: str) -> Optional[Command]:
        def _get(db: Session) -> Optional[Command]:
            record = CommandRepository.get(db, command_id)
            return command_from_record(record) if record else None

        return await self._run(_get)

    async def list_commands(self, site_key: str, limit: int = 50) -> List[Command]:
        """Most recent commands for a site, newest first."""
        return await self._run(
            lambda db: [command_from_record(r) for r in CommandRepository.list_for_site(db, site_key, limit=limit)]
        )

    # --- GateStore ---

    async def is_automation_enabled(self, site_key: str) -> bool:
        def _enabled(db: Session) -> bool:
            config = AutomationConfigRepository.get(db, site_key)
            return bool(config and config.automation_enabled)

        return await self._run(_enabled)

    async def is_job_gate_open(self, site_key: str, job_type: str) -> Optional[bool]:
        gate = gate_for(job_type)
        if gate is None:
            return None

        def _gate(db: Session) -> Optional[bool]:
            record = AutomationGateRepository.get(db, site_key, gate.name)
            return bool(record.enabled) if record else None

        return await self._run(_gate)

    # --- AuditSink ---

    async def emit(self, kind: str, fields: Dict[str, Any], severity: str = "INFO") -> None:
        message = format_message(kind, fields)
        await self._run(
            lambda db: AuditEventRepository.create(
                db,
                kind=kind,
                message=message,
                severity=severity,
                site_key=fields.get("siteKey"),
                job_type=fields.get("jobType"),
                details=dict(fields),
            )
        )

    async def list_audit_events(self, site_key: Optional[str] = None, kind: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent audit events, oldest to newest."""
        def _list(db: Session) -> List[Dict[str, Any]]:
            records = AuditEventRepository.list_recent(db, site_key=site_key, kind=kind, limit=limit)
            return [
                {
                    "id": r.id,
                    "kind": r.kind,
                    "severity": r.severity,
                    "site_key": r.site_key,
                    "job_type": r.job_type,
                    "message": r.message,
                    "details": r.details or {},
                    "created_at": from_db_time(r.created_at),
                }
                for r in records
            ]

        return await self._run(_list)

    # --- AutomationAdminStore ---

    async def get_schedule(self, site_key: str, job_type: str) -> Optional[Schedule]:
        def _get(db: Session) -> Optional[Schedule]:
            record = ScheduleRepository.get_by_key(db, site_key, job_type)
            return schedule_from_record(record) if record else None

        return await self._run(_get)

    async def list_schedules(self, site_key: str) -> List[Schedule]:
        return await self._run(
            lambda db: [schedule_from_record(r) for r in ScheduleRepository.list_for_site(db, site_key)]
        )

    async def upsert_schedule(
        self,
        site_key: str,
        job_type: str,
        cron: str,
        timezone: str,
        enabled: Optional[bool] = None,
    ) -> Schedule:
        def _upsert(db: Session) -> Schedule:
            record = ScheduleRepository.upsert(db, site_key, job_type, cron=cron, timezone=timezone, enabled=enabled)
            return schedule_from_record(record)

        return await self._run(_upsert)

    async def set_automation_enabled(self, site_key: str, enabled: bool) -> None:
        await self._run(lambda db: AutomationConfigRepository.set_enabled(db, site_key, enabled))

    async def set_job_gate(self, site_key: str, job_type: str, enabled: bool) -> None:
        gate = gate_for(job_type)
        if gate is None:
            raise ValueError(f"job type {job_type!r} has no gate")
        await self._run(lambda db: AutomationGateRepository.set(db, site_key, gate.name, enabled))

    async def get_gates(self, site_key: str) -> Dict[str, bool]:
        return await self._run(lambda db: AutomationGateRepository.list_for_site(db, site_key))

    async def fail_pending_commands(self, site_key: str, error: str, now: datetime) -> int:
        now_db = to_db_time(now)
        return await self._run(lambda db: CommandRepository.fail_pending(db, site_key, error, now_db))

    async def latest_command(self, site_key: str, type: str) -> Optional[Command]:
        def _latest(db: Session) -> Optional[Command]:
            record = CommandRepository.latest_for_type(db, site_key, type)
            return command_from_record(record) if record else None

        return await self._run(_latest)
