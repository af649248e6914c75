"""
Repository layer for database operations.

Provides the queries the scheduler needs on schedules, commands, gates and audit events.
Datetimes passed in and returned are naive UTC.
"""
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime
import logging
from sqlalchemy.orm import Session
from sqlalchemy import or_

from sitepilot.core.memory.models import (
    FAILURE,
    STARTED,
    ScheduleRecord,
    CommandRecord,
    AutomationConfigRecord,
    AutomationGateRecord,
    AuditEventRecord,
)


logger = logging.getLogger(__name__)


def require_active_session(db: Session) -> None:
    """Raise if session is closed; prevents use-after-close."""
    if not db.is_active:
        raise RuntimeError(
            "Session already closed; do not use a session outside its db_session() block."
        )


def safe_refresh(db: Session, obj: Any) -> None:
    """Safely refresh an object, ignoring errors if session is closed."""
    try:
        if db.is_active:
            db.refresh(obj)
    except Exception as e:
        # Object is already committed
        logger.debug("refresh skipped: %s", e)


class ScheduleRepository:
    """Repository for automation schedules."""

    @staticmethod
    def list_enabled(db: Session, site_key: str, job_types: Iterable[str]) -> List[ScheduleRecord]:
        """Return enabled schedules for a site, restricted to job_types."""
        return (
            db.query(ScheduleRecord)
            .filter(
                ScheduleRecord.site_key == site_key,
                ScheduleRecord.enabled.is_(True),
                ScheduleRecord.job_type.in_(list(job_types)),
            )
            .all()
        )

    @staticmethod
    def list_for_site(db: Session, site_key: str) -> List[ScheduleRecord]:
        """Return all schedules for a site, enabled or not."""
        return (
            db.query(ScheduleRecord)
            .filter(ScheduleRecord.site_key == site_key)
            .order_by(ScheduleRecord.job_type.asc())
            .all()
        )

    @staticmethod
    def get_by_key(db: Session, site_key: str, job_type: str) -> Optional[ScheduleRecord]:
        """Get the schedule for a (site, job type) pair."""
        return (
            db.query(ScheduleRecord)
            .filter(ScheduleRecord.site_key == site_key, ScheduleRecord.job_type == job_type)
            .first()
        )

    @staticmethod
    def upsert(
        db: Session,
        site_key: str,
        job_type: str,
        cron: str,
        timezone: str,
        enabled: Optional[bool] = None,
    ) -> ScheduleRecord:
        """Insert or update the schedule for (site_key, job_type). enabled=None keeps the stored value."""
        require_active_session(db)
        record = ScheduleRepository.get_by_key(db, site_key, job_type)
        if record:
            record.cron = cron
            record.timezone = timezone
            if enabled is not None:
                record.enabled = enabled
        else:
            record = ScheduleRecord(
                site_key=site_key,
                job_type=job_type,
                cron=cron,
                timezone=timezone,
                enabled=bool(enabled),
            )
            db.add(record)
        db.commit()
        safe_refresh(db, record)
        return record

    @staticmethod
    def claim(db: Session, schedule_id: str, now: datetime, cutoff: datetime) -> bool:
        """
        Atomically set last_scheduled_at=now when it is NULL or older than cutoff.

        Returns True iff this call performed the claim (one row affected).
        """
        require_active_session(db)
        affected = (
            db.query(ScheduleRecord)
            .filter(
                ScheduleRecord.id == schedule_id,
                or_(
                    ScheduleRecord.last_scheduled_at.is_(None),
                    ScheduleRecord.last_scheduled_at < cutoff,
                ),
            )
            .update({ScheduleRecord.last_scheduled_at: now}, synchronize_session=False)
        )
        db.commit()
        return (affected or 0) > 0


class CommandRepository:
    """Repository for the command queue."""

    @staticmethod
    def create(
        db: Session,
        site_key: str,
        type: str,
        status: str,
        requested_at: datetime,
        processed_at: Optional[datetime] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CommandRecord:
        """Create a command row."""
        require_active_session(db)
        record = CommandRecord(
            site_key=site_key,
            type=type,
            status=status,
            requested_at=requested_at,
            processed_at=processed_at,
            error=error,
            metadata_json=metadata or {},
        )
        db.add(record)
        db.commit()
        safe_refresh(db, record)
        return record

    @staticmethod
    def get(db: Session, command_id: str) -> Optional[CommandRecord]:
        """Get command by ID."""
        return db.query(CommandRecord).filter(CommandRecord.id == command_id).first()

    @staticmethod
    def update(db: Session, command_id: str, **fields: Any) -> Optional[CommandRecord]:
        """Apply a partial update. 'metadata' replaces the whole bag."""
        require_active_session(db)
        record = CommandRepository.get(db, command_id)
        if not record:
            return None
        for name, value in fields.items():
            if name == "metadata":
                record.metadata_json = value
            else:
                setattr(record, name, value)
        db.commit()
        safe_refresh(db, record)
        return record

    @staticmethod
    def find_running(db: Session, site_key: str, type: str) -> Optional[CommandRecord]:
        """Latest STARTED command with no processed_at for (site_key, type)."""
        return (
            db.query(CommandRecord)
            .filter(
                CommandRecord.site_key == site_key,
                CommandRecord.type == type,
                CommandRecord.status == STARTED,
                CommandRecord.processed_at.is_(None),
            )
            .order_by(CommandRecord.requested_at.desc())
            .first()
        )

    @staticmethod
    def list_pending(db: Session, site_key: str, types: Iterable[str], limit: int) -> List[CommandRecord]:
        """Oldest-first pending (STARTED, unprocessed) commands."""
        return (
            db.query(CommandRecord)
            .filter(
                CommandRecord.site_key == site_key,
                CommandRecord.status == STARTED,
                CommandRecord.processed_at.is_(None),
                CommandRecord.type.in_(list(types)),
            )
            .order_by(CommandRecord.requested_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def fail_pending(db: Session, site_key: str, error: str, processed_at: datetime) -> int:
        """Mark every pending command for a site FAILURE. Returns number updated."""
        require_active_session(db)
        affected = (
            db.query(CommandRecord)
            .filter(
                CommandRecord.site_key == site_key,
                CommandRecord.status == STARTED,
                CommandRecord.processed_at.is_(None),
            )
            .update(
                {
                    CommandRecord.status: FAILURE,
                    CommandRecord.processed_at: processed_at,
                    CommandRecord.error: error,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return affected or 0

    @staticmethod
    def latest_for_type(db: Session, site_key: str, type: str) -> Optional[CommandRecord]:
        """Most recently requested command of a type."""
        return (
            db.query(CommandRecord)
            .filter(CommandRecord.site_key == site_key, CommandRecord.type == type)
            .order_by(CommandRecord.requested_at.desc())
            .first()
        )

    @staticmethod
    def list_for_site(db: Session, site_key: str, limit: int = 50) -> List[CommandRecord]:
        """Most recent commands for a site, newest first."""
        return (
            db.query(CommandRecord)
            .filter(CommandRecord.site_key == site_key)
            .order_by(CommandRecord.requested_at.desc())
            .limit(limit)
            .all()
        )


class AutomationConfigRepository:
    """Repository for the per-site automation switch."""

    @staticmethod
    def get(db: Session, site_key: str) -> Optional[AutomationConfigRecord]:
        return db.query(AutomationConfigRecord).filter(AutomationConfigRecord.site_key == site_key).first()

    @staticmethod
    def set_enabled(db: Session, site_key: str, enabled: bool) -> AutomationConfigRecord:
        require_active_session(db)
        config = AutomationConfigRepository.get(db, site_key)
        if config:
            config.automation_enabled = enabled
        else:
            config = AutomationConfigRecord(site_key=site_key, automation_enabled=enabled)
            db.add(config)
        db.commit()
        safe_refresh(db, config)
        return config


class AutomationGateRepository:
    """Repository for job-type gates."""

    @staticmethod
    def get(db: Session, site_key: str, gate: str) -> Optional[AutomationGateRecord]:
        return (
            db.query(AutomationGateRecord)
            .filter(AutomationGateRecord.site_key == site_key, AutomationGateRecord.gate == gate)
            .first()
        )

    @staticmethod
    def set(db: Session, site_key: str, gate: str, enabled: bool) -> AutomationGateRecord:
        require_active_session(db)
        record = AutomationGateRepository.get(db, site_key, gate)
        if record:
            record.enabled = enabled
        else:
            record = AutomationGateRecord(site_key=site_key, gate=gate, enabled=enabled)
            db.add(record)
        db.commit()
        safe_refresh(db, record)
        return record

    @staticmethod
    def list_for_site(db: Session, site_key: str) -> Dict[str, bool]:
        records = db.query(AutomationGateRecord).filter(AutomationGateRecord.site_key == site_key).all()
        return {r.gate: bool(r.enabled) for r in records}


class AuditEventRepository:
    """Repository for audit events."""

    @staticmethod
    def create(
        db: Session,
        kind: str,
        message: str,
        severity: str = "INFO",
        site_key: Optional[str] = None,
        job_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEventRecord:
        """Append an audit event."""
        require_active_session(db)
        event = AuditEventRecord(
            kind=kind,
            severity=severity,
            site_key=site_key,
            job_type=job_type,
            message=message,
            details=details,
        )
        db.add(event)
        db.commit()
        safe_refresh(db, event)
        return event

    @staticmethod
    def list_recent(
        db: Session,
        site_key: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditEventRecord]:
        """Recent audit events, oldest to newest."""
        q = db.query(AuditEventRecord)
        if site_key is not None:
            q = q.filter(AuditEventRecord.site_key == site_key)
        if kind is not None:
            q = q.filter(AuditEventRecord.kind == kind)
        records = q.order_by(AuditEventRecord.id.desc()).limit(limit).all()
        return list(reversed(records))
