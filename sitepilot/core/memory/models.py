"""
SQLAlchemy models for the SitePilot database.

Defines the schema for automation schedules, the command queue, automation gates,
and the audit trail written by the scheduler.

All timestamps are stored as naive UTC.
"""
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Boolean,
    DateTime, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class ScheduleRecord(Base):
    """Administrator-defined cron rule for one (site, job type) pair."""
    __tablename__ = "automation_schedules"

    id = Column(String(36), primary_key=True, default=_new_id)
    site_key = Column(String(64), nullable=False, index=True)
    job_type = Column(String(64), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    cron = Column(String(128), nullable=False)
    timezone = Column(String(64), default="UTC", nullable=False)

    # Idempotency claim marker; only written by the atomic claim
    last_scheduled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_key", "job_type", name="uq_schedule_site_job"),
    )


# Command statuses, shared by the repositories and the scheduler models
STARTED = "STARTED"
SUCCESS = "SUCCESS"
FAILURE = "FAILURE"


class CommandRecord(Base):
    """Queued or executed unit of work (scheduled or manual)."""
    __tablename__ = "system_commands"

    id = Column(String(36), primary_key=True, default=_new_id)
    site_key = Column(String(64), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)  # STARTED, SUCCESS, FAILURE
    requested_at = Column(DateTime, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_command_site_type_status", "site_key", "type", "status"),
    )


class AutomationConfigRecord(Base):
    """Global automation switch per site."""
    __tablename__ = "automation_config"

    id = Column(Integer, primary_key=True, index=True)
    site_key = Column(String(64), unique=True, nullable=False, index=True)
    automation_enabled = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)


class AutomationGateRecord(Base):
    """Job-type specific permission gate (e.g. unaffiliated auto-publish)."""
    __tablename__ = "automation_gates"

    id = Column(Integer, primary_key=True, index=True)
    site_key = Column(String(64), nullable=False, index=True)
    gate = Column(String(64), nullable=False)
    enabled = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("site_key", "gate", name="uq_gate_site_gate"),
    )


class AuditEventRecord(Base):
    """Audit trail of scheduled runs (started, skipped, completed)."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default="INFO")
    site_key = Column(String(64), nullable=True, index=True)
    job_type = Column(String(64), nullable=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=func.now(), nullable=False, index=True)
