"""
Schedule, command and runtime models.

Contract:
- job types: closed set (DISCOVERY_SWEEP, UNAFFILIATED_PUBLISHER)
- command status: STARTED | SUCCESS | FAILURE; pending = STARTED with processed_at unset
- command metadata: {scheduled, scheduleId, cron, timezone} for scheduled runs,
  {manual: true} for manual runs, later {result} or {skipped, reason}
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from sitepilot.core.config import settings
from sitepilot.core.memory.models import FAILURE, STARTED, SUCCESS


# --- Job types and statuses ---

DISCOVERY_SWEEP = "DISCOVERY_SWEEP"
UNAFFILIATED_PUBLISHER = "UNAFFILIATED_PUBLISHER"

SUPPORTED_JOB_TYPES = (DISCOVERY_SWEEP, UNAFFILIATED_PUBLISHER)

CommandStatus = Literal["STARTED", "SUCCESS", "FAILURE"]

UTC = "UTC"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_supported_job_type(job_type: str) -> bool:
    return job_type in SUPPORTED_JOB_TYPES


@dataclass(frozen=True)
class ScheduleKey:
    """Registry key for a live schedule task: one per (site, job type)."""
    site_key: str
    job_type: str

    def __str__(self) -> str:
        return f"{self.site_key}::{self.job_type}"


# --- Schedule ---

class Schedule(BaseModel):
    """Administrator-defined cron rule, as read from the store."""
    id: str
    site_key: str
    job_type: str
    enabled: bool = True
    cron: str
    timezone: str = UTC
    last_scheduled_at: Optional[datetime] = None

    @property
    def key(self) -> ScheduleKey:
        return ScheduleKey(self.site_key, self.job_type)


# --- Command ---

class Command(BaseModel):
    """A queued or executed unit of work."""
    id: str
    site_key: str
    type: str
    status: CommandStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_scheduled(self) -> bool:
        """True for commands created by a schedule fire (as opposed to a manual trigger)."""
        return bool(self.metadata.get("scheduled"))

    @property
    def is_running(self) -> bool:
        return self.status == STARTED and self.processed_at is None


class CommandCreate(BaseModel):
    """Input for CommandStore.create_command."""
    site_key: str
    type: str
    status: CommandStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CommandPatch(BaseModel):
    """Partial update for CommandStore.update_command. Only set fields are written."""
    status: Optional[CommandStatus] = None
    processed_at: Optional[datetime] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# --- Job handlers ---

class JobContext(BaseModel):
    """Argument passed to a job handler."""
    site_key: str
    command_id: Optional[str] = None
    scheduled: bool = False


class HandlerResult(BaseModel):
    """
    Result reported by a job handler.

    skipped=True is a legitimate non-error outcome (e.g. nothing to do).
    Any additional keys the handler returns are kept.
    """
    skipped: bool = False
    reason: Optional[str] = None
    model_config = {"extra": "allow"}

    @classmethod
    def coerce(cls, value: Any) -> "HandlerResult":
        """Accept a HandlerResult, a dict, or None from a handler."""
        if isinstance(value, HandlerResult):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls.model_validate(value)
        return cls(value=value)


# --- Runtime config ---

def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class RuntimeConfig(BaseModel):
    """
    Configuration passed to start().

    poll_seconds is clamped to 5-300, process_every_seconds to 2-60.
    """
    site_key: str
    poll_seconds: int = 30
    process_every_seconds: int = 5
    claim_window_seconds: float = 30.0
    batch_size: int = 3

    @field_validator("poll_seconds", mode="before")
    @classmethod
    def clamp_poll(cls, v):
        return _clamp(30 if v is None else v, 5, 300)

    @field_validator("process_every_seconds", mode="before")
    @classmethod
    def clamp_process(cls, v):
        return _clamp(5 if v is None else v, 2, 60)

    @field_validator("claim_window_seconds")
    @classmethod
    def positive_claim_window(cls, v):
        if v <= 0:
            raise ValueError("claim_window_seconds must be > 0")
        return v

    @field_validator("batch_size")
    @classmethod
    def positive_batch(cls, v):
        return max(1, v)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "RuntimeConfig":
        values = {
            "site_key": settings.site_key,
            "poll_seconds": settings.scheduler_poll_seconds,
            "process_every_seconds": settings.scheduler_process_every_seconds,
            "claim_window_seconds": settings.scheduler_claim_window_seconds,
            "batch_size": settings.scheduler_process_batch_size,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
