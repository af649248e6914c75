"""
Scheduler errors and registration-time validation.

- cron: 5-field, field-level errors (InvalidCronError, raised by the parser)
- timezone: only UTC, fail-closed
- job type: closed set
- start(): a runtime may only be started once
"""
from typing import Optional

from sitepilot.core.scheduler.models import SUPPORTED_JOB_TYPES, UTC


class SchedulerError(Exception):
    """Base class for scheduler errors."""
    pass


class InvalidCronError(SchedulerError, ValueError):
    """Raised when a cron expression does not parse. Names the offending field and token."""

    def __init__(self, field: str, token: str, detail: Optional[str] = None):
        self.field = field
        self.token = token
        message = f"invalid cron {field} field: {token!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class UnsupportedTimezoneError(SchedulerError, ValueError):
    """Raised for schedules in any timezone other than UTC."""

    def __init__(self, timezone: str):
        self.timezone = timezone
        super().__init__(f"unsupported timezone {timezone!r}; only UTC is supported")


class UnsupportedJobTypeError(SchedulerError, ValueError):
    """Raised for job types outside the supported set."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"unsupported job type {job_type!r}")


class RuntimeAlreadyStartedError(SchedulerError, RuntimeError):
    """Raised when start() is called on a runtime that is already running."""
    pass


class AutomationPausedError(SchedulerError):
    """Raised by a manual run request while automation is disabled for the site."""

    def __init__(self, site_key: str):
        self.site_key = site_key
        super().__init__(f"automation is disabled (paused) for site {site_key!r}")


class AlreadyRunningError(SchedulerError):
    """Raised by a manual run request while a command of that type is running."""

    def __init__(self, site_key: str, job_type: str, running_id: str):
        self.site_key = site_key
        self.job_type = job_type
        self.running_id = running_id
        super().__init__(f"{job_type} is already running for site {site_key!r} (command {running_id})")


def validate_timezone(timezone: str) -> None:
    """Only UTC schedules can be registered."""
    if timezone != UTC:
        raise UnsupportedTimezoneError(timezone)


def validate_job_type(job_type: str) -> None:
    if job_type not in SUPPORTED_JOB_TYPES:
        raise UnsupportedJobTypeError(job_type)
