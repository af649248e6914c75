"""
Cron-driven automation scheduler: timers enqueue commands, a poll loop runs them.

Persistence: SQLite via SQLAlchemy (automation_schedules/system_commands tables).
"""
from sitepilot.core.scheduler.cron import CronExpression
from sitepilot.core.scheduler.jobs import JobHandlerRegistry, get_job_registry, register_job
from sitepilot.core.scheduler.models import (
    DISCOVERY_SWEEP,
    UNAFFILIATED_PUBLISHER,
    SUPPORTED_JOB_TYPES,
    Command,
    HandlerResult,
    JobContext,
    RuntimeConfig,
    Schedule,
    ScheduleKey,
)
from sitepilot.core.scheduler.runtime import RuntimeHandle, SchedulerRuntime, start
from sitepilot.core.scheduler.service import AutomationService
from sitepilot.core.scheduler.storage import SqlAutomationStore
from sitepilot.core.scheduler.validation import (
    AlreadyRunningError,
    AutomationPausedError,
    InvalidCronError,
    RuntimeAlreadyStartedError,
    SchedulerError,
    UnsupportedJobTypeError,
    UnsupportedTimezoneError,
)

__all__ = [
    "CronExpression",
    "JobHandlerRegistry",
    "get_job_registry",
    "register_job",
    "DISCOVERY_SWEEP",
    "UNAFFILIATED_PUBLISHER",
    "SUPPORTED_JOB_TYPES",
    "Command",
    "HandlerResult",
    "JobContext",
    "RuntimeConfig",
    "Schedule",
    "ScheduleKey",
    "RuntimeHandle",
    "SchedulerRuntime",
    "start",
    "AutomationService",
    "SqlAutomationStore",
    "AlreadyRunningError",
    "AutomationPausedError",
    "InvalidCronError",
    "RuntimeAlreadyStartedError",
    "SchedulerError",
    "UnsupportedJobTypeError",
    "UnsupportedTimezoneError",
]
