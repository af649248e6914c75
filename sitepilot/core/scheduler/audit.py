"""
Audit trail for scheduled runs.

Events: scheduled_run_started, scheduled_run_skipped, scheduled_run_completed.
Emission is fire-and-forget: sink failures are logged and never reach scheduling code.
"""
import json
import logging
from typing import Any, Dict

from sitepilot.core.scheduler.interfaces import AuditSink

logger = logging.getLogger(__name__)

SCHEDULED_RUN_STARTED = "scheduled_run_started"
SCHEDULED_RUN_SKIPPED = "scheduled_run_skipped"
SCHEDULED_RUN_COMPLETED = "scheduled_run_completed"

# Keys rendered in the message prefix rather than the JSON tail
_HEADER_KEYS = ("jobType", "siteKey", "scheduleId", "commandId")


def format_message(kind: str, fields: Dict[str, Any]) -> str:
    """Render 'kind jobType=.. siteKey=.. {details}' for humans reading the trail."""
    head = " ".join(f"{k}={fields[k]}" for k in _HEADER_KEYS if fields.get(k) is not None)
    rest = {k: v for k, v in fields.items() if k not in _HEADER_KEYS}
    parts = [kind]
    if head:
        parts.append(head)
    if rest:
        parts.append(json.dumps(rest, default=str, sort_keys=True))
    return " ".join(parts)


class LoggingAuditSink(AuditSink):
    """Audit sink that only writes to the log."""

    async def emit(self, kind: str, fields: Dict[str, Any], severity: str = "INFO") -> None:
        level = logging.ERROR if severity == "ERROR" else logging.INFO
        logger.log(level, "audit %s", format_message(kind, fields))


async def emit_safely(sink: AuditSink, kind: str, fields: Dict[str, Any], severity: str = "INFO") -> None:
    """Emit an audit event, swallowing (and logging) sink errors."""
    try:
        await sink.emit(kind, fields, severity=severity)
    except Exception as e:
        logger.warning("audit emit %s failed: %s", kind, e)
