"""
Job handler registry.

A handler is an async callable taking a JobContext and returning a HandlerResult,
a dict, or None. The job bodies themselves live in the host application.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sitepilot.core.scheduler.models import JobContext

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext], Awaitable[Any]]


class JobHandlerRegistry:
    """Registry mapping job type -> async handler."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register (or replace) the handler for a job type."""
        if job_type in self._handlers:
            logger.info("Replacing job handler for %s", job_type)
        self._handlers[job_type] = handler

    def handler(self, job_type: str):
        """
        Decorator form of register().

        Usage:
            @registry.handler("DISCOVERY_SWEEP")
            async def run_discovery(ctx): ...
        """
        def decorator(func: JobHandler) -> JobHandler:
            self.register(job_type, func)
            return func
        return decorator

    def get(self, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    def job_types(self) -> List[str]:
        return list(self._handlers.keys())

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers


# Global job registry
_job_registry = JobHandlerRegistry()


def get_job_registry() -> JobHandlerRegistry:
    return _job_registry


def register_job(job_type: str):
    """Decorator to register a handler on the global registry."""
    return _job_registry.handler(job_type)
