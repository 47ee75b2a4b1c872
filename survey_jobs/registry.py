"""Job handler registry."""

from collections.abc import Awaitable, Callable
from typing import Optional

from survey_jobs.models import Job, Outcome

# A handler returns an Outcome; returning None means the job completed.
Handler = Callable[[Job], Awaitable[Optional[Outcome]]]


class JobRegistry:
    """Maps event types to job handlers."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_type``, replacing any previous one."""
        self._handlers[event_type] = handler

    def handler(self, event_type: str):
        """
        Decorator to register a job handler.

        Usage:
            @registry.handler("internal.survey.send")
            async def send_survey(job):
                ...
        """

        def decorator(func: Handler):
            self.register(event_type, func)
            return func

        return decorator

    def get_handler(self, event_type: str) -> Optional[Handler]:
        """Get a handler by event type."""
        return self._handlers.get(event_type)

    def all_handlers(self) -> dict[str, Handler]:
        """Get all registered handlers."""
        return self._handlers.copy()

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._handlers
