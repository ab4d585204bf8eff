"""Ordered hook dispatch at the job's trigger points.

Handlers are plain callables registered as ``(event, handler)`` pairs and
invoked synchronously in registration order. A handler receives a
:class:`HookEvent`; it may mutate ``event.records`` in place, return a new
record list to replace it, or call ``event.cancel()`` to ask the job to
stop at the next task boundary.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class HookEventName(str, Enum):
    """Trigger points exposed by the job."""
    BEFORE_QUERY = "before_query"
    FILTER_RECORDS = "filter_records"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"


@dataclass
class HookEvent:
    """Payload handed to each handler."""
    name: HookEventName
    object_name: str
    operation: str = ""
    update_mode: Optional[str] = None
    records: List[Dict[str, Any]] = field(default_factory=list)
    query: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by hook") -> None:
        self.cancel_requested = True
        self.cancel_reason = reason


HookHandler = Callable[[HookEvent], Optional[List[Dict[str, Any]]]]


class HookDispatcher:
    """Explicit ordered list of (event, handler) pairs."""

    def __init__(self):
        self._handlers: List[Tuple[HookEventName, HookHandler]] = []

    def register(self, event: HookEventName, handler: HookHandler) -> None:
        self._handlers.append((HookEventName(event), handler))

    def handlers_for(self, event: HookEventName) -> List[HookHandler]:
        return [h for name, h in self._handlers if name == event]

    def dispatch(self, event: HookEvent) -> HookEvent:
        """
        Run every handler registered for the event.

        Args:
            event: Event payload; handlers may mutate it

        Returns:
            The same event, with ``records`` replaced by any handler that
            returned a list
        """
        for handler in self.handlers_for(event.name):
            result = handler(event)
            if result is not None:
                event.records = list(result)
            if event.cancel_requested:
                logger.info(f"{event.object_name}: {event.name.value} handler requested cancellation")
                break
        return event
