"""
In-process event bus.

Core operations publish events only after their transaction commits.
Subscribers (notifications, analytics, achievements) are isolated: a failing
handler is logged and never affects the operation that published the event.
"""
import logging
from collections import defaultdict
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from habit_ledger.services.date_service import DateService

logger = logging.getLogger("habit_ledger.events")


@dataclass
class Event:
    type: str
    user_id: int
    payload: dict = field(default_factory=dict)
    occurred_at: object = field(default_factory=DateService.now)


Handler = Callable[[Event], None]


class EventBus:
    """Publish/subscribe with handler isolation"""

    def __init__(self, executor: Optional[Executor] = None):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._executor = executor

    def subscribe(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: Event) -> None:
        """Deliver event to every subscriber; with an executor, do not wait"""
        for handler in list(self._handlers.get(event.type, [])):
            if self._executor is not None:
                self._executor.submit(self._dispatch, handler, event)
            else:
                self._dispatch(handler, event)

    def publish_all(self, events: List[Event]) -> None:
        for event in events:
            self.publish(event)

    @staticmethod
    def _dispatch(handler: Handler, event: Event) -> None:
        try:
            handler(event)
        except Exception as e:
            logger.error(
                f"Event handler {getattr(handler, '__name__', handler)} failed "
                f"for {event.type} (user {event.user_id}): {e}"
            )


event_bus = EventBus()
