"""Typed meeting lifecycle events and a small async event bus."""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Type, Union

from .models import Meeting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeetingCreated:
    meeting: Meeting


@dataclass(frozen=True)
class MeetingUpdated:
    meeting: Meeting


@dataclass(frozen=True)
class MeetingDeleted:
    meeting_id: str


MeetingEvent = Union[MeetingCreated, MeetingUpdated, MeetingDeleted]
Handler = Callable[[Any], Any]


class MeetingEventBus:
    """Dispatch meeting lifecycle events to subscribed handlers.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and reported back to the publisher; it never stops the other
    handlers from running.
    """

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register a handler.

        Args:
            event_type: MeetingCreated, MeetingUpdated or MeetingDeleted
            handler: Called with the event instance

        Returns:
            Callable removing the subscription
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def has_subscribers(self, event_type: Type) -> bool:
        return bool(self._handlers.get(event_type))

    async def publish(self, event: MeetingEvent) -> List[Exception]:
        """Deliver an event to every handler in subscription order.

        Returns:
            Exceptions raised by handlers (empty when all succeeded)
        """
        failures: List[Exception] = []
        for handler in list(self._handlers.get(type(event), ())):
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.exception(f"{type(event).__name__} handler {handler!r} failed")
                failures.append(e)
        return failures
