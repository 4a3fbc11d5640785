"""Base remote calendar client interface."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional
import logging

import pytz

from ..models import RemoteEvent, RemoteEventDraft

logger = logging.getLogger(__name__)


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class ServiceUnavailableError(CalendarServiceError):
    """Server-side (5xx) errors."""
    pass


class EventNotFoundError(CalendarServiceError):
    """Event not found errors."""
    pass


class BaseCalendarService(ABC):
    """Contract between the sync engine and a remote calendar.

    Reads, creates and updates absorb expected failures (empty list or None);
    only deletion raises, because the caller decides how to handle it.
    """

    def __init__(self, tz=pytz.UTC):
        self.tz = tz
        self.logger = logger.getChild(type(self).__name__)

    @abstractmethod
    async def list_events(self, time_min: datetime, time_max: datetime) -> List[RemoteEvent]:
        """List events starting inside a time window.

        Args:
            time_min: Inclusive lower bound
            time_max: Exclusive upper bound

        Returns:
            Events, or an empty list when nothing can be synced this pass
        """
        pass

    @abstractmethod
    async def get_event(self, remote_id: str) -> Optional[RemoteEvent]:
        """Get a specific event, or None if it does not exist or cannot be read."""
        pass

    async def event_exists(self, remote_id: str) -> bool:
        """Whether an event is present and not cancelled.

        Unlike get_event, a read failure is not reported as absence.

        Raises:
            CalendarServiceError: If existence could not be determined
        """
        return await self.get_event(remote_id) is not None

    @abstractmethod
    async def create_event(self, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        """Create an event.

        Returns:
            Created event, or None on failure
        """
        pass

    @abstractmethod
    async def update_event(self, remote_id: str, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        """Replace an existing event.

        Returns:
            Updated event, or None on failure
        """
        pass

    @abstractmethod
    async def delete_event(self, remote_id: str) -> None:
        """Delete an event.

        Raises:
            EventNotFoundError: If event not found
            CalendarServiceError: If event cannot be deleted
        """
        pass

    def today_window(self) -> tuple:
        """Local midnight today to local midnight tomorrow."""
        now = datetime.now(self.tz)
        start = self.tz.localize(datetime(now.year, now.month, now.day))
        return start, start + timedelta(days=1)

    def upcoming_window(self, days: int = 30, past_days: int = 0) -> tuple:
        """Local midnight ``past_days`` ago through ``days`` days ahead."""
        start, _ = self.today_window()
        return start - timedelta(days=past_days), start + timedelta(days=days)

    async def list_today_events(self) -> List[RemoteEvent]:
        return await self.list_events(*self.today_window())

    async def list_upcoming_events(self, days: int = 30) -> List[RemoteEvent]:
        return await self.list_events(*self.upcoming_window(days))

    async def aclose(self) -> None:
        """Release network resources."""
        pass
