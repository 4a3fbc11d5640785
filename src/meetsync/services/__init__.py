"""Remote calendar services."""

from .base import (
    BaseCalendarService, CalendarServiceError, AuthenticationError, RateLimitError,
    ServiceUnavailableError, EventNotFoundError
)
from .google import GoogleCalendarClient

__all__ = [
    'BaseCalendarService', 'CalendarServiceError', 'AuthenticationError', 'RateLimitError',
    'ServiceUnavailableError', 'EventNotFoundError', 'GoogleCalendarClient'
]
