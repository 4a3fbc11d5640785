"""Google Calendar REST client with async support."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import (
    BaseCalendarService, CalendarServiceError, EventNotFoundError, RateLimitError,
    ServiceUnavailableError
)
from ..config import Settings
from ..models import RemoteEvent, RemoteEventDraft

if TYPE_CHECKING:
    from ..tokens import TokenStore

# Statuses meaning "nothing to sync this pass" rather than a failure
QUIET_LIST_STATUSES = {401, 403, 404}


def format_rfc3339(dt: datetime) -> str:
    """Normalize datetime to RFC3339 `YYYY-MM-DDTHH:MM:SSZ` format."""
    if dt.tzinfo is None:
        # Assume naive datetimes are already UTC
        dt_utc = dt.replace(microsecond=0)
    else:
        dt_utc = dt.astimezone(timezone.utc).replace(tzinfo=None, microsecond=0)

    return dt_utc.isoformat(timespec="seconds") + "Z"


class GoogleCalendarClient(BaseCalendarService):
    """Authenticated calls against one Google calendar."""

    def __init__(
        self,
        settings: Settings,
        token_store: "TokenStore",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize Google Calendar client.

        Args:
            settings: Application settings
            token_store: Source of access tokens for every call
            http_client: Pre-built client (tests pass one with a mock transport)
        """
        super().__init__(settings.tzinfo)
        self.settings = settings
        self.token_store = token_store
        self.calendar_id = settings.google_calendar_id
        self.retry_wait = wait_exponential(multiplier=1, min=1, max=10)
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()

    def _events_url(self, remote_id: Optional[str] = None) -> str:
        base = self.settings.google_api_base.rstrip('/')
        url = f"{base}/calendars/{quote(self.calendar_id, safe='')}/events"
        if remote_id:
            url += f"/{quote(remote_id, safe='')}"
        return url

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.token_store.get_access_token()
        if not token:
            self.logger.debug("No Google access token available, calling unauthenticated")
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, retrying rate limits and server errors.

        Returns:
            Final response for any non-transient status

        Raises:
            RateLimitError: Still rate limited after all attempts
            ServiceUnavailableError: Still failing with 5xx after all attempts
            httpx.TransportError: Network failure after all attempts
        """
        headers = await self._auth_headers()
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type((RateLimitError, ServiceUnavailableError, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                response = await self._http_client.request(method, url, headers=headers, **kwargs)
                if response.status_code == 429:
                    self.logger.warning("Google API rate limited, retrying...")
                    raise RateLimitError(f"Rate limited: {method} {url}")
                if response.status_code >= 500:
                    raise ServiceUnavailableError(
                        f"Google API returned {response.status_code} for {method} {url}"
                    )
        if response.status_code == 401:
            await self.token_store.invalidate_access_token()
        return response

    async def list_events(self, time_min: datetime, time_max: datetime) -> List[RemoteEvent]:
        """List non-cancelled events in the window, following pagination."""
        params: Dict[str, Any] = {
            'timeMin': format_rfc3339(time_min),
            'timeMax': format_rfc3339(time_max),
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': 250,
        }
        events: List[RemoteEvent] = []

        try:
            while True:
                response = await self._send('GET', self._events_url(), params=params)

                if response.status_code in QUIET_LIST_STATUSES:
                    self.logger.warning(
                        f"Google returned {response.status_code} listing events, nothing to sync"
                    )
                    return []
                if response.is_error:
                    self.logger.warning(f"Failed to list Google events: HTTP {response.status_code}")
                    return []

                data = response.json()
                items = data.get('items', []) if isinstance(data, dict) else None
                if not isinstance(items, list):
                    self.logger.warning("Malformed events list response from Google")
                    return []

                for item in items:
                    if not isinstance(item, dict) or item.get('status') == 'cancelled':
                        continue
                    try:
                        events.append(RemoteEvent.model_validate(item))
                    except ValidationError as e:
                        self.logger.warning(f"Skipping malformed Google event {item.get('id')}: {e}")

                page_token = data.get('nextPageToken')
                if not page_token:
                    break
                params['pageToken'] = page_token

        except (CalendarServiceError, httpx.HTTPError, ValueError) as e:
            self.logger.warning(f"Failed to list Google events: {e}")
            return []

        return events

    async def get_event(self, remote_id: str) -> Optional[RemoteEvent]:
        try:
            response = await self._send('GET', self._events_url(remote_id))
            if response.status_code == 404 or response.is_error:
                return None
            event = RemoteEvent.model_validate(response.json())
        except (CalendarServiceError, httpx.HTTPError, ValueError) as e:
            self.logger.warning(f"Failed to get Google event {remote_id}: {e}")
            return None

        if event.status == 'cancelled':
            return None
        return event

    async def event_exists(self, remote_id: str) -> bool:
        try:
            response = await self._send('GET', self._events_url(remote_id))
        except httpx.HTTPError as e:
            raise CalendarServiceError(f"Failed to read Google event {remote_id}: {e}")

        if response.status_code in (404, 410):
            return False
        if response.is_error:
            raise CalendarServiceError(
                f"Failed to read Google event {remote_id}: HTTP {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise CalendarServiceError(f"Malformed Google event {remote_id}: {e}")
        if not isinstance(data, dict):
            raise CalendarServiceError(f"Malformed Google event {remote_id}")
        return data.get('status') != 'cancelled'

    async def create_event(self, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        try:
            response = await self._send('POST', self._events_url(), json=draft.to_api_payload())
            if response.is_error:
                self.logger.error(
                    f"Failed to create Google event '{draft.summary}': HTTP {response.status_code}"
                )
                return None
            created = RemoteEvent.model_validate(response.json())
        except (CalendarServiceError, httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Failed to create Google event '{draft.summary}': {e}")
            return None

        self.logger.info(f"Created Google event {created.id}: {created.summary}")
        return created

    async def update_event(self, remote_id: str, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        try:
            response = await self._send(
                'PATCH', self._events_url(remote_id), json=draft.to_api_payload()
            )
            if response.is_error:
                self.logger.error(
                    f"Failed to update Google event {remote_id}: HTTP {response.status_code}"
                )
                return None
            updated = RemoteEvent.model_validate(response.json())
        except (CalendarServiceError, httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Failed to update Google event {remote_id}: {e}")
            return None

        return updated

    async def delete_event(self, remote_id: str) -> None:
        try:
            response = await self._send('DELETE', self._events_url(remote_id))
        except httpx.HTTPError as e:
            raise CalendarServiceError(f"Failed to delete Google event: {e}")

        if response.status_code == 410:
            self.logger.info(f"Google event {remote_id} was already deleted")
            return
        if response.status_code == 404:
            raise EventNotFoundError(f"Google event {remote_id} not found")
        if response.is_error:
            raise CalendarServiceError(
                f"Failed to delete Google event {remote_id}: HTTP {response.status_code}"
            )
