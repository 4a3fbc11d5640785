"""Shared fixtures and in-memory fakes."""

from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from meetsync.config import Settings
from meetsync.events import MeetingEventBus
from meetsync.mappings import IdMappingTable
from meetsync.meeting_store import MeetingNotFoundError, MeetingStore, patch_fields
from meetsync.models import Meeting, MeetingDraft, RemoteEvent, RemoteEventDraft
from meetsync.services.base import BaseCalendarService, EventNotFoundError
from meetsync.storage import InMemoryStorage
from meetsync.sync_engine import SyncEngine
from meetsync.sync_settings import SyncSettingsStore

FIXED_NOW = datetime(2024, 1, 15, 8, 0, tzinfo=pytz.UTC)


class IsolatedSettings(Settings):
    """Settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,
        env_prefix="MEETSYNC_",
        case_sensitive=False,
        extra="ignore",
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        timezone='UTC',
        retry_attempts=2,
    )
    values.update(overrides)
    return IsolatedSettings(**values)


class InMemoryMeetingStore(MeetingStore):
    """Meeting store keeping everything in a dict."""

    def __init__(self):
        self.meetings: Dict[str, Meeting] = {}
        self.failing_updates: Set[str] = set()
        self._counter = 0

    def add(self, **fields) -> Meeting:
        meeting = Meeting(**fields)
        self.meetings[meeting.id] = meeting
        return meeting

    async def list(self) -> List[Meeting]:
        return list(self.meetings.values())

    async def get(self, meeting_id: str) -> Optional[Meeting]:
        return self.meetings.get(meeting_id)

    async def create(self, draft: MeetingDraft) -> Meeting:
        self._counter += 1
        meeting = Meeting(id=f"local-{self._counter}", **draft.model_dump())
        self.meetings[meeting.id] = meeting
        return meeting

    async def update(self, meeting_id: str, patch) -> Meeting:
        if meeting_id in self.failing_updates:
            raise IOError("disk full")
        current = self.meetings.get(meeting_id)
        if current is None:
            raise MeetingNotFoundError(meeting_id)
        updated = Meeting(**{**current.model_dump(), **patch_fields(patch)})
        self.meetings[meeting_id] = updated
        return updated

    async def delete(self, meeting_id: str) -> None:
        if meeting_id not in self.meetings:
            raise MeetingNotFoundError(meeting_id)
        del self.meetings[meeting_id]


class FakeCalendarService(BaseCalendarService):
    """Remote calendar recording every call."""

    def __init__(self, tz=pytz.UTC):
        super().__init__(tz)
        self.events: Dict[str, RemoteEvent] = {}
        self.created: List[RemoteEventDraft] = []
        self.updated: List[Tuple[str, RemoteEventDraft]] = []
        self.deleted: List[str] = []
        self.fail_create = False
        self.fail_update = False
        self.delete_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self._counter = 0

    def add_event(self, **data) -> RemoteEvent:
        event = RemoteEvent.model_validate(data)
        self.events[event.id] = event
        return event

    async def list_events(self, time_min, time_max) -> List[RemoteEvent]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.events.values())

    async def get_event(self, remote_id: str) -> Optional[RemoteEvent]:
        return self.events.get(remote_id)

    async def event_exists(self, remote_id: str) -> bool:
        if self.read_error is not None:
            raise self.read_error
        return remote_id in self.events

    async def create_event(self, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        self.created.append(draft)
        if self.fail_create:
            return None
        self._counter += 1
        event = RemoteEvent(id=f"remote-{self._counter}", **draft.model_dump())
        self.events[event.id] = event
        return event

    async def update_event(self, remote_id: str, draft: RemoteEventDraft) -> Optional[RemoteEvent]:
        self.updated.append((remote_id, draft))
        if self.fail_update or remote_id not in self.events:
            return None
        event = RemoteEvent(id=remote_id, **draft.model_dump())
        self.events[remote_id] = event
        return event

    async def delete_event(self, remote_id: str) -> None:
        self.deleted.append(remote_id)
        if self.delete_error is not None:
            raise self.delete_error
        if remote_id not in self.events:
            raise EventNotFoundError(remote_id)
        del self.events[remote_id]


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def mappings(storage):
    return IdMappingTable(storage)


@pytest.fixture
def settings_store(storage):
    return SyncSettingsStore(storage)


@pytest.fixture
def store():
    return InMemoryMeetingStore()


@pytest.fixture
def remote():
    return FakeCalendarService()


@pytest.fixture
def bus():
    return MeetingEventBus()


@pytest.fixture
def engine(store, remote, mappings, settings_store, bus):
    return SyncEngine(
        meeting_store=store,
        remote=remote,
        mappings=mappings,
        settings_store=settings_store,
        event_bus=bus,
        tz=pytz.UTC,
        clock=lambda: FIXED_NOW,
    )
