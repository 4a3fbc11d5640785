"""Data models for meeting and calendar synchronization."""

from dataclasses import dataclass
from datetime import date as date_type, datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, validator
import pytz


class MeetingSource(str, Enum):
    """Where a meeting originated."""

    LOCAL = "local"
    GOOGLE = "google"


class SyncDirection(str, Enum):
    """Which phases a reconciliation pass runs."""

    BIDIRECTIONAL = "bidirectional"
    TO_REMOTE_ONLY = "toRemoteOnly"
    FROM_REMOTE_ONLY = "fromRemoteOnly"


# Values written by earlier versions of the mobile app
LEGACY_DIRECTION_ALIASES = {
    "toGoogle": SyncDirection.TO_REMOTE_ONLY,
    "fromGoogle": SyncDirection.FROM_REMOTE_ONLY,
}


class SyncErrorDirection(str, Enum):
    """Direction of a failed per-item operation."""

    REMOTE_TO_LOCAL = "remote_to_local"
    LOCAL_TO_REMOTE = "local_to_remote"


class ConflictPolicy(str, Enum):
    """Conflict resolution policies."""

    KEEP_LOCAL = "keepLocal"
    KEEP_REMOTE = "keepRemote"
    MERGE = "merge"


class Participant(BaseModel):
    """Meeting participant."""

    name: str = Field("", description="Display name")
    email: str = Field("", description="Email address")

    def key(self) -> str:
        """Identity used when merging participant lists."""
        return (self.email or self.name).strip().lower()


class StructuredLocation(BaseModel):
    """Location picked from a map rather than typed."""

    address: str = Field("", description="Human readable address")
    coordinates: Optional[Dict[str, float]] = Field(None, description="latitude/longitude pair")
    type: Optional[str] = Field(None, description="Location kind, e.g. 'physical' or 'virtual'")


Location = Union[StructuredLocation, str, None]


def location_text(location: Any) -> str:
    """Flatten a plain or structured location to a single string."""
    if location is None:
        return ""
    if isinstance(location, StructuredLocation):
        return location.address or ""
    if isinstance(location, dict):
        address = location.get("address")
        return address if isinstance(address, str) else ""
    return str(location)


class MeetingDraft(BaseModel):
    """Meeting fields without store-assigned identity."""

    title: str = Field(..., description="Meeting title")
    description: Optional[str] = Field(None, description="Free text notes")
    date: Optional[str] = Field(None, description="Calendar date, YYYY-MM-DD")
    time: Optional[str] = Field(None, description="Wall-clock start time")
    duration: Optional[int] = Field(60, ge=0, description="Duration in minutes")
    location: Location = Field(None, description="Plain or structured location")
    participants: List[Participant] = Field(default_factory=list)
    source: MeetingSource = Field(MeetingSource.LOCAL)

    @validator('title')
    def title_not_blank(cls, v):
        """Reject empty titles."""
        if not v or not v.strip():
            raise ValueError("Meeting title must not be empty")
        return v

    @validator('date', pre=True)
    def coerce_date(cls, v):
        """Accept date objects as well as ISO strings."""
        if isinstance(v, datetime):
            return v.date().isoformat()
        if isinstance(v, date_type):
            return v.isoformat()
        return v

    @validator('participants', pre=True)
    def coerce_participants(cls, v):
        """Accept bare email strings in participant lists."""
        if v is None:
            return []
        coerced = []
        for item in v:
            if isinstance(item, str):
                coerced.append({'name': item.split('@')[0], 'email': item})
            else:
                coerced.append(item)
        return coerced

    def has_schedule(self) -> bool:
        """Whether both date and time are present."""
        return bool(self.date) and bool(self.time)


class MeetingPatch(BaseModel):
    """Partial meeting update; only explicitly set fields are applied."""

    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    duration: Optional[int] = Field(None, ge=0)
    location: Location = None
    participants: Optional[List[Participant]] = None
    source: Optional[MeetingSource] = None


class Meeting(MeetingDraft):
    """A meeting owned by the local meeting store."""

    id: str = Field(..., description="Opaque local ID")
    created_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    def to_draft(self) -> MeetingDraft:
        """Drop identity and timestamps."""
        return MeetingDraft(**self.model_dump(exclude={'id', 'created_at', 'updated_at'}))


class EventDateTime(BaseModel):
    """Start or end of a remote event as the calendar API represents it."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: Optional[str] = Field(None, alias="dateTime")
    date: Optional[str] = Field(None, description="All-day date")
    time_zone: Optional[str] = Field(None, alias="timeZone")


class RemoteAttendee(BaseModel):
    """Remote event attendee."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str = Field("")
    display_name: Optional[str] = Field(None, alias="displayName")


class RemoteEventDraft(BaseModel):
    """Remote event body ready to be sent to the calendar API."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: str = Field("", description="Event title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start: Optional[EventDateTime] = Field(None)
    end: Optional[EventDateTime] = Field(None)
    attendees: List[RemoteAttendee] = Field(default_factory=list)

    def to_api_payload(self) -> Dict[str, Any]:
        """Serialize using the API's camelCase field names."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RemoteEvent(RemoteEventDraft):
    """Event owned by the remote calendar service."""

    id: str = Field(..., description="Remote event ID")
    status: Optional[str] = Field(None)
    created: Optional[str] = Field(None)
    updated: Optional[str] = Field(None)


class SyncSettings(BaseModel):
    """Persisted per-user sync configuration."""

    model_config = ConfigDict(populate_by_name=True)

    auto_sync: bool = Field(True, alias="autoSync")
    sync_interval_minutes: int = Field(15, ge=1, alias="syncIntervalMinutes")
    sync_direction: SyncDirection = Field(SyncDirection.BIDIRECTIONAL, alias="syncDirection")
    last_sync_time: Optional[datetime] = Field(None, alias="lastSyncTime")

    @validator('sync_direction', pre=True)
    def accept_legacy_direction(cls, v):
        """Map the mobile app's historical direction names."""
        if isinstance(v, str) and v in LEGACY_DIRECTION_ALIASES:
            return LEGACY_DIRECTION_ALIASES[v]
        return v

    def to_storage(self) -> Dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class SyncError(BaseModel):
    """A per-item failure recorded during a pass."""

    direction: SyncErrorDirection
    entity_id: str
    message: str


class SyncResult(BaseModel):
    """Outcome of one reconciliation pass."""

    created: int = Field(0)
    updated: int = Field(0)
    deleted: int = Field(0)
    errors: List[SyncError] = Field(default_factory=list)
    sync_time: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))

    @property
    def success(self) -> bool:
        """True when no item failed."""
        return not self.errors

    def record_error(self, direction: SyncErrorDirection, entity_id: str, error: Exception) -> None:
        self.errors.append(SyncError(
            direction=direction,
            entity_id=entity_id,
            message=str(error) or type(error).__name__
        ))


class Conflict(BaseModel):
    """A mapped pair whose two sides disagree."""

    local_meeting: Meeting
    remote_meeting: MeetingDraft
    remote_event_id: str


class SyncStatus(BaseModel):
    """Snapshot for settings screens."""

    is_connected: bool
    auto_sync: bool
    sync_direction: SyncDirection
    last_sync_time: Optional[datetime] = None
    is_syncing: bool
    sync_interval_minutes: int


class SyncStatistics(BaseModel):
    """Counts describing how much of each side is linked."""

    total_local_meetings: int = 0
    total_remote_events: int = 0
    synced_local_meetings: int = 0
    synced_remote_events: int = 0
    orphaned_mappings: int = 0
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    last_sync_time: Optional[datetime] = None
    auto_sync_enabled: bool = False


T = TypeVar('T')


@dataclass
class Converted(Generic[T]):
    value: T
    used_fallback: bool = False
