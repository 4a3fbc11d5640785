"""Local meeting persistence."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel
import pytz
from sqlalchemy.orm import Session

from .database import DatabaseManager, MeetingDB
from .models import Meeting, MeetingDraft, MeetingPatch, MeetingSource, StructuredLocation

logger = logging.getLogger(__name__)

Patch = Union[MeetingPatch, MeetingDraft, Mapping[str, Any]]


class MeetingNotFoundError(LookupError):
    """Raised when updating or deleting a meeting that does not exist."""
    pass


def patch_fields(patch: Patch) -> Dict[str, Any]:
    """Fields a patch explicitly sets, as plain python values."""
    if isinstance(patch, BaseModel):
        return patch.model_dump(exclude_unset=True)
    return dict(patch)


class MeetingStore(ABC):
    """CRUD over locally persisted meetings.

    Implementations raise on genuine I/O failure.
    """

    @abstractmethod
    async def list(self) -> List[Meeting]:
        pass

    @abstractmethod
    async def get(self, meeting_id: str) -> Optional[Meeting]:
        pass

    @abstractmethod
    async def create(self, draft: MeetingDraft) -> Meeting:
        pass

    @abstractmethod
    async def update(self, meeting_id: str, patch: Patch) -> Meeting:
        """Apply the explicitly set fields of ``patch``.

        Raises:
            MeetingNotFoundError: If no meeting has this ID
        """
        pass

    @abstractmethod
    async def delete(self, meeting_id: str) -> None:
        """Delete a meeting.

        Raises:
            MeetingNotFoundError: If no meeting has this ID
        """
        pass


def _dump_location(location: Any) -> Optional[str]:
    if location is None:
        return None
    if isinstance(location, StructuredLocation):
        location = location.model_dump()
    return json.dumps(location)


def _load_location(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # Rows written by hand may hold a bare string
        return raw


class SQLMeetingStore(MeetingStore):
    """Meeting store backed by the ``meetings`` table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def _to_model(self, row: MeetingDB) -> Meeting:
        created_at = row.created_at
        updated_at = row.updated_at
        # SQLite drops tzinfo
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=pytz.UTC)
        if updated_at is not None and updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=pytz.UTC)

        return Meeting(
            id=row.id,
            title=row.title,
            description=row.description,
            date=row.date,
            time=row.time,
            duration=row.duration,
            location=_load_location(row.location),
            participants=json.loads(row.participants or '[]'),
            source=MeetingSource(row.source),
            created_at=created_at,
            updated_at=updated_at,
        )

    def _apply(self, row: MeetingDB, fields: Dict[str, Any]) -> None:
        for name, value in fields.items():
            if name == 'location':
                row.location = _dump_location(value)
            elif name == 'participants':
                row.participants = json.dumps(value or [])
            elif name == 'source':
                row.source = MeetingSource(value).value
            elif name in ('title', 'description', 'date', 'time', 'duration'):
                setattr(row, name, value)

    async def list(self) -> List[Meeting]:
        def read(session: Session) -> List[Meeting]:
            rows = session.query(MeetingDB).order_by(MeetingDB.date, MeetingDB.time).all()
            return [self._to_model(row) for row in rows]

        return await self.db_manager.run(read)

    async def get(self, meeting_id: str) -> Optional[Meeting]:
        def read(session: Session) -> Optional[Meeting]:
            row = session.get(MeetingDB, meeting_id)
            return self._to_model(row) if row is not None else None

        return await self.db_manager.run(read)

    async def create(self, draft: MeetingDraft) -> Meeting:
        now = datetime.now(pytz.UTC)
        meeting = Meeting(id=uuid4().hex, created_at=now, updated_at=now,
                          **draft.model_dump(exclude={'id', 'created_at', 'updated_at'}))

        def insert(session: Session) -> None:
            row = MeetingDB(id=meeting.id, created_at=now, updated_at=now)
            self._apply(row, meeting.model_dump(mode='json', exclude={'id', 'created_at', 'updated_at'}))
            session.add(row)
            session.commit()

        await self.db_manager.run(insert)
        logger.debug(f"Created meeting {meeting.id}: {meeting.title}")
        return meeting

    async def update(self, meeting_id: str, patch: Patch) -> Meeting:
        fields = patch_fields(patch)

        def write(session: Session) -> Meeting:
            row = session.get(MeetingDB, meeting_id)
            if row is None:
                raise MeetingNotFoundError(f"Meeting {meeting_id} not found")
            current = self._to_model(row)
            # Validate the merged record before touching the row
            merged = Meeting(**{**current.model_dump(), **fields, 'id': meeting_id})
            self._apply(row, merged.model_dump(mode='json', include=set(fields)))
            row.updated_at = datetime.now(pytz.UTC)
            session.commit()
            return self._to_model(row)

        return await self.db_manager.run(write)

    async def delete(self, meeting_id: str) -> None:
        def remove(session: Session) -> None:
            row = session.get(MeetingDB, meeting_id)
            if row is None:
                raise MeetingNotFoundError(f"Meeting {meeting_id} not found")
            session.delete(row)
            session.commit()

        await self.db_manager.run(remove)
