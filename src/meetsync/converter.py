"""Conversion between local meetings and Google Calendar events.

Everything here is pure and never talks to storage or the network. Both
directions are best-effort: unparsable input degrades to documented defaults
instead of raising, and the ``*_converted`` variants report whether a default
was used so callers can tell degraded output from faithful output.
"""

import logging
import re
from datetime import date, datetime, time as dtime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dateutil.parser import isoparse
import pytz

from .models import (
    Converted, EventDateTime, MeetingDraft, MeetingSource, Participant,
    RemoteAttendee, RemoteEvent, RemoteEventDraft, location_text
)

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
UNTITLED_EVENT = "Untitled Event"

_TIME_RE = re.compile(
    r'^\s*(\d{1,2})(?:[:.](\d{2}))?(?::(\d{2}))?\s*([ap])\.?\s*m?\.?\s*$|'
    r'^\s*(\d{1,2})(?::(\d{2}))?(?::(\d{2}))?\s*$',
    re.IGNORECASE
)


def _localize(tz, naive: datetime) -> datetime:
    if hasattr(tz, 'localize'):
        return tz.localize(naive)
    return naive.replace(tzinfo=tz)


def zone_name(tz) -> str:
    """IANA name of a zone object, UTC when it has none."""
    return getattr(tz, 'zone', None) or 'UTC'


def normalize_time(value: Any) -> Optional[str]:
    """Normalize a wall-clock time to 24-hour ``HH:MM:SS``.

    Accepts ``HH:MM``, ``HH:MM:SS``, a bare hour and 12-hour forms such as
    ``9am``, ``9:30 pm`` or ``12 AM``.

    Returns:
        Normalized time, or None when the value is not a time
    """
    if value is None:
        return None
    if isinstance(value, dtime):
        return value.strftime('%H:%M:%S')

    match = _TIME_RE.match(str(value))
    if not match:
        return None

    if match.group(4):
        hour, minute, second = match.group(1), match.group(2), match.group(3)
        hour = int(hour)
        if hour < 1 or hour > 12:
            return None
        is_pm = match.group(4).lower() == 'p'
        hour = hour % 12 + (12 if is_pm else 0)
    else:
        hour, minute, second = int(match.group(5)), match.group(6), match.group(7)

    minute = int(minute or 0)
    second = int(second or 0)
    if hour > 23 or minute > 59 or second > 59:
        return None
    return f"{hour:02d}:{minute:02d}:{second:02d}"


def parse_date(value: Any) -> Optional[date]:
    """Parse ``YYYY-MM-DD`` (a trailing time part is ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value.strip()) < 10:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def effective_duration(duration: Any) -> int:
    """Duration in minutes; absent or non-positive becomes the default."""
    try:
        minutes = int(duration)
    except (TypeError, ValueError):
        return DEFAULT_DURATION_MINUTES
    return minutes if minutes > 0 else DEFAULT_DURATION_MINUTES


def _fallback_start(tz, now: Optional[datetime] = None) -> datetime:
    current = now.astimezone(tz) if now is not None else datetime.now(tz)
    return (current + timedelta(hours=1)).replace(second=0, microsecond=0)


def compose_start(date_value: Any, time_value: Any, tz=pytz.UTC,
                  now: Optional[datetime] = None) -> Converted[datetime]:
    """Combine a date and a wall-clock time into an aware start timestamp.

    Falls back to now + 1 hour when either part cannot be parsed.
    """
    day = parse_date(date_value)
    clock = normalize_time(time_value)
    if day is None or clock is None:
        fallback = _fallback_start(tz, now)
        logger.warning(
            f"Unparsable meeting date/time ({date_value!r}, {time_value!r}); "
            f"defaulting start to {fallback.isoformat()}"
        )
        return Converted(fallback, used_fallback=True)

    hour, minute, second = (int(part) for part in clock.split(':'))
    naive = datetime.combine(day, dtime(hour, minute, second))
    try:
        return Converted(_localize(tz, naive))
    except (ValueError, OverflowError):
        fallback = _fallback_start(tz, now)
        logger.warning(f"Meeting date {date_value!r} is out of range; defaulting start to {fallback.isoformat()}")
        return Converted(fallback, used_fallback=True)


def schedule_bounds(draft: MeetingDraft, tz=pytz.UTC) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Start and end instants of a meeting, (None, None) when not schedulable."""
    if not draft.has_schedule():
        return None, None
    start = compose_start(draft.date, draft.time, tz)
    if start.used_fallback:
        return None, None
    try:
        return start.value, start.value + timedelta(minutes=effective_duration(draft.duration))
    except OverflowError:
        return None, None


def to_remote_converted(meeting: MeetingDraft, tz=pytz.UTC,
                        now: Optional[datetime] = None) -> Converted[RemoteEventDraft]:
    """Convert a meeting to a remote event body, reporting start fallbacks."""
    start = compose_start(meeting.date, meeting.time, tz, now=now)
    duration = timedelta(minutes=effective_duration(meeting.duration))
    try:
        end = start.value + duration
    except OverflowError:
        start = Converted(_fallback_start(tz, now), used_fallback=True)
        logger.warning(f"Meeting ends past the supported range; defaulting start to {start.value.isoformat()}")
        end = start.value + duration
    tz_label = zone_name(tz)

    attendees = [
        RemoteAttendee(email=p.email, display_name=p.name or None)
        for p in meeting.participants
        if p.email
    ]

    draft = RemoteEventDraft(
        summary=meeting.title,
        description=meeting.description or None,
        location=location_text(meeting.location) or None,
        start=EventDateTime(date_time=start.value.isoformat(), time_zone=tz_label),
        end=EventDateTime(date_time=end.isoformat(), time_zone=tz_label),
        attendees=attendees,
    )
    return Converted(draft, used_fallback=start.used_fallback)


def to_remote(meeting: MeetingDraft, tz=pytz.UTC) -> RemoteEventDraft:
    return to_remote_converted(meeting, tz).value


def _as_mapping(event: Any) -> Mapping[str, Any]:
    if isinstance(event, RemoteEventDraft):
        return event.model_dump(by_alias=True)
    if isinstance(event, Mapping):
        return event
    return {}


def _parse_bound(bound: Any, tz) -> Tuple[Optional[datetime], bool]:
    """Parse an event start/end; returns (local datetime, is_all_day)."""
    if not isinstance(bound, Mapping):
        return None, False

    raw = bound.get('dateTime')
    if isinstance(raw, str) and raw:
        # Instants near datetime.min/max overflow when shifted between zones
        try:
            parsed = isoparse(raw)
            if parsed.tzinfo is None:
                bound_zone = bound.get('timeZone')
                zone = pytz.timezone(bound_zone) if bound_zone in pytz.all_timezones_set else tz
                parsed = _localize(zone, parsed)
            return parsed.astimezone(tz), False
        except (ValueError, OverflowError):
            return None, False

    day = parse_date(bound.get('date'))
    if day is not None:
        try:
            return _localize(tz, datetime.combine(day, dtime(0, 0))), True
        except (ValueError, OverflowError):
            return None, False

    return None, False


def _participants(attendees: Any) -> List[Participant]:
    if not isinstance(attendees, list):
        return []
    participants = []
    for attendee in attendees:
        if not isinstance(attendee, Mapping):
            continue
        email = attendee.get('email')
        if not isinstance(email, str) or not email:
            continue
        name = attendee.get('displayName')
        if not isinstance(name, str) or not name:
            name = email.split('@')[0]
        participants.append(Participant(name=name, email=email))
    return participants


def _format_clock(moment: datetime) -> str:
    if moment.second:
        return moment.strftime('%H:%M:%S')
    return moment.strftime('%H:%M')


def from_remote_converted(event: Any, tz=pytz.UTC) -> Converted[MeetingDraft]:
    """Convert a remote event (model or raw API dict) to a meeting draft.

    Never raises. ``used_fallback`` is set when the title, start or duration
    had to be defaulted.
    """
    data = _as_mapping(event)
    used_fallback = False

    title = data.get('summary')
    if not isinstance(title, str) or not title.strip():
        title = UNTITLED_EVENT
        used_fallback = True

    description = data.get('description')
    if not isinstance(description, str):
        description = None

    location = data.get('location')
    if not isinstance(location, str):
        location = ""

    start, all_day = _parse_bound(data.get('start'), tz)
    end, _ = _parse_bound(data.get('end'), tz)

    meeting_date: Optional[str] = None
    meeting_time: Optional[str] = None
    duration = DEFAULT_DURATION_MINUTES
    if start is None:
        used_fallback = True
    else:
        meeting_date = start.date().isoformat()
        meeting_time = "00:00" if all_day else _format_clock(start)
        if end is not None and end >= start:
            duration = int((end - start).total_seconds() // 60)
        else:
            used_fallback = True

    draft = MeetingDraft(
        title=title,
        description=description,
        date=meeting_date,
        time=meeting_time,
        duration=duration,
        location=location,
        participants=_participants(data.get('attendees')),
        source=MeetingSource.GOOGLE,
    )
    return Converted(draft, used_fallback=used_fallback)


def from_remote(event: Any, tz=pytz.UTC) -> MeetingDraft:
    return from_remote_converted(event, tz).value


def sync_fingerprint(draft: MeetingDraft, tz=pytz.UTC) -> Dict[str, Any]:
    """Fields both sides can represent, used to detect real changes."""
    start, end = schedule_bounds(draft, tz)
    return {
        'title': draft.title.strip(),
        'description': (draft.description or '').strip(),
        'start': start,
        'end': end,
        'location': location_text(draft.location).strip(),
        'emails': sorted({p.email.strip().lower() for p in draft.participants if p.email}),
    }


def conflict_fields(draft: MeetingDraft, tz=pytz.UTC) -> Dict[str, Any]:
    """Title, start, end and location, the fields compared for conflicts."""
    fingerprint = sync_fingerprint(draft, tz)
    return {key: fingerprint[key] for key in ('title', 'start', 'end', 'location')}


def remote_matches(draft: MeetingDraft, event: RemoteEvent, tz=pytz.UTC) -> bool:
    """Whether a remote event already reflects a meeting's content."""
    return sync_fingerprint(draft, tz) == sync_fingerprint(from_remote(event, tz), tz)
