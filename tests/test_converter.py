"""Tests for meeting <-> remote event conversion."""

from datetime import datetime, timedelta

import pytest
import pytz
from dateutil.parser import isoparse

from meetsync.converter import (
    compose_start, conflict_fields, from_remote, from_remote_converted, normalize_time,
    remote_matches, schedule_bounds, to_remote, to_remote_converted
)
from meetsync.models import MeetingDraft, MeetingSource, RemoteEvent, StructuredLocation

MADRID = pytz.timezone("Europe/Madrid")


class TestNormalizeTime:
    """Tests for wall-clock time normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("09:00", "09:00:00"),
        ("9:05:30", "09:05:30"),
        ("9", "09:00:00"),
        ("9am", "09:00:00"),
        ("9:30 pm", "21:30:00"),
        ("12 AM", "00:00:00"),
        ("12pm", "12:00:00"),
        ("7 p.m.", "19:00:00"),
    ])
    def test_accepted_forms(self, raw, expected):
        assert normalize_time(raw) == expected

    @pytest.mark.parametrize("raw", ["", "25:00", "13pm", "noon", "9:75", None])
    def test_rejected_forms(self, raw):
        assert normalize_time(raw) is None


class TestToRemote:
    """Tests for local -> remote conversion."""

    def test_start_end_and_zone(self):
        meeting = MeetingDraft(title="Standup", date="2024-01-15", time="9am", duration=30)

        draft = to_remote(meeting, MADRID)

        assert draft.start.date_time == "2024-01-15T09:00:00+01:00"
        assert draft.end.date_time == "2024-01-15T09:30:00+01:00"
        assert draft.start.time_zone == "Europe/Madrid"

    @pytest.mark.parametrize("duration", [None, 0])
    def test_missing_or_zero_duration_defaults_to_hour(self, duration):
        meeting = MeetingDraft(title="Standup", date="2024-01-15", time="09:00", duration=duration)

        draft = to_remote(meeting)

        assert isoparse(draft.end.date_time) - isoparse(draft.start.date_time) == timedelta(hours=1)

    def test_location_and_attendees(self):
        meeting = MeetingDraft(
            title="Review", date="2024-01-15", time="10:00",
            location=StructuredLocation(address="Main St 1", type="physical"),
            participants=[{"name": "Ann", "email": "ann@example.com"}, {"name": "Bo", "email": ""}],
        )

        payload = to_remote(meeting).to_api_payload()

        assert payload["location"] == "Main St 1"
        assert payload["attendees"] == [{"email": "ann@example.com", "displayName": "Ann"}]
        assert payload["start"]["timeZone"] == "UTC"
        assert "dateTime" in payload["start"]

    def test_unparsable_date_falls_back_observably(self, caplog):
        meeting = MeetingDraft(title="Someday", date="next week", time="10:00")
        now = datetime(2024, 1, 15, 8, 20, tzinfo=pytz.UTC)

        converted = to_remote_converted(meeting, pytz.UTC, now=now)

        assert converted.used_fallback is True
        assert converted.value.start.date_time == "2024-01-15T09:20:00+00:00"
        assert "Unparsable meeting date/time" in caplog.text

    def test_meeting_at_end_of_calendar_falls_back(self):
        meeting = MeetingDraft(title="Last call", date="9999-12-31", time="23:30", duration=60)
        now = datetime(2024, 1, 15, 8, 20, tzinfo=pytz.UTC)

        converted = to_remote_converted(meeting, pytz.UTC, now=now)

        assert converted.used_fallback is True
        assert converted.value.start.date_time == "2024-01-15T09:20:00+00:00"
        assert schedule_bounds(meeting) == (None, None)

    def test_valid_input_reports_no_fallback(self):
        converted = compose_start("2024-01-15", "09:00", pytz.UTC)

        assert converted.used_fallback is False
        assert converted.value == datetime(2024, 1, 15, 9, 0, tzinfo=pytz.UTC)


class TestFromRemote:
    """Tests for remote -> local conversion."""

    def test_basic_event(self):
        event = RemoteEvent(
            id="G1", summary="Planning", description="Q1",
            start={"dateTime": "2024-01-16T14:00:00+01:00"},
            end={"dateTime": "2024-01-16T15:30:00+01:00"},
            location="Room 2",
            attendees=[{"email": "ann@example.com", "displayName": "Ann"}, {"email": "bo@example.com"}],
        )

        draft = from_remote(event, MADRID)

        assert draft.title == "Planning"
        assert draft.date == "2024-01-16"
        assert draft.time == "14:00"
        assert draft.duration == 90
        assert draft.location == "Room 2"
        assert [(p.name, p.email) for p in draft.participants] == [
            ("Ann", "ann@example.com"), ("bo", "bo@example.com")
        ]
        assert draft.source == MeetingSource.GOOGLE

    def test_all_day_event(self):
        draft = from_remote({"summary": "Offsite", "start": {"date": "2024-02-01"},
                             "end": {"date": "2024-02-03"}})

        assert draft.date == "2024-02-01"
        assert draft.time == "00:00"
        assert draft.duration == 2 * 24 * 60

    @pytest.mark.parametrize("event", [
        {},
        {"summary": None, "start": None},
        {"summary": "", "start": {"dateTime": "garbage"}, "end": {"dateTime": 5}},
        {"summary": "No end", "start": {"dateTime": "2024-01-16T14:00:00Z"}},
        {"start": {"dateTime": "2024-01-16T14:00:00Z"}, "end": {"dateTime": "2024-01-16T13:00:00Z"}},
        {"summary": 42, "location": {"nested": True}, "attendees": "nobody"},
        {"attendees": [None, {"displayName": "No email"}, {"email": 7}]},
        {"summary": "Year one", "start": {"dateTime": "0001-01-01T00:00:00+05:00"},
         "end": {"dateTime": "0001-01-01T01:00:00+05:00"}},
        {"summary": "Far future", "start": {"dateTime": "9999-12-31T23:00:00-05:00"},
         "end": {"dateTime": "9999-12-31T23:30:00-05:00"}},
        None,
    ])
    def test_never_raises(self, event):
        converted = from_remote_converted(event)

        assert converted.value.title
        assert converted.value.duration == 60 or converted.value.duration > 0
        assert converted.used_fallback is True
        assert converted.value.participants == []

    def test_missing_summary_is_untitled(self):
        draft = from_remote({"start": {"dateTime": "2024-01-16T14:00:00Z"},
                             "end": {"dateTime": "2024-01-16T15:00:00Z"}})

        assert draft.title == "Untitled Event"
        assert draft.duration == 60

    def test_naive_datetime_uses_event_zone(self):
        draft = from_remote({
            "summary": "Call",
            "start": {"dateTime": "2024-01-16T14:00:00", "timeZone": "America/New_York"},
            "end": {"dateTime": "2024-01-16T15:00:00", "timeZone": "America/New_York"},
        }, MADRID)

        assert draft.time == "20:00"


class TestRoundTrip:
    """Tests for conversion stability."""

    @pytest.mark.parametrize("tz_name", ["UTC", "Europe/Madrid", "America/Los_Angeles", "Asia/Kolkata"])
    @pytest.mark.parametrize("time_value, duration", [("09:00", 30), ("11:45:10", 95), ("11pm", None)])
    def test_timestamp_survives_round_trip(self, tz_name, time_value, duration):
        tz = pytz.timezone(tz_name)
        meeting = MeetingDraft(title="Sync", date="2024-03-31", time=time_value, duration=duration)

        first = to_remote(meeting, tz)
        second = to_remote(from_remote(first, tz), tz)

        assert isoparse(second.start.date_time) == isoparse(first.start.date_time)
        assert isoparse(second.end.date_time) == isoparse(first.end.date_time)

    def test_remote_matches_its_own_conversion(self):
        meeting = MeetingDraft(title="Sync", date="2024-01-15", time="9am", location="Room 1",
                               participants=["ann@example.com"])
        event = RemoteEvent(id="G1", **to_remote(meeting).model_dump())

        assert remote_matches(meeting, event)

    def test_conflict_fields_ignore_description(self):
        local = MeetingDraft(title="Sync", description="a", date="2024-01-15", time="09:00")
        remote = MeetingDraft(title="Sync", description="b", date="2024-01-15", time="09:00:00")

        assert conflict_fields(local) == conflict_fields(remote)

    def test_schedule_bounds_without_time(self):
        assert schedule_bounds(MeetingDraft(title="Sync", date="2024-01-15")) == (None, None)
