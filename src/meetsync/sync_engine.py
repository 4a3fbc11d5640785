"""Bidirectional sync engine between the local meeting store and Google Calendar."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytz

from .converter import (
    from_remote, from_remote_converted, remote_matches,
    sync_fingerprint, conflict_fields, to_remote_converted
)
from .events import MeetingCreated, MeetingDeleted, MeetingEventBus, MeetingUpdated
from .mappings import IdMappingTable
from .meeting_store import MeetingStore
from .models import (
    Conflict, ConflictPolicy, Meeting, MeetingDraft, Participant, RemoteEvent,
    RemoteEventDraft, SyncDirection, SyncErrorDirection, SyncResult, SyncSettings,
    SyncStatistics, SyncStatus, location_text
)
from .services.base import BaseCalendarService, CalendarServiceError, EventNotFoundError
from .sync_settings import SyncSettingsStore
from .tokens import TokenStore

logger = logging.getLogger(__name__)

# Policy names used by the mobile app before the enum was introduced
LEGACY_POLICY_ALIASES = {
    'keep_app': ConflictPolicy.KEEP_LOCAL,
    'keep_google': ConflictPolicy.KEEP_REMOTE,
}

WEBHOOK_SYNC_STATES = {'sync', 'exists'}

_CONTENT_FIELDS = ('title', 'description', 'date', 'time', 'duration', 'location', 'participants')


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def merge_participants(primary: List[Participant], secondary: List[Participant]) -> List[Participant]:
    """Union of two participant lists keyed by email (name when no email), primary order first."""
    merged: List[Participant] = []
    seen = set()
    for participant in list(primary) + list(secondary):
        key = participant.key()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(participant)
    return merged


class SyncEngine:
    """Reconciles the local meeting store with a remote calendar."""

    def __init__(
        self,
        meeting_store: MeetingStore,
        remote: BaseCalendarService,
        mappings: IdMappingTable,
        settings_store: SyncSettingsStore,
        token_store: Optional[TokenStore] = None,
        event_bus: Optional[MeetingEventBus] = None,
        tz=pytz.UTC,
        past_days: int = 0,
        future_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize sync engine.

        Args:
            meeting_store: Local meeting store
            remote: Remote calendar client
            mappings: localId <-> remoteId table
            settings_store: Persisted sync settings
            token_store: Used to skip remote writes while disconnected
            event_bus: Receives meeting lifecycle events
            tz: Device timezone used for conversions and the default window
            past_days: Days before today included in the default window
            future_days: Days after today included in the default window
            clock: Current UTC time
        """
        self.meeting_store = meeting_store
        self.remote = remote
        self.mappings = mappings
        self.settings_store = settings_store
        self.token_store = token_store
        self.event_bus = event_bus or MeetingEventBus()
        self.tz = tz
        self.past_days = past_days
        self.future_days = future_days
        self.clock = clock
        self.logger = logger.getChild('sync_engine')
        self._is_syncing = False
        self._callback_unsubscribers: List[Callable[[], None]] = []
        # Remote events listed by the current pass, keyed by ID
        self._remote_cache: Dict[str, RemoteEvent] = {}

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def set_callbacks(
        self,
        on_meeting_created: Optional[Callable[[Meeting], Any]] = None,
        on_meeting_updated: Optional[Callable[[Meeting], Any]] = None,
        on_meeting_deleted: Optional[Callable[[str], Any]] = None,
    ) -> None:
        """Register plain lifecycle callbacks on the event bus.

        Calling again replaces the callbacks registered by the previous call.
        """
        for unsubscribe in self._callback_unsubscribers:
            unsubscribe()
        self._callback_unsubscribers = []

        if on_meeting_created is not None:
            self._callback_unsubscribers.append(self.event_bus.subscribe(
                MeetingCreated, lambda event: on_meeting_created(event.meeting)
            ))
        if on_meeting_updated is not None:
            self._callback_unsubscribers.append(self.event_bus.subscribe(
                MeetingUpdated, lambda event: on_meeting_updated(event.meeting)
            ))
        if on_meeting_deleted is not None:
            self._callback_unsubscribers.append(self.event_bus.subscribe(
                MeetingDeleted, lambda event: on_meeting_deleted(event.meeting_id)
            ))

    def default_window(self) -> Tuple[datetime, datetime]:
        """Local midnight ``past_days`` ago through ``future_days`` ahead."""
        now = self.clock().astimezone(self.tz)
        midnight = self.tz.localize(datetime(now.year, now.month, now.day))
        return midnight - timedelta(days=self.past_days), midnight + timedelta(days=self.future_days)

    def _to_remote(self, meeting: MeetingDraft) -> RemoteEventDraft:
        converted = to_remote_converted(meeting, self.tz)
        if converted.used_fallback:
            entity = getattr(meeting, 'id', meeting.title)
            self.logger.warning(f"Meeting {entity} has an unparsable date/time, sent with a default start")
        return converted.value

    async def perform_sync(
        self,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> Optional[SyncResult]:
        """Run one full reconciliation pass.

        Args:
            time_min: Start of the remote window (default window when omitted)
            time_max: End of the remote window

        Returns:
            Pass result, or None when another pass is already running

        Raises:
            Exception: Storage failures reading sync settings or mappings
        """
        if self._is_syncing:
            self.logger.info("Sync already in progress, skipping")
            return None

        self._is_syncing = True
        try:
            settings = await self.settings_store.load()
            result = SyncResult(sync_time=self.clock())
            direction = settings.sync_direction
            self.logger.info(f"Starting calendar sync ({direction.value})")

            if direction != SyncDirection.TO_REMOTE_ONLY:
                await self.sync_from_remote(result, time_min, time_max)
            if direction != SyncDirection.FROM_REMOTE_ONLY:
                await self.sync_to_remote(result)

            await self.settings_store.update(last_sync_time=result.sync_time)

            self.logger.info(
                f"Calendar sync completed: {result.created} created, {result.updated} updated, "
                f"{result.deleted} deleted, {len(result.errors)} errors"
            )
            return result
        finally:
            self._is_syncing = False
            self._remote_cache = {}

    async def force_sync(self) -> Optional[SyncResult]:
        self.logger.info("Force sync requested")
        return await self.perform_sync()

    async def _publish(self, event: Any, result: Optional[SyncResult] = None,
                       entity_id: Optional[str] = None) -> None:
        failures = await self.event_bus.publish(event)
        if result is not None:
            for failure in failures:
                result.record_error(SyncErrorDirection.REMOTE_TO_LOCAL, entity_id, failure)

    def _local_changes(self, meeting: Meeting, draft: MeetingDraft) -> Dict[str, Any]:
        """Fields of ``draft`` that differ meaningfully from ``meeting``."""
        current = sync_fingerprint(meeting, self.tz)
        incoming = sync_fingerprint(draft, self.tz)
        if current == incoming:
            return {}

        changes: Dict[str, Any] = {}
        if current['title'] != incoming['title']:
            changes['title'] = draft.title
        if current['description'] != incoming['description']:
            changes['description'] = draft.description
        if (current['start'], current['end']) != (incoming['start'], incoming['end']):
            changes.update(date=draft.date, time=draft.time, duration=draft.duration)
        if current['location'] != incoming['location']:
            changes['location'] = draft.location
        if current['emails'] != incoming['emails']:
            changes['participants'] = draft.participants
        return changes

    async def sync_from_remote(
        self,
        result: SyncResult,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
    ) -> None:
        """Import remote events in the window into the local store."""
        if time_min is None or time_max is None:
            default_min, default_max = self.default_window()
            time_min = time_min or default_min
            time_max = time_max or default_max

        try:
            events = await self.remote.list_events(time_min, time_max)
        except Exception as e:
            self.logger.error(f"Error listing Google Calendar events: {e}")
            result.record_error(SyncErrorDirection.REMOTE_TO_LOCAL, "remote_events", e)
            return

        local_by_remote = {remote_id: local_id for local_id, remote_id in await self.mappings.all()}
        self._remote_cache = {event.id: event for event in events}
        self.logger.debug(f"Fetched {len(events)} Google events")

        for event in events:
            try:
                await self._import_event(event, local_by_remote.get(event.id), result)
            except Exception as e:
                self.logger.error(f"Error syncing Google event {event.id}: {e}")
                result.record_error(SyncErrorDirection.REMOTE_TO_LOCAL, event.id, e)

    async def _import_event(self, event: RemoteEvent, local_id: Optional[str], result: SyncResult) -> None:
        converted = from_remote_converted(event, self.tz)
        if converted.used_fallback:
            self.logger.warning(f"Google event {event.id} is incomplete, imported with defaults")
        draft = converted.value

        if local_id:
            meeting = await self.meeting_store.get(local_id)
            if meeting is not None:
                changes = self._local_changes(meeting, draft)
                if not changes:
                    return
                updated = await self.meeting_store.update(local_id, changes)
                result.updated += 1
                self.logger.debug(f"Updated meeting {local_id} from Google event {event.id}")
                await self._publish(MeetingUpdated(updated), result, event.id)
                return

            self.logger.info(f"Meeting {local_id} mapped to {event.id} no longer exists, re-importing")
            await self.mappings.remove(local_id)

        created = await self.meeting_store.create(draft)
        await self.mappings.set(created.id, event.id)
        result.created += 1
        self.logger.info(f"Imported Google event {event.id} as meeting {created.id}: {created.title}")
        await self._publish(MeetingCreated(created), result, event.id)

    async def sync_to_remote(self, result: SyncResult) -> None:
        """Push scheduled local meetings to the remote calendar."""
        if self.token_store is not None and not await self.token_store.has_valid_access():
            self.logger.info("Google Calendar not connected, skipping upload")
            return

        try:
            meetings = await self.meeting_store.list()
        except Exception as e:
            self.logger.error(f"Error listing local meetings: {e}")
            result.record_error(SyncErrorDirection.LOCAL_TO_REMOTE, "local_meetings", e)
            return

        remote_by_local = dict(await self.mappings.all())
        cache = self._remote_cache

        for meeting in meetings:
            if not meeting.has_schedule():
                self.logger.debug(f"Skipping meeting without date/time: {meeting.id}")
                continue
            try:
                remote_id = remote_by_local.get(meeting.id)
                if remote_id:
                    if await self._push_update(meeting, remote_id, cache.get(remote_id)):
                        result.updated += 1
                elif await self._push_create(meeting):
                    result.created += 1
            except Exception as e:
                self.logger.error(f"Error syncing meeting {meeting.id} to Google: {e}")
                result.record_error(SyncErrorDirection.LOCAL_TO_REMOTE, meeting.id, e)

    async def _push_update(self, meeting: Meeting, remote_id: str,
                           current: Optional[RemoteEvent] = None) -> bool:
        """Update the mapped remote event; False when unchanged or the update failed."""
        if current is None:
            current = await self.remote.get_event(remote_id)
        if current is not None and remote_matches(meeting, current, self.tz):
            return False

        updated = await self.remote.update_event(remote_id, self._to_remote(meeting))
        if updated is None:
            self.logger.warning(f"Failed to update Google event {remote_id} for meeting {meeting.id}")
            return False
        self.logger.debug(f"Updated Google event {remote_id} from meeting {meeting.id}")
        return True

    async def _push_create(self, meeting: Meeting) -> bool:
        created = await self.remote.create_event(self._to_remote(meeting))
        if created is None or not created.id:
            self.logger.warning(f"Failed to create Google event for meeting {meeting.id}")
            return False
        await self.mappings.set(meeting.id, created.id)
        self.logger.info(f"Created Google event {created.id} for meeting {meeting.id}")
        return True

    async def sync_event_to_remote(self, local_id: str) -> bool:
        """Push one meeting right after a local create or update.

        Returns:
            True only when the remote side confirmed the write
        """
        try:
            meeting = await self.meeting_store.get(local_id)
            if meeting is None:
                self.logger.error(f"Meeting not found: {local_id}")
                return False
            if not meeting.has_schedule():
                self.logger.info(f"Skipping meeting without date/time: {local_id}")
                return False

            remote_id = await self.mappings.get(local_id)
            if remote_id:
                updated = await self.remote.update_event(remote_id, self._to_remote(meeting))
                return updated is not None
            return await self._push_create(meeting)

        except Exception as e:
            self.logger.error(f"Error syncing meeting {local_id} to Google: {e}")
            return False

    sync_event_to_google = sync_event_to_remote

    async def delete_from_both(self, local_id: str) -> bool:
        """Delete a meeting locally and, when mapped, remotely.

        The local delete is authoritative: a remote failure is only logged
        and the mapping is removed either way.

        Raises:
            MeetingNotFoundError: If the local meeting does not exist
        """
        remote_id = await self.mappings.get(local_id)

        await self.meeting_store.delete(local_id)
        self.logger.info(f"Deleted meeting {local_id}")

        if remote_id:
            try:
                await self.remote.delete_event(remote_id)
                self.logger.info(f"Deleted Google event {remote_id}")
            except EventNotFoundError:
                self.logger.info(f"Google event {remote_id} was already gone")
            except Exception as e:
                self.logger.error(f"Error deleting Google event {remote_id}: {e}")

        await self.mappings.remove(local_id)
        await self._publish(MeetingDeleted(local_id))
        return True

    async def get_conflicts(self) -> List[Conflict]:
        """Mapped pairs whose title, start, end or location disagree."""
        conflicts = []
        for local_id, remote_id in await self.mappings.all():
            meeting = await self.meeting_store.get(local_id)
            if meeting is None:
                continue
            event = await self.remote.get_event(remote_id)
            if event is None:
                continue

            remote_meeting = from_remote(event, self.tz)
            if conflict_fields(meeting, self.tz) != conflict_fields(remote_meeting, self.tz):
                conflicts.append(Conflict(
                    local_meeting=meeting,
                    remote_meeting=remote_meeting,
                    remote_event_id=remote_id,
                ))

        self.logger.info(f"Found {len(conflicts)} sync conflicts")
        return conflicts

    async def resolve_conflict(self, conflict: Conflict, policy: Union[ConflictPolicy, str]) -> bool:
        """Resolve a conflict.

        ``merge`` keeps local data as the base, fills an empty description or
        location from the remote side, unions participants, and writes the
        result to both sides. A concurrent edit between fetching the conflict
        and writing is not detected.

        Returns:
            Whether every write succeeded

        Raises:
            ValueError: Unknown policy
        """
        if isinstance(policy, str) and policy in LEGACY_POLICY_ALIASES:
            policy = LEGACY_POLICY_ALIASES[policy]
        policy = ConflictPolicy(policy)

        local = conflict.local_meeting
        remote_meeting = conflict.remote_meeting
        remote_id = conflict.remote_event_id

        if policy == ConflictPolicy.KEEP_LOCAL:
            pushed = await self.remote.update_event(remote_id, self._to_remote(local))
            resolved = pushed is not None

        elif policy == ConflictPolicy.KEEP_REMOTE:
            updated = await self.meeting_store.update(
                local.id, remote_meeting.model_dump(include=set(_CONTENT_FIELDS))
            )
            await self._publish(MeetingUpdated(updated))
            resolved = True

        else:
            merged_fields: Dict[str, Any] = {
                'description': local.description or remote_meeting.description,
                'location': local.location if location_text(local.location) else remote_meeting.location,
                'participants': merge_participants(local.participants, remote_meeting.participants),
            }
            updated = await self.meeting_store.update(local.id, merged_fields)
            await self._publish(MeetingUpdated(updated))
            pushed = await self.remote.update_event(remote_id, self._to_remote(updated))
            resolved = pushed is not None

        self.logger.info(f"Conflict for meeting {local.id} resolved with {policy.value}")
        return resolved

    async def cleanup_orphan_mappings(self) -> int:
        """Remove mappings whose local meeting or remote event no longer exists.

        A mapping is only removed when its counterpart is confirmed absent;
        pairs whose remote event cannot be read are kept for a later run.

        Returns:
            Number of mappings removed
        """
        check_remote = self.token_store is None or await self.token_store.has_valid_access()
        if not check_remote:
            self.logger.info("Google Calendar not connected, only checking local meetings")

        removed = 0
        for local_id, remote_id in await self.mappings.all():
            exists = await self.meeting_store.get(local_id) is not None
            if exists and check_remote:
                try:
                    exists = await self.remote.event_exists(remote_id)
                except CalendarServiceError as e:
                    self.logger.warning(f"Keeping mapping {local_id} -> {remote_id}, event unreadable: {e}")
                    continue
            if not exists:
                await self.mappings.remove(local_id)
                removed += 1

        self.logger.info(f"Cleaned up {removed} orphaned mappings")
        return removed

    async def get_sync_status(self) -> SyncStatus:
        """Connection and settings snapshot; never raises."""
        try:
            settings = await self.settings_store.load()
            connected = await self.token_store.has_valid_access() if self.token_store else True
        except Exception as e:
            self.logger.error(f"Error getting sync status: {e}")
            settings = SyncSettings(auto_sync=False)
            connected = False

        return SyncStatus(
            is_connected=connected,
            auto_sync=settings.auto_sync,
            sync_direction=settings.sync_direction,
            last_sync_time=settings.last_sync_time,
            is_syncing=self._is_syncing,
            sync_interval_minutes=settings.sync_interval_minutes,
        )

    async def get_sync_statistics(self) -> SyncStatistics:
        """How many meetings and events are linked, over the default window."""
        meetings = await self.meeting_store.list()
        events = await self.remote.list_events(*self.default_window())
        mappings = dict(await self.mappings.all())
        settings = await self.settings_store.load()

        mapped_remote_ids = set(mappings.values())
        synced_local = [m for m in meetings if m.id in mappings]
        synced_remote = [e for e in events if e.id in mapped_remote_ids]

        return SyncStatistics(
            total_local_meetings=len(meetings),
            total_remote_events=len(events),
            synced_local_meetings=len(synced_local),
            synced_remote_events=len(synced_remote),
            orphaned_mappings=len(mappings) - len(synced_local),
            sync_direction=settings.sync_direction,
            last_sync_time=settings.last_sync_time,
            auto_sync_enabled=settings.auto_sync,
        )

    async def update_sync_settings(self, **changes: Any) -> SyncSettings:
        updated = await self.settings_store.update(**changes)
        self.logger.info(f"Sync settings updated: {updated.to_storage()}")
        return updated

    async def handle_webhook(self, resource_state: Optional[str]) -> bool:
        """React to a Google push notification.

        Returns:
            False when the triggered pass failed
        """
        self.logger.info(f"Google Calendar notification: {resource_state}")
        if resource_state not in WEBHOOK_SYNC_STATES:
            return True
        try:
            await self.perform_sync()
        except Exception as e:
            self.logger.error(f"Error handling Google Calendar notification: {e}")
            return False
        return True
