"""Composition root wiring storage, Google client, sync engine and scheduler."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import Settings
from .database import DatabaseManager
from .events import MeetingEventBus
from .mappings import IdMappingTable
from .meeting_store import MeetingStore, SQLMeetingStore
from .models import SyncSettings
from .scheduler import AutoSyncScheduler
from .services.base import BaseCalendarService
from .services.google import GoogleCalendarClient
from .storage import KeyValueStorage, SQLKeyValueStorage
from .sync_engine import SyncEngine
from .sync_settings import SyncSettingsStore
from .tokens import GoogleTokenRefresher, TokenStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every collaborator of a running sync service."""

    settings: Settings
    storage: KeyValueStorage
    token_store: TokenStore
    mappings: IdMappingTable
    settings_store: SyncSettingsStore
    meeting_store: MeetingStore
    client: BaseCalendarService
    event_bus: MeetingEventBus
    engine: SyncEngine
    scheduler: AutoSyncScheduler
    db_manager: Optional[DatabaseManager] = None

    async def initialize(self) -> bool:
        """Start syncing if Google Calendar access is available.

        Starts the scheduler when auto-sync is enabled and runs an initial
        pass.

        Returns:
            Whether the service started
        """
        try:
            if not await self.token_store.has_valid_access():
                logger.info("Google Calendar access not available")
                return False

            settings = await self.settings_store.load()
            if settings.auto_sync:
                self.scheduler.start(settings.sync_interval_minutes)

            logger.info("Performing initial sync...")
            await self.engine.perform_sync()
            return True

        except Exception as e:
            logger.error(f"Error initializing calendar sync: {e}")
            return False

    async def apply_settings(self, **changes: Any) -> SyncSettings:
        """Update sync settings and start, restart or stop the scheduler."""
        previous = await self.settings_store.load()
        updated = await self.engine.update_sync_settings(**changes)

        if not updated.auto_sync:
            self.scheduler.stop()
        elif (not self.scheduler.is_running
              or updated.sync_interval_minutes != previous.sync_interval_minutes):
            self.scheduler.start(updated.sync_interval_minutes)
        return updated

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.client.aclose()
        if self.db_manager is not None:
            self.db_manager.dispose()


def build_runtime(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    storage: Optional[KeyValueStorage] = None,
    meeting_store: Optional[MeetingStore] = None,
) -> Runtime:
    """Construct the collaborators for ``settings``.

    SQL storage and the SQL meeting store are created unless replacements are
    passed in.
    """
    db_manager = None
    if storage is None or meeting_store is None:
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
    if storage is None:
        storage = SQLKeyValueStorage(db_manager)
    if meeting_store is None:
        meeting_store = SQLMeetingStore(db_manager)

    refresher = GoogleTokenRefresher(settings) if settings.can_refresh_tokens() else None
    token_store = TokenStore(storage, refresher=refresher)
    mappings = IdMappingTable(storage)
    settings_store = SyncSettingsStore(
        storage, default_interval_minutes=settings.default_sync_interval_minutes
    )
    client = GoogleCalendarClient(settings, token_store, http_client=http_client)
    event_bus = MeetingEventBus()

    engine = SyncEngine(
        meeting_store=meeting_store,
        remote=client,
        mappings=mappings,
        settings_store=settings_store,
        token_store=token_store,
        event_bus=event_bus,
        tz=settings.tzinfo,
        past_days=settings.sync_past_days,
        future_days=settings.sync_future_days,
    )
    scheduler = AutoSyncScheduler(engine.perform_sync)

    return Runtime(
        settings=settings,
        storage=storage,
        token_store=token_store,
        mappings=mappings,
        settings_store=settings_store,
        meeting_store=meeting_store,
        client=client,
        event_bus=event_bus,
        engine=engine,
        scheduler=scheduler,
        db_manager=db_manager,
    )
