"""Tests for key-value storage, the mapping table and sync settings."""

import json
import threading
from datetime import datetime

import pytest
import pytz

from meetsync.database import DatabaseManager
from meetsync.mappings import IdMappingTable
from meetsync.models import SyncDirection
from meetsync.storage import InMemoryStorage, MAPPINGS_KEY, SQLKeyValueStorage, SYNC_SETTINGS_KEY
from meetsync.sync_settings import SyncSettingsStore

from conftest import make_settings


@pytest.fixture
def sql_storage(tmp_path):
    db_manager = DatabaseManager(make_settings(tmp_path))
    db_manager.init_db()
    yield SQLKeyValueStorage(db_manager)
    db_manager.dispose()


class TestSQLKeyValueStorage:
    """Tests for the SQLAlchemy-backed storage."""

    @pytest.mark.asyncio
    async def test_set_get_overwrite_remove(self, sql_storage):
        assert await sql_storage.get("k") is None

        await sql_storage.set("k", "one")
        await sql_storage.set("k", "two")
        await sql_storage.set("other", "x")
        assert await sql_storage.get("k") == "two"

        await sql_storage.remove("k", "missing")
        assert await sql_storage.get("k") is None
        assert await sql_storage.get("other") == "x"

    @pytest.mark.asyncio
    async def test_survives_new_manager(self, tmp_path):
        settings = make_settings(tmp_path)
        first = DatabaseManager(settings)
        first.init_db()
        await SQLKeyValueStorage(first).set_json(MAPPINGS_KEY, {"L1": "G1"})
        first.dispose()

        second = DatabaseManager(settings)
        second.init_db()
        assert await SQLKeyValueStorage(second).get_json(MAPPINGS_KEY) == {"L1": "G1"}
        second.dispose()

    @pytest.mark.asyncio
    async def test_corrupt_json_reads_as_none(self, sql_storage):
        await sql_storage.set("k", "{not json")
        assert await sql_storage.get_json("k") is None

    @pytest.mark.asyncio
    async def test_session_work_runs_off_the_event_loop(self, sql_storage):
        loop_thread = threading.get_ident()
        seen = []

        def work(session):
            seen.append(threading.get_ident())
            return "done"

        assert await sql_storage.db_manager.run(work) == "done"
        assert seen and seen[0] != loop_thread

    @pytest.mark.asyncio
    async def test_in_memory_database_shared_across_threads(self, tmp_path):
        db_manager = DatabaseManager(make_settings(tmp_path, database_url="sqlite:///:memory:"))
        db_manager.init_db()
        storage = SQLKeyValueStorage(db_manager)

        for i in range(5):
            await storage.set(f"k{i}", str(i))

        assert [await storage.get(f"k{i}") for i in range(5)] == ["0", "1", "2", "3", "4"]
        db_manager.dispose()


class TestIdMappingTable:
    """Tests for the localId <-> remoteId table."""

    @pytest.mark.asyncio
    async def test_lookups_both_ways(self, mappings):
        await mappings.set("L1", "G1")
        await mappings.set("L2", "G2")

        assert await mappings.get("L1") == "G1"
        assert await mappings.get_by_remote("G2") == "L2"
        assert await mappings.get("L3") is None
        assert await mappings.get_by_remote("G3") is None
        assert await mappings.all() == [("L1", "G1"), ("L2", "G2")]

    @pytest.mark.asyncio
    async def test_set_overwrites_local_id(self, mappings):
        await mappings.set("L1", "G1")
        await mappings.set("L1", "G2")

        assert await mappings.all() == [("L1", "G2")]

    @pytest.mark.asyncio
    async def test_set_keeps_table_one_to_one(self, mappings):
        await mappings.set("L1", "G1")
        await mappings.set("L2", "G1")

        assert await mappings.all() == [("L2", "G1")]
        assert await mappings.get_by_remote("G1") == "L2"

    @pytest.mark.asyncio
    async def test_remove(self, mappings):
        await mappings.set("L1", "G1")

        assert await mappings.remove("L1") is True
        assert await mappings.remove("L1") is False
        assert await mappings.all() == []

    @pytest.mark.asyncio
    async def test_persisted_as_json_object(self, storage, mappings):
        await mappings.set("L1", "G1")

        assert json.loads(storage.data[MAPPINGS_KEY]) == {"L1": "G1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{broken", "[1, 2]", '"text"'])
    async def test_corrupt_value_is_empty_table(self, raw):
        table = IdMappingTable(InMemoryStorage({MAPPINGS_KEY: raw}))

        assert await table.all() == []
        await table.set("L1", "G1")
        assert await table.all() == [("L1", "G1")]

    @pytest.mark.asyncio
    async def test_sql_backed_table(self, sql_storage):
        table = IdMappingTable(sql_storage)
        await table.set("L1", "G1")

        assert await IdMappingTable(sql_storage).get("L1") == "G1"


class TestSyncSettingsStore:
    """Tests for persisted sync settings."""

    @pytest.mark.asyncio
    async def test_defaults_when_nothing_stored(self, settings_store):
        settings = await settings_store.load()

        assert settings.auto_sync is True
        assert settings.sync_interval_minutes == 15
        assert settings.sync_direction == SyncDirection.BIDIRECTIONAL
        assert settings.last_sync_time is None

    @pytest.mark.asyncio
    async def test_update_persists_camel_case(self, storage, settings_store):
        when = datetime(2024, 1, 15, 8, 0, tzinfo=pytz.UTC)
        await settings_store.update(sync_interval_minutes=5, last_sync_time=when)

        stored = json.loads(storage.data[SYNC_SETTINGS_KEY])
        assert stored["syncIntervalMinutes"] == 5
        assert stored["autoSync"] is True
        assert stored["syncDirection"] == "bidirectional"
        assert (await settings_store.load()).last_sync_time == when

    @pytest.mark.asyncio
    async def test_legacy_values_accepted(self):
        storage = InMemoryStorage({
            SYNC_SETTINGS_KEY: json.dumps({"autoSync": False, "syncInterval": 30, "syncDirection": "toGoogle"})
        })

        settings = await SyncSettingsStore(storage).load()

        assert settings.auto_sync is False
        assert settings.sync_interval_minutes == 30
        assert settings.sync_direction == SyncDirection.TO_REMOTE_ONLY

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"syncIntervalMinutes": 0})])
    async def test_invalid_stored_value_gives_defaults(self, raw):
        settings = await SyncSettingsStore(InMemoryStorage({SYNC_SETTINGS_KEY: raw})).load()

        assert settings.sync_interval_minutes == 15

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_and_invalid(self, settings_store):
        with pytest.raises(ValueError):
            await settings_store.update(colour="blue")
        with pytest.raises(ValueError):
            await settings_store.update(sync_interval_minutes=0)

    @pytest.mark.asyncio
    async def test_configured_default_interval(self, storage):
        settings = await SyncSettingsStore(storage, default_interval_minutes=45).load()

        assert settings.sync_interval_minutes == 45
