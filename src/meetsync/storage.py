"""Key-value storage shared by the token store, mapping table and sync settings."""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import pytz
from sqlalchemy.orm import Session

from .database import DatabaseManager, KeyValueDB

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "google_access_token"
REFRESH_TOKEN_KEY = "google_refresh_token"
TOKEN_EXPIRY_KEY = "google_token_expiry"
MAPPINGS_KEY = "google_calendar_mappings"
SYNC_SETTINGS_KEY = "google_calendar_sync_settings"


class KeyValueStorage(ABC):
    """Narrow async key-value interface.

    Implementations raise on genuine I/O failure; a missing key is not a
    failure and reads as ``None``.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def remove(self, *keys: str) -> None:
        pass

    async def get_json(self, key: str) -> Optional[Any]:
        """Read and decode a JSON value.

        Returns:
            Decoded value, or None when the key is absent or holds invalid JSON
        """
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring corrupt JSON stored under '{key}'")
            return None

    async def set_json(self, key: str, value: Any) -> None:
        await self.set(key, json.dumps(value))


class InMemoryStorage(KeyValueStorage):
    """Process-local storage, mostly for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, *keys: str) -> None:
        for key in keys:
            self.data.pop(key, None)


class SQLKeyValueStorage(KeyValueStorage):
    """Storage persisted in the ``kv_store`` table."""

    def __init__(self, db_manager: DatabaseManager):
        """Initialize SQL storage.

        Args:
            db_manager: Database manager whose tables are already created
        """
        self.db_manager = db_manager

    async def get(self, key: str) -> Optional[str]:
        def read(session: Session) -> Optional[str]:
            row = session.get(KeyValueDB, key)
            return row.value if row is not None else None

        return await self.db_manager.run(read)

    async def set(self, key: str, value: str) -> None:
        def write(session: Session) -> None:
            row = session.get(KeyValueDB, key)
            if row is None:
                session.add(KeyValueDB(key=key, value=value))
            else:
                row.value = value
                row.updated_at = datetime.now(pytz.UTC)
            session.commit()

        await self.db_manager.run(write)

    async def remove(self, *keys: str) -> None:
        if not keys:
            return

        def delete(session: Session) -> None:
            session.query(KeyValueDB).filter(KeyValueDB.key.in_(keys)).delete(
                synchronize_session=False
            )
            session.commit()

        await self.db_manager.run(delete)
