"""Persisted sync settings."""

import logging
from typing import Any

from pydantic import ValidationError

from .models import SyncSettings
from .storage import KeyValueStorage, SYNC_SETTINGS_KEY

logger = logging.getLogger(__name__)

# Keys renamed since the settings object was first persisted
_LEGACY_KEYS = {
    'syncInterval': 'syncIntervalMinutes',
}


class SyncSettingsStore:
    """Load and save the singleton ``SyncSettings`` record."""

    def __init__(self, storage: KeyValueStorage, key: str = SYNC_SETTINGS_KEY,
                 default_interval_minutes: int = 15):
        self.storage = storage
        self.key = key
        self.default_interval_minutes = default_interval_minutes

    def defaults(self) -> SyncSettings:
        return SyncSettings(sync_interval_minutes=self.default_interval_minutes)

    async def load(self) -> SyncSettings:
        """Read stored settings, falling back to defaults.

        Storage read failures propagate; a corrupt or invalid stored value is
        logged and replaced by defaults.
        """
        data = await self.storage.get_json(self.key)
        if data is None:
            return self.defaults()
        if not isinstance(data, dict):
            logger.warning(f"Sync settings under '{self.key}' are not an object, using defaults")
            return self.defaults()

        for old, new in _LEGACY_KEYS.items():
            if old in data and new not in data:
                data[new] = data.pop(old)

        merged = {**self.defaults().to_storage(), **data}
        try:
            return SyncSettings.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Invalid stored sync settings, using defaults: {e}")
            return self.defaults()

    async def save(self, settings: SyncSettings) -> None:
        await self.storage.set_json(self.key, settings.to_storage())

    async def update(self, **changes: Any) -> SyncSettings:
        """Apply field changes (snake_case names) and persist the result.

        Raises:
            ValueError: For unknown setting names or invalid values
        """
        unknown = set(changes) - set(SyncSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown sync settings: {sorted(unknown)}")
        current = await self.load()
        updated = SyncSettings.model_validate({**current.model_dump(), **changes})
        await self.save(updated)
        return updated
