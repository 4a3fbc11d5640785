"""Persisted one-to-one mapping between local meeting IDs and remote event IDs."""

import logging
from typing import Dict, List, Optional, Tuple

from .storage import KeyValueStorage, MAPPINGS_KEY

logger = logging.getLogger(__name__)


class IdMappingTable:
    """localId <-> remoteId table stored as a single JSON object.

    Every operation re-reads the stored object, so two tables sharing one
    storage always agree. Writes are last-writer-wins.
    """

    def __init__(self, storage: KeyValueStorage, key: str = MAPPINGS_KEY):
        self.storage = storage
        self.key = key

    async def _load(self) -> Dict[str, str]:
        data = await self.storage.get_json(self.key)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Mapping table under '{self.key}' is not an object, treating as empty")
            return {}
        return {
            str(local_id): str(remote_id)
            for local_id, remote_id in data.items()
            if isinstance(remote_id, str) and remote_id
        }

    async def _save(self, mappings: Dict[str, str]) -> None:
        await self.storage.set_json(self.key, mappings)

    async def get(self, local_id: str) -> Optional[str]:
        return (await self._load()).get(local_id)

    async def get_by_remote(self, remote_id: str) -> Optional[str]:
        for local_id, mapped_remote_id in (await self._load()).items():
            if mapped_remote_id == remote_id:
                return local_id
        return None

    async def set(self, local_id: str, remote_id: str) -> None:
        """Map a local meeting to a remote event.

        Overwrites any previous remote ID for ``local_id`` and drops any other
        local ID still pointing at ``remote_id``.
        """
        mappings = await self._load()
        stale = [lid for lid, rid in mappings.items() if rid == remote_id and lid != local_id]
        for lid in stale:
            logger.info(f"Remote event {remote_id} re-mapped from {lid} to {local_id}")
            del mappings[lid]
        mappings[local_id] = remote_id
        await self._save(mappings)

    async def remove(self, local_id: str) -> bool:
        """Remove a mapping; returns whether one existed."""
        mappings = await self._load()
        if local_id not in mappings:
            return False
        del mappings[local_id]
        await self._save(mappings)
        return True

    async def all(self) -> List[Tuple[str, str]]:
        return list((await self._load()).items())

    async def clear(self) -> None:
        await self.storage.remove(self.key)
