"""Last-write-wins snapshots of entity collections."""

from __future__ import annotations

import json
import logging
from typing import Iterable, List, Optional

from .errors import CacheError
from .models import CacheSnapshot, Record, utc_now
from .protocol import Clock, Storage

logger = logging.getLogger("crmsync.sync.snapshot")

SNAPSHOT_KEY_PREFIX = "snapshot:"


def snapshot_key(entity_type: str) -> str:
    return f"{SNAPSHOT_KEY_PREFIX}{entity_type}"


class LocalSnapshotStore:
    """Reads and writes one snapshot per entity type.

    Saving overwrites the previous snapshot wholesale. Loading never raises:
    a missing or corrupt snapshot is logged as a CacheError and yields an
    empty collection.
    """

    def __init__(self, storage: Storage, clock: Optional[Clock] = None) -> None:
        self.storage = storage
        self.clock = clock or utc_now

    async def save(self, entity_type: str, records: Iterable[Record]) -> CacheSnapshot:
        snapshot = CacheSnapshot(
            entity_type=entity_type,
            records=list(records),
            cached_at=self.clock(),
        )
        payload = json.dumps(snapshot.to_dict(), sort_keys=True).encode("utf-8")
        await self.storage.set(snapshot_key(entity_type), payload)
        logger.debug("Cached %d %s records", len(snapshot.records), entity_type)
        return snapshot

    async def load(self, entity_type: str) -> CacheSnapshot:
        key = snapshot_key(entity_type)
        try:
            raw = await self.storage.get(key)
            if raw is None:
                raise CacheError(f"No snapshot stored for '{entity_type}'", key=key)
            return self._decode(entity_type, raw, key)
        except CacheError as exc:
            logger.warning("Cache unavailable for %s: %s", entity_type, exc)
            return CacheSnapshot(entity_type=entity_type, records=[])

    def _decode(self, entity_type: str, raw: bytes, key: str) -> CacheSnapshot:
        try:
            data = json.loads(raw.decode("utf-8"))
            snapshot = CacheSnapshot.from_dict(data)
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise CacheError(f"Corrupt snapshot for '{entity_type}': {exc}", key=key) from exc

        if snapshot.entity_type != entity_type:
            raise CacheError(
                f"Snapshot under '{key}' belongs to '{snapshot.entity_type}'",
                key=key,
            )
        records: List[Record] = [record for record in snapshot.records if isinstance(record, dict)]
        if len(records) != len(snapshot.records):
            logger.warning(
                "Dropped %d malformed records from %s snapshot",
                len(snapshot.records) - len(records),
                entity_type,
            )
        snapshot.records = records
        return snapshot


__all__ = ["LocalSnapshotStore", "SNAPSHOT_KEY_PREFIX", "snapshot_key"]
