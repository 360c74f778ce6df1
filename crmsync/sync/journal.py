"""Durable journal for the outbox, open conflicts and change history."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import CacheError
from .models import format_timestamp, parse_timestamp
from .protocol import Storage

logger = logging.getLogger("crmsync.sync.journal")

JOURNAL_KEY = "journal"
JOURNAL_VERSION = 1


@dataclass
class JournalState:
    """Serialized bookkeeping of one engine."""

    pending: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)
    last_sync_time: Optional[datetime] = None
    saved_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.pending or self.conflicts or self.history or self.last_sync_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": JOURNAL_VERSION,
            "pending": self.pending,
            "conflicts": self.conflicts,
            "history": self.history,
            "last_sync_time": format_timestamp(self.last_sync_time),
            "saved_at": format_timestamp(self.saved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JournalState":
        version = data.get("version", JOURNAL_VERSION)
        if version != JOURNAL_VERSION:
            raise ValueError(f"unsupported journal version {version}")
        for key in ("pending", "conflicts", "history"):
            if not isinstance(data.get(key, []), list):
                raise ValueError(f"journal section '{key}' must be a list")
        return cls(
            pending=list(data.get("pending", [])),
            conflicts=list(data.get("conflicts", [])),
            history=list(data.get("history", [])),
            last_sync_time=parse_timestamp(data.get("last_sync_time")),
            saved_at=parse_timestamp(data.get("saved_at")),
        )


class JournalStore:
    """Reads and writes the journal under a single storage key."""

    def __init__(self, storage: Storage, key: str = JOURNAL_KEY) -> None:
        self.storage = storage
        self.key = key

    async def save(self, state: JournalState) -> None:
        payload = json.dumps(state.to_dict(), sort_keys=True).encode("utf-8")
        await self.storage.set(self.key, payload)

    async def load(self) -> JournalState:
        """Return the stored journal, or an empty one if missing or corrupt."""
        raw = await self.storage.get(self.key)
        if raw is None:
            logger.debug("No journal stored under '%s'", self.key)
            return JournalState()
        try:
            return self.decode(raw)
        except CacheError as exc:
            logger.warning("Ignoring unreadable journal: %s", exc)
            return JournalState()

    def decode(self, raw: bytes) -> JournalState:
        try:
            return JournalState.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
            raise CacheError(f"Corrupt journal: {exc}", key=self.key) from exc


__all__ = ["JOURNAL_KEY", "JournalState", "JournalStore"]
