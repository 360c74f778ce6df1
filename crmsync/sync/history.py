"""Bounded change log used for history and rollback."""

from __future__ import annotations

from collections import deque
import logging
from typing import Any, Deque, Dict, Iterator, List, Optional, Set

from .models import Change, ChangeAction

logger = logging.getLogger("crmsync.sync.history")

DEFAULT_HISTORY_LIMIT = 500


class ChangeLog:
    """Ring buffer of applied changes, oldest evicted first.

    Changes are frozen. The log also tracks which changes were rolled back
    and which local changes the remote store has acknowledged; those flags
    disappear together with the change when it is evicted.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        if limit < 1:
            raise ValueError("Change log limit must be at least 1.")
        self.limit = limit
        self._entries: Deque[Change] = deque()
        self._index: Dict[str, Change] = {}
        self._rolled_back: Set[str] = set()
        self._acknowledged: Set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Change]:
        return iter(self._entries)

    @property
    def entries(self) -> List[Change]:
        return list(self._entries)

    def append(self, change: Change) -> Change:
        if change.id in self._index:
            raise ValueError(f"Change '{change.id}' is already recorded.")
        if len(self._entries) >= self.limit:
            evicted = self._entries.popleft()
            self._forget(evicted.id)
            logger.debug("Evicted change %s from history", evicted.id)
        self._entries.append(change)
        self._index[change.id] = change
        return change

    def get(self, change_id: str) -> Optional[Change]:
        return self._index.get(change_id)

    def is_rolled_back(self, change_id: str) -> bool:
        return change_id in self._rolled_back

    def mark_rolled_back(self, change_id: str) -> None:
        if change_id in self._index:
            self._rolled_back.add(change_id)

    def is_acknowledged(self, change_id: str) -> bool:
        return change_id in self._acknowledged

    def mark_acknowledged(self, change_id: Optional[str]) -> None:
        if change_id and change_id in self._index:
            self._acknowledged.add(change_id)

    def later_than(self, change_id: str) -> List[Change]:
        """Changes appended after the given one, oldest first."""
        later: List[Change] = []
        for change in reversed(self._entries):
            if change.id == change_id:
                break
            later.append(change)
        later.reverse()
        return later

    def superseding(self, change: Change) -> Optional[Change]:
        """Return the first later change that wrote over what ``change`` wrote."""
        for later in self.later_than(change.id):
            if change.action == ChangeAction.UPDATE:
                if later.action != ChangeAction.UPDATE and later.touches(change.entity_type, change.entity_id):
                    return later
                if any(later.touches(change.entity_type, change.entity_id, name) for name in change.field_patch):
                    return later
            elif later.touches(change.entity_type, change.entity_id):
                return later
        return None

    def describe(self, change: Change) -> Dict[str, Any]:
        """Serialized change plus the flags the log owns."""
        data = change.to_dict()
        data["rolled_back"] = self.is_rolled_back(change.id)
        data["acknowledged"] = self.is_acknowledged(change.id)
        return data

    def to_list(self) -> List[Dict[str, Any]]:
        return [self.describe(change) for change in self._entries]

    def restore(self, items: List[Dict[str, Any]]) -> None:
        """Replace contents from serialized entries (oldest first)."""
        self._entries.clear()
        self._index.clear()
        self._rolled_back.clear()
        self._acknowledged.clear()
        for item in items[-self.limit:]:
            change = Change.from_dict(item)
            self.append(change)
            if item.get("rolled_back"):
                self._rolled_back.add(change.id)
            if item.get("acknowledged"):
                self._acknowledged.add(change.id)

    def _forget(self, change_id: str) -> None:
        self._index.pop(change_id, None)
        self._rolled_back.discard(change_id)
        self._acknowledged.discard(change_id)


__all__ = ["ChangeLog", "DEFAULT_HISTORY_LIMIT"]
