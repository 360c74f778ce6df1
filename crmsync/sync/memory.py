"""In-process remote store for tests and local demos."""

from __future__ import annotations

import asyncio
from copy import deepcopy
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import NetworkError
from .models import ChangeAction, FieldPatch, Record, RemoteEvent

logger = logging.getLogger("crmsync.sync.memory")

_STOP = object()


class MemorySubscription:
    """Queue-backed subscription; ``cancel`` ends iteration."""

    def __init__(self, entity_type: str, owner: Optional["InMemoryRemoteStore"] = None) -> None:
        self.entity_type = entity_type
        self._owner = owner
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def push(self, event: RemoteEvent) -> None:
        if not self._cancelled:
            self._queue.put_nowait(event)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.put_nowait(_STOP)
        if self._owner is not None:
            self._owner._detach(self)

    def __aiter__(self) -> "MemorySubscription":
        return self

    async def __anext__(self) -> RemoteEvent:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _STOP or self._cancelled:
            raise StopAsyncIteration
        return item


class InMemoryRemoteStore:
    """Document store keyed by entity type and id.

    Every accepted write is echoed to live subscriptions, the way a hosted
    document database notifies its listeners. ``fail_writes`` and
    ``reject`` simulate outages and per-document rejections.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, Dict[str, Record]] = {}
        self.writes: List[Tuple[str, str, ChangeAction, Optional[FieldPatch]]] = []
        self.fail_writes = False
        self.fail_subscribe = False
        self.reject: Set[Tuple[str, str]] = set()
        self._subscriptions: Dict[str, List[MemorySubscription]] = {}

    def seed(self, entity_type: str, records: Iterable[Record]) -> None:
        collection = self.documents.setdefault(entity_type, {})
        for record in records:
            collection[str(record["id"])] = deepcopy(record)

    def subscriber_count(self, entity_type: Optional[str] = None) -> int:
        if entity_type is not None:
            return len(self._subscriptions.get(entity_type, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def write(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        patch: Optional[FieldPatch],
    ) -> Dict[str, Any]:
        await asyncio.sleep(0)
        if self.fail_writes:
            raise NetworkError("remote store unreachable", entity_type, entity_id)
        if (entity_type, entity_id) in self.reject:
            raise NetworkError(f"write to {entity_type}/{entity_id} rejected", entity_type, entity_id)
        self.writes.append((entity_type, entity_id, action, deepcopy(patch)))
        self._apply(entity_type, entity_id, action, patch)
        return {"ok": True, "entity_type": entity_type, "entity_id": entity_id}

    def subscribe(self, entity_type: str) -> MemorySubscription:
        if self.fail_subscribe:
            raise NetworkError(f"cannot subscribe to {entity_type}", entity_type)
        subscription = MemorySubscription(entity_type, owner=self)
        # a new listener first receives every existing document
        for entity_id, document in self.documents.get(entity_type, {}).items():
            subscription.push(
                RemoteEvent(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=ChangeAction.CREATE,
                    data=deepcopy(document),
                )
            )
        self._subscriptions.setdefault(entity_type, []).append(subscription)
        return subscription

    def push_remote_change(
        self,
        entity_type: str,
        entity_id: str,
        patch: Optional[FieldPatch] = None,
        action: ChangeAction = ChangeAction.UPDATE,
    ) -> None:
        """Simulate an edit made by another client."""
        logger.debug("Simulated remote %s of %s/%s", action.value, entity_type, entity_id)
        self._apply(entity_type, entity_id, action, patch)

    def _apply(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        patch: Optional[FieldPatch],
    ) -> None:
        collection = self.documents.setdefault(entity_type, {})
        if action == ChangeAction.DELETE:
            collection.pop(entity_id, None)
            data: Record = {}
        else:
            document = collection.setdefault(entity_id, {"id": entity_id})
            document.update(deepcopy(patch or {}))
            data = deepcopy(document)
        event = RemoteEvent(entity_type=entity_type, entity_id=entity_id, action=action, data=data)
        for subscription in list(self._subscriptions.get(entity_type, [])):
            subscription.push(event)

    def _detach(self, subscription: MemorySubscription) -> None:
        subs = self._subscriptions.get(subscription.entity_type, [])
        if subscription in subs:
            subs.remove(subscription)


__all__ = ["InMemoryRemoteStore", "MemorySubscription"]
