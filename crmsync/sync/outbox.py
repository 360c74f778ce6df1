"""Pending change queue (outbox) for locally originated edits."""

from __future__ import annotations

from collections import OrderedDict, deque
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import timedelta
import itertools
import logging
from typing import Any, Awaitable, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from ..logging_utils import log_context
from .errors import NetworkError, OutboxFullError
from .models import ChangeAction, FieldPatch, PendingChange, utc_now
from .protocol import Clock, IdGenerator

logger = logging.getLogger("crmsync.sync.outbox")

EntityKey = Tuple[str, str]
Writer = Callable[[PendingChange], Awaitable[Any]]

DEFAULT_MAX_PENDING = 1000


@dataclass
class RetryPolicy:
    """Exponential backoff schedule for failed replays."""

    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait after an entry's attempt number ``retry_count + 1`` fails."""
        delay = self.base_delay * (self.multiplier ** max(retry_count, 0))
        return min(delay, self.max_delay)


@dataclass
class DrainResult:
    """Outcome of one drain pass."""

    acknowledged: List[PendingChange] = field(default_factory=list)
    failed: int = 0
    blocked: int = 0
    deferred: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def merge(self, other: "DrainResult") -> "DrainResult":
        self.acknowledged.extend(other.acknowledged)
        self.failed += other.failed
        self.blocked += other.blocked
        self.deferred += other.deferred
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "acknowledged": len(self.acknowledged),
            "failed": self.failed,
            "blocked": self.blocked,
            "deferred": self.deferred,
            "errors": self.errors,
        }


class PendingChangeQueue:
    """Per-entity FIFO queues of unacknowledged local mutations."""

    def __init__(
        self,
        *,
        max_pending: int = DEFAULT_MAX_PENDING,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> None:
        self.max_pending = max_pending
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or utc_now
        self._new_id = id_generator or _counter_ids("pending")
        self._queues: "OrderedDict[EntityKey, Deque[PendingChange]]" = OrderedDict()
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def __iter__(self) -> Iterator[PendingChange]:
        return iter(self.entries)

    @property
    def entries(self) -> List[PendingChange]:
        """All pending changes in enqueue order."""
        items = [entry for queue in self._queues.values() for entry in queue]
        return sorted(items, key=lambda entry: self._sequence.get(entry.id, 0))

    def entity_keys(self) -> List[EntityKey]:
        return [key for key, queue in self._queues.items() if queue]

    def has_capacity(self, count: int = 1) -> bool:
        return len(self) + count <= self.max_pending

    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        field_patch: Optional[FieldPatch],
        *,
        action: ChangeAction = ChangeAction.UPDATE,
        change_id: Optional[str] = None,
        force: bool = False,
    ) -> PendingChange:
        if not force and not self.has_capacity():
            raise OutboxFullError(
                f"Outbox is full ({self.max_pending} pending changes); "
                "reconnect or resolve conflicts before editing further."
            )
        entry = PendingChange(
            id=self._new_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            field_patch=dict(field_patch or {}),
            created_at=self.clock(),
            action=action,
            change_id=change_id,
        )
        self._append(entry)
        logger.debug(
            "Queued %s %s/%s (%s)",
            action.value,
            entity_type,
            entity_id,
            entry.id,
            extra=log_context(entity_type, entity_id, pending_id=entry.id, change_id=change_id),
        )
        return entry

    def pending_for(self, entity_type: str, entity_id: str) -> List[PendingChange]:
        return list(self._queues.get((entity_type, entity_id), ()))

    def pending_value(self, entity_type: str, entity_id: str, field_name: str) -> Tuple[bool, Any]:
        """Latest queued value for a field, as ``(found, value)``."""
        for entry in reversed(self._queues.get((entity_type, entity_id), ())):
            if field_name in entry.field_patch:
                return True, entry.field_patch[field_name]
        return False, None

    def has_pending_create(self, entity_type: str, entity_id: str) -> bool:
        return any(
            entry.action == ChangeAction.CREATE
            for entry in self._queues.get((entity_type, entity_id), ())
        )

    def settle_field(self, entity_type: str, entity_id: str, field_name: str, value: Any) -> int:
        """Stop replaying local edits of a field the server value won.

        Queued updates lose the field and are dropped once empty. A queued
        create keeps the field, carrying ``value`` so its replay agrees with
        the server.
        """
        queue = self._queues.get((entity_type, entity_id))
        if not queue:
            return 0
        removed = 0
        kept: Deque[PendingChange] = deque()
        for entry in queue:
            if field_name in entry.field_patch:
                if entry.action == ChangeAction.CREATE:
                    entry.field_patch[field_name] = deepcopy(value)
                else:
                    entry.field_patch.pop(field_name)
                    if not entry.field_patch:
                        self._sequence.pop(entry.id, None)
                        removed += 1
                        continue
            kept.append(entry)
        self._replace_queue((entity_type, entity_id), kept)
        if removed:
            logger.debug(
                "Dropped %d queued edits of %s",
                removed,
                field_name,
                extra=log_context(entity_type, entity_id),
            )
        return removed

    def discard_entity(self, entity_type: str, entity_id: str) -> List[PendingChange]:
        queue = self._queues.pop((entity_type, entity_id), None)
        if not queue:
            return []
        for entry in queue:
            self._sequence.pop(entry.id, None)
        return list(queue)

    def remove(self, entry_id: str) -> Optional[PendingChange]:
        for key, queue in self._queues.items():
            for entry in queue:
                if entry.id == entry_id:
                    queue.remove(entry)
                    self._sequence.pop(entry.id, None)
                    self._replace_queue(key, queue)
                    return entry
        return None

    def next_due(self) -> Optional[float]:
        """Seconds until the earliest backed-off entry may be retried."""
        now = self.clock()
        waits = []
        for queue in self._queues.values():
            if not queue:
                continue
            head = queue[0]
            if head.next_attempt_at is None:
                waits.append(0.0)
            else:
                waits.append(max(0.0, (head.next_attempt_at - now).total_seconds()))
        return min(waits) if waits else None

    async def drain_entity(
        self,
        key: EntityKey,
        writer: Writer,
        *,
        blocked: Optional[Callable[[PendingChange], bool]] = None,
        respect_backoff: bool = True,
        on_ack: Optional[Callable[[PendingChange], None]] = None,
    ) -> DrainResult:
        """Replay one entity's queue in order until it empties or an entry fails.

        A failed, blocked or backed-off head stops the replay for this entity
        so later entries never overtake it.
        """
        result = DrainResult()
        while True:
            queue = self._queues.get(key)
            if not queue:
                break
            entry = queue[0]
            if blocked is not None and blocked(entry):
                result.blocked += 1
                break
            now = self.clock()
            if respect_backoff and entry.next_attempt_at is not None and entry.next_attempt_at > now:
                result.deferred += 1
                break
            try:
                await writer(entry)
            except NetworkError as exc:
                delay = self.retry_policy.delay_for(entry.retry_count)
                entry.retry_count += 1
                entry.last_error = str(exc)
                entry.next_attempt_at = now + timedelta(seconds=delay)
                result.failed += 1
                result.errors.append(f"{entry.entity_type}/{entry.entity_id}: {exc}")
                logger.warning(
                    "Replay of %s for %s/%s failed (attempt %d): %s",
                    entry.id,
                    entry.entity_type,
                    entry.entity_id,
                    entry.retry_count,
                    exc,
                    extra=log_context(entry.entity_type, entry.entity_id, pending_id=entry.id),
                )
                break

            queue = self._queues.get(key)
            if queue and queue[0] is entry:
                queue.popleft()
                self._sequence.pop(entry.id, None)
                self._replace_queue(key, queue)
            result.acknowledged.append(entry)
            if on_ack is not None:
                on_ack(entry)
        return result

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]

    def restore(self, items: List[Dict[str, Any]]) -> None:
        self._queues.clear()
        self._sequence.clear()
        for item in items:
            self._append(PendingChange.from_dict(item))

    def _append(self, entry: PendingChange) -> None:
        key = (entry.entity_type, entry.entity_id)
        self._queues.setdefault(key, deque()).append(entry)
        self._sequence[entry.id] = next(self._counter)

    def _replace_queue(self, key: EntityKey, queue: Deque[PendingChange]) -> None:
        if queue:
            self._queues[key] = queue
        else:
            self._queues.pop(key, None)


def _counter_ids(prefix: str) -> IdGenerator:
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


__all__ = ["DrainResult", "PendingChangeQueue", "RetryPolicy", "DEFAULT_MAX_PENDING"]
