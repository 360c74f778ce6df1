"""Offline-first synchronization engine for CRM record collections."""

from __future__ import annotations

import asyncio
from collections import deque
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union
import uuid
import weakref

from ..logging_utils import log_context
from .conflict import ConflictRegistry
from .connectivity import ConnectivityMonitor, HostConnectivitySource
from .errors import (
    ConflictResolutionError,
    EntityNotFoundError,
    NetworkError,
    OutboxFullError,
    RollbackError,
    SyncError,
)
from .history import ChangeLog
from .journal import JournalState, JournalStore
from .models import (
    Change,
    ChangeAction,
    ChangeOrigin,
    Conflict,
    ConflictSide,
    FieldPatch,
    FieldState,
    PendingChange,
    Record,
    RemoteEvent,
    format_timestamp,
    utc_now,
)
from .outbox import DrainResult, EntityKey, PendingChangeQueue
from .protocol import Clock, ConnectivitySource, IdGenerator, RemoteStore, Storage
from .realtime import RealtimeSubscriptionManager
from .settings import SyncSettings
from .snapshot import LocalSnapshotStore
from .storage import FileStorage

if TYPE_CHECKING:
    from ..configuration import ConfigurationBundle

logger = logging.getLogger("crmsync.sync.engine")

FieldKey = Tuple[str, str, str]
REMOTE_ACTOR = "remote"
ECHO_WINDOW = 16
_MISSING = object()


@dataclass
class BulkResult:
    """Outcome of a bulk mutation."""

    changes: List[Change] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "applied": len(self.changes),
            "change_ids": [change.id for change in self.changes],
            "failures": self.failures,
        }


class SyncEngine:
    """Keeps a local working copy of record collections in step with a remote store.

    Every state change goes through one of the entry points (``mutate``,
    ``handle_remote_event``, ``resolve_conflict``, ``rollback_change`` and
    the connectivity transitions). Work on one entity is serialized through
    a per-entity lock so a local edit and a remote event never interleave.
    """

    def __init__(
        self,
        remote: RemoteStore,
        storage: Storage,
        *,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Clock] = None,
        id_generator: Optional[IdGenerator] = None,
        initially_online: bool = True,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.remote = remote
        self.storage = storage
        self.clock = clock or utc_now
        self._new_id = id_generator or (lambda: uuid.uuid4().hex)
        self.entity_types: Tuple[str, ...] = tuple(self.settings.entity_types)

        self._collections: Dict[str, Dict[str, Record]] = {name: {} for name in self.entity_types}
        self._field_states: Dict[FieldKey, FieldState] = {}
        self._unechoed: Dict[FieldKey, Deque[Any]] = {}
        self._deleting: Set[EntityKey] = set()
        # only entities with an in-flight operation keep a lock alive
        self._locks: "weakref.WeakValueDictionary[EntityKey, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._persist_lock = asyncio.Lock()
        self._retry_task: Optional["asyncio.Task[None]"] = None

        self.history = ChangeLog(self.settings.history_limit)
        self.outbox = PendingChangeQueue(
            max_pending=self.settings.max_pending,
            retry_policy=self.settings.retry_policy,
            clock=self.clock,
            id_generator=self._new_id,
        )
        self.conflict_resolution = ConflictRegistry(clock=self.clock, id_generator=self._new_id)
        self.snapshots = LocalSnapshotStore(storage, clock=self.clock)
        self.journal = JournalStore(storage)
        self.connectivity = ConnectivityMonitor(initially_online=initially_online)
        self.connectivity.on_transition(self._on_connectivity_transition)
        self.realtime = RealtimeSubscriptionManager(remote, self.entity_types, self.handle_remote_event)

    @classmethod
    def from_config(
        cls,
        bundle: "ConfigurationBundle",
        remote: RemoteStore,
        **kwargs: Any,
    ) -> "SyncEngine":
        """Build an engine persisting under the vault's state directory."""
        settings = SyncSettings.from_config(bundle.merged)
        storage = FileStorage(settings.state_path(Path(bundle.vault_dir)))
        return cls(remote, storage, settings=settings, **kwargs)

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self.connectivity.last_sync_time

    @property
    def pending_changes(self) -> List[PendingChange]:
        return self.outbox.entries

    @property
    def change_history(self) -> List[Change]:
        return self.history.entries

    def records(self, entity_type: str) -> List[Record]:
        self._require_type(entity_type)
        return [deepcopy(record) for record in self._collections[entity_type].values()]

    def get_record(self, entity_type: str, entity_id: str) -> Optional[Record]:
        self._require_type(entity_type)
        record = self._collections[entity_type].get(str(entity_id))
        return deepcopy(record) if record is not None else None

    def field_state(self, entity_type: str, entity_id: str, field_name: str) -> FieldState:
        return self._field_states.get((entity_type, str(entity_id), field_name), FieldState.CLEAN)

    def status(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "last_sync_time": format_timestamp(self.last_sync_time),
            "pending_changes": len(self.outbox),
            "change_history": len(self.history),
            "conflicts": len(self.conflict_resolution),
            "realtime": self.realtime.active_types,
            "collections": {name: len(items) for name, items in self._collections.items()},
        }

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    async def mutate(
        self,
        entity_type: str,
        entity_id: str,
        patch: Optional[FieldPatch] = None,
        *,
        action: Union[ChangeAction, str] = ChangeAction.UPDATE,
        actor: Optional[str] = None,
    ) -> Change:
        """Apply a local edit optimistically and send or queue it."""
        change = await self._mutate(entity_type, str(entity_id), patch, ChangeAction(action), actor)
        await self._persist()
        return change

    async def bulk_mutate(
        self,
        entity_type: str,
        items: Iterable[Record],
        *,
        action: Union[ChangeAction, str] = ChangeAction.UPDATE,
        actor: Optional[str] = None,
    ) -> BulkResult:
        """Apply a batch of edits; each item is a record carrying its ``id``."""
        self._require_type(entity_type)
        action = ChangeAction(action)
        prepared: List[Tuple[str, FieldPatch]] = []
        result = BulkResult()
        for item in items:
            raw_id = item.get("id")
            if raw_id is None or str(raw_id) == "":
                result.failures.append({"entity_id": "", "error": "item has no id"})
                continue
            patch = {key: value for key, value in item.items() if key != "id"}
            prepared.append((str(raw_id), patch))

        outcomes = await asyncio.gather(
            *(self._mutate(entity_type, entity_id, patch, action, actor) for entity_id, patch in prepared),
            return_exceptions=True,
        )
        for (entity_id, _), outcome in zip(prepared, outcomes):
            if isinstance(outcome, (SyncError, ValueError)):
                result.failures.append({"entity_id": entity_id, "error": str(outcome)})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.changes.append(outcome)
        await self._persist()
        logger.info(
            "Bulk %s on %s: %d applied, %d failed",
            action.value,
            entity_type,
            len(result.changes),
            len(result.failures),
        )
        return result

    async def _mutate(
        self,
        entity_type: str,
        entity_id: str,
        patch: Optional[FieldPatch],
        action: ChangeAction,
        actor: Optional[str],
    ) -> Change:
        self._require_type(entity_type)
        async with self._lock_for(entity_type, entity_id):
            return await self._apply_local(
                entity_type,
                entity_id,
                action,
                dict(patch or {}),
                origin=ChangeOrigin.LOCAL,
                actor=actor,
            )

    async def _apply_local(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        patch: FieldPatch,
        *,
        origin: ChangeOrigin,
        actor: Optional[str],
    ) -> Change:
        """Apply, record and route one local mutation. Caller holds the entity lock."""
        collection = self._collections[entity_type]
        current = collection.get(entity_id)
        patch = {key: deepcopy(value) for key, value in patch.items() if key != "id"}

        if action == ChangeAction.CREATE:
            if current is not None:
                raise ValueError(f"{entity_type}/{entity_id} already exists")
            after: Optional[Record] = {"id": entity_id, **patch}
        elif current is None:
            raise EntityNotFoundError(entity_type, entity_id)
        elif action == ChangeAction.UPDATE:
            if not patch:
                raise ValueError("An update needs at least one field.")
            after = {**current, **patch}
        else:
            after = None
            patch = {}

        if action != ChangeAction.DELETE and not self.outbox.has_capacity():
            raise OutboxFullError(
                f"Outbox is full ({self.outbox.max_pending} pending changes); "
                "reconnect or resolve conflicts before editing further."
            )

        before = deepcopy(current)
        if after is None:
            collection.pop(entity_id, None)
        else:
            collection[entity_id] = after
        change = self._record(
            entity_type,
            entity_id,
            action,
            patch,
            before,
            deepcopy(after),
            origin=origin,
            actor=actor,
        )

        if action == ChangeAction.DELETE:
            never_sent = self.outbox.has_pending_create(entity_type, entity_id)
            discarded = self.outbox.discard_entity(entity_type, entity_id)
            dropped = self.conflict_resolution.discard_entity(entity_type, entity_id)
            self._forget_entity(entity_type, entity_id)
            if discarded or dropped:
                logger.info(
                    "Delete of %s/%s discarded %d queued edits and %d conflicts",
                    entity_type,
                    entity_id,
                    len(discarded),
                    len(dropped),
                    extra=log_context(entity_type, entity_id, change_id=change.id),
                )
            if never_sent:
                self.history.mark_acknowledged(change.id)
                return change
            if self.realtime.is_running:
                self._deleting.add((entity_type, entity_id))
        else:
            self._deleting.discard((entity_type, entity_id))

        for name in patch:
            self._field_states[(entity_type, entity_id, name)] = FieldState.PENDING_LOCAL
        await self._send_or_queue(change)
        return change

    async def _send_or_queue(self, change: Change) -> None:
        key = (change.entity_type, change.entity_id)
        patch = change.field_patch if change.action != ChangeAction.DELETE else None

        if self.is_online and not self.outbox.pending_for(*key):
            try:
                await self.remote.write(change.entity_type, change.entity_id, change.action, patch)
            except NetworkError as exc:
                logger.warning(
                    "Direct write of %s/%s failed, queueing: %s",
                    change.entity_type,
                    change.entity_id,
                    exc,
                    extra=log_context(change.entity_type, change.entity_id, change_id=change.id),
                )
            else:
                self._remember_written(change.entity_type, change.entity_id, change.field_patch)
                self.history.mark_acknowledged(change.id)
                self._mark_synced(change.entity_type, change.entity_id, change.field_patch)
                return

        self.outbox.enqueue(
            change.entity_type,
            change.entity_id,
            patch,
            action=change.action,
            change_id=change.id,
            force=True,
        )
        if self.is_online:
            result = await self._drain_entity_locked(key, respect_backoff=True)
            if result.failed:
                self._schedule_retry()

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------

    async def handle_remote_event(self, event: RemoteEvent) -> Optional[Change]:
        """Merge one inbound remote event into the working copy."""
        if event.entity_type not in self._collections:
            logger.debug("Ignoring event for untracked collection %s", event.entity_type)
            return None
        entity_id = str(event.entity_id)
        async with self._lock_for(event.entity_type, entity_id):
            conflicts_before = len(self.conflict_resolution)
            change = self._merge_remote(event, entity_id)
            touched = change is not None or len(self.conflict_resolution) != conflicts_before
        if touched:
            await self._persist()
        return change

    def _merge_remote(self, event: RemoteEvent, entity_id: str) -> Optional[Change]:
        entity_type = event.entity_type
        collection = self._collections[entity_type]
        current = collection.get(entity_id)

        key = (entity_type, entity_id)
        if key in self._deleting:
            if event.action == ChangeAction.DELETE:
                self._deleting.discard(key)
            elif current is None:
                # stale echo of a write made before our own delete
                logger.debug(
                    "Ignoring %s of locally deleted %s/%s",
                    event.action.value,
                    entity_type,
                    entity_id,
                    extra=log_context(entity_type, entity_id),
                )
                return None

        if event.action == ChangeAction.DELETE:
            if current is None:
                return None
            discarded = self.outbox.discard_entity(entity_type, entity_id)
            self.conflict_resolution.discard_entity(entity_type, entity_id)
            if discarded:
                logger.warning(
                    "Remote delete of %s/%s superseded %d queued local edits",
                    entity_type,
                    entity_id,
                    len(discarded),
                    extra=log_context(entity_type, entity_id),
                )
            collection.pop(entity_id)
            self._forget_entity(entity_type, entity_id)
            return self._record(
                entity_type,
                entity_id,
                ChangeAction.DELETE,
                {},
                deepcopy(current),
                None,
                origin=ChangeOrigin.REMOTE,
                actor=REMOTE_ACTOR,
            )

        incoming = {key: deepcopy(value) for key, value in (event.data or {}).items() if key != "id"}

        if current is None:
            if self.outbox.pending_for(entity_type, entity_id):
                logger.warning(
                    "Remote %s for %s/%s ignored: a local delete is queued",
                    event.action.value,
                    entity_type,
                    entity_id,
                    extra=log_context(entity_type, entity_id),
                )
                return None
            after = {"id": entity_id, **incoming}
            collection[entity_id] = after
            self._mark_synced(entity_type, entity_id, incoming)
            return self._record(
                entity_type,
                entity_id,
                ChangeAction.CREATE,
                incoming,
                None,
                deepcopy(after),
                origin=ChangeOrigin.REMOTE,
                actor=REMOTE_ACTOR,
            )

        applied: FieldPatch = {}
        for name, server_value in incoming.items():
            if self._consume_echo((entity_type, entity_id, name), server_value):
                continue
            if current.get(name, _MISSING) == server_value:
                continue
            found, local_value = self.outbox.pending_value(entity_type, entity_id, name)
            if not found:
                applied[name] = server_value
                continue
            if local_value == server_value:
                continue
            self.conflict_resolution.register(entity_type, entity_id, name, local_value, server_value)
            self._field_states[(entity_type, entity_id, name)] = FieldState.CONFLICTED

        if not applied:
            return None
        after = {**current, **applied}
        collection[entity_id] = after
        self._mark_synced(entity_type, entity_id, applied)
        return self._record(
            entity_type,
            entity_id,
            ChangeAction.UPDATE,
            applied,
            deepcopy(current),
            deepcopy(after),
            origin=ChangeOrigin.REMOTE,
            actor=REMOTE_ACTOR,
        )

    # ------------------------------------------------------------------
    # Conflicts and rollback
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self,
        conflict_id: str,
        side: Union[ConflictSide, str],
        *,
        actor: Optional[str] = None,
    ) -> Change:
        """Settle a conflict with the local or the server value."""
        try:
            side = ConflictSide(side)
        except ValueError as exc:
            raise ConflictResolutionError(f"Unknown resolution side '{side}'.", conflict_id) from exc
        if side == ConflictSide.PENDING:
            raise ConflictResolutionError("Resolution side must be 'local' or 'server'.", conflict_id)

        conflict = self.conflict_resolution.require(conflict_id)
        async with self._lock_for(conflict.entity_type, conflict.entity_id):
            conflict = self.conflict_resolution.require(conflict_id)
            change = await self._apply_resolution(conflict, side, actor)
        await self._persist()
        return change

    async def _apply_resolution(self, conflict: Conflict, side: ConflictSide, actor: Optional[str]) -> Change:
        entity_type, entity_id, name = conflict.entity_type, conflict.entity_id, conflict.field
        collection = self._collections[entity_type]
        current = collection.get(entity_id)
        if current is None:
            self.conflict_resolution.discard_entity(entity_type, entity_id)
            raise ConflictResolutionError(
                f"{entity_type}/{entity_id} no longer exists; conflict dropped.",
                conflict.id,
            )

        self.conflict_resolution.resolve(conflict.id, side)
        value = conflict.local_value if side == ConflictSide.LOCAL else conflict.server_value
        if side == ConflictSide.SERVER:
            self.outbox.settle_field(entity_type, entity_id, name, value)
        after = {**current, name: deepcopy(value)}
        collection[entity_id] = after
        change = self._record(
            entity_type,
            entity_id,
            ChangeAction.UPDATE,
            {name: deepcopy(value)},
            deepcopy(current),
            deepcopy(after),
            origin=ChangeOrigin.LOCAL if side == ConflictSide.LOCAL else ChangeOrigin.REMOTE,
            actor=actor,
        )

        if side == ConflictSide.LOCAL:
            self._field_states[(entity_type, entity_id, name)] = FieldState.PENDING_LOCAL
            self.outbox.enqueue(
                entity_type,
                entity_id,
                {name: deepcopy(value)},
                change_id=change.id,
                force=True,
            )
        else:
            self._field_states[(entity_type, entity_id, name)] = FieldState.SYNCED
            self.history.mark_acknowledged(change.id)

        if self.is_online and self.outbox.pending_for(entity_type, entity_id):
            result = await self._drain_entity_locked((entity_type, entity_id), respect_backoff=False)
            if result.failed:
                self._schedule_retry()
        return change

    async def rollback_change(self, change_id: str, *, actor: Optional[str] = None) -> Change:
        """Undo a recorded change by applying its inverse as a new change."""
        change = self.history.get(change_id)
        if change is None:
            raise RollbackError(f"Change '{change_id}' is not in the history.", change_id)

        async with self._lock_for(change.entity_type, change.entity_id):
            if self.history.get(change_id) is None:
                raise RollbackError(f"Change '{change_id}' was evicted from the history.", change_id)
            if self.history.is_rolled_back(change_id):
                raise RollbackError(f"Change '{change_id}' was already rolled back.", change_id)
            action, inverse = self._inverse_of(change)
            superseding = self.history.superseding(change)
            if superseding is not None:
                raise RollbackError(
                    f"Change '{change_id}' was overwritten by change '{superseding.id}'.",
                    change_id,
                )
            rollback = await self._apply_local(
                change.entity_type,
                change.entity_id,
                action,
                inverse,
                origin=ChangeOrigin.ROLLBACK,
                actor=actor,
            )
            self.history.mark_rolled_back(change_id)
        logger.info(
            "Rolled back change %s with %s",
            change_id,
            rollback.id,
            extra=log_context(change.entity_type, change.entity_id, change_id=rollback.id),
        )
        await self._persist()
        return rollback

    def _inverse_of(self, change: Change) -> Tuple[ChangeAction, FieldPatch]:
        current = self._collections[change.entity_type].get(change.entity_id)
        if change.action == ChangeAction.DELETE:
            if current is not None:
                raise RollbackError(
                    f"{change.entity_type}/{change.entity_id} was recreated after change '{change.id}'.",
                    change.id,
                )
            if not change.before_state:
                raise RollbackError(f"Change '{change.id}' has no state to restore.", change.id)
            return ChangeAction.CREATE, {
                key: deepcopy(value) for key, value in change.before_state.items() if key != "id"
            }

        if current is None:
            raise RollbackError(
                f"{change.entity_type}/{change.entity_id} was deleted after change '{change.id}'.",
                change.id,
            )
        if change.action == ChangeAction.CREATE:
            return ChangeAction.DELETE, {}
        before = change.before_state or {}
        return ChangeAction.UPDATE, {name: deepcopy(before.get(name)) for name in change.field_patch}

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    async def drain_outbox(self, *, respect_backoff: bool = False) -> DrainResult:
        """Replay queued edits: in order per entity, concurrently across entities."""
        if not self.is_online:
            return DrainResult()

        async def _drain_one(key: EntityKey) -> DrainResult:
            async with self._lock_for(*key):
                return await self._drain_entity_locked(key, respect_backoff=respect_backoff)

        keys = self.outbox.entity_keys()
        results = await asyncio.gather(*(_drain_one(key) for key in keys))
        total = DrainResult()
        for result in results:
            total.merge(result)

        if total.failed == 0 and total.deferred == 0:
            self.connectivity.mark_synced(self.clock())
        elif total.failed:
            self._schedule_retry()
        if keys:
            logger.info(
                "Outbox drain: %d acknowledged, %d failed, %d blocked by conflicts",
                len(total.acknowledged),
                total.failed,
                total.blocked,
            )
        await self._persist()
        return total

    async def _drain_entity_locked(self, key: EntityKey, *, respect_backoff: bool) -> DrainResult:
        return await self.outbox.drain_entity(
            key,
            self._replay,
            blocked=self._is_blocked,
            respect_backoff=respect_backoff,
            on_ack=self._acknowledge,
        )

    async def _replay(self, entry: PendingChange) -> Dict[str, Any]:
        patch = entry.field_patch if entry.action != ChangeAction.DELETE else None
        ack = await self.remote.write(entry.entity_type, entry.entity_id, entry.action, patch)
        self._remember_written(entry.entity_type, entry.entity_id, entry.field_patch)
        return ack

    def _is_blocked(self, entry: PendingChange) -> bool:
        return any(
            self.conflict_resolution.is_conflicted(entry.entity_type, entry.entity_id, name)
            for name in entry.field_patch
        )

    def _acknowledge(self, entry: PendingChange) -> None:
        self.history.mark_acknowledged(entry.change_id)
        settled = {
            name: value
            for name, value in entry.field_patch.items()
            if not self.outbox.pending_value(entry.entity_type, entry.entity_id, name)[0]
        }
        self._mark_synced(entry.entity_type, entry.entity_id, settled)

    def _schedule_retry(self) -> None:
        if self._retry_task is not None and not self._retry_task.done():
            return
        delay = self.outbox.next_due()
        if delay is None:
            return
        self._retry_task = asyncio.create_task(self._retry_after(delay), name="crmsync-outbox-retry")

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        if self.is_online and len(self.outbox):
            await self.drain_outbox(respect_backoff=True)

    def _cancel_retry(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def set_online_status(self, online: bool) -> bool:
        """Manually override connectivity; returns True on a transition."""
        return await self.connectivity.set_online_status(online)

    def watch_connectivity(self, source: Optional[ConnectivitySource] = None) -> "asyncio.Task[None]":
        """Follow host connectivity transitions in the background."""
        if source is None:
            source = HostConnectivitySource(
                poll_interval=self.settings.poll_interval,
                include_loopback=self.settings.include_loopback,
                checks=self.settings.connectivity_checks,
                timeout=self.settings.connectivity_timeout,
            )
        return self.connectivity.attach(source)

    async def _on_connectivity_transition(self, online: bool) -> None:
        if online:
            await self.drain_outbox(respect_backoff=False)
            await self.cache_data()
        else:
            self._cancel_retry()
            await self.cache_data()
            await self.load_from_cache()

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def start_realtime_listeners(self) -> List[str]:
        if not self.realtime.is_running:
            self._reset_echo_tracking()
        return await self.realtime.start()

    async def stop_realtime_listeners(self) -> None:
        await self.realtime.stop()
        self._reset_echo_tracking()

    def _reset_echo_tracking(self) -> None:
        # echoes are only tracked across one unbroken listening session
        self._unechoed.clear()
        self._deleting.clear()

    # ------------------------------------------------------------------
    # Snapshots and journal
    # ------------------------------------------------------------------

    async def cache_data(self) -> Dict[str, int]:
        """Write a snapshot of every tracked collection."""
        captured = {
            name: [deepcopy(record) for record in collection.values()]
            for name, collection in self._collections.items()
        }
        for name, records in captured.items():
            await self.snapshots.save(name, records)
        logger.info("Cached %d records across %d collections", sum(map(len, captured.values())), len(captured))
        return {name: len(records) for name, records in captured.items()}

    async def load_from_cache(self) -> Dict[str, int]:
        """Replace the working copy with the stored snapshots.

        Queued local edits live in the outbox, not in snapshots, and are laid
        back over the loaded records.
        """
        counts: Dict[str, int] = {}
        for name in self.entity_types:
            snapshot = await self.snapshots.load(name)
            collection: Dict[str, Record] = {}
            for record in snapshot.records:
                if "id" not in record:
                    logger.warning("Skipping cached %s record without id", name)
                    continue
                collection[str(record["id"])] = deepcopy(record)
            self._collections[name] = collection
            self._overlay_pending(name)
            counts[name] = len(self._collections[name])
        logger.info("Loaded %d records from cache", sum(counts.values()))
        return counts

    def _overlay_pending(self, entity_type: str) -> None:
        collection = self._collections[entity_type]
        for entry in self.outbox.entries:
            if entry.entity_type != entity_type:
                continue
            if entry.action == ChangeAction.DELETE:
                collection.pop(entry.entity_id, None)
            elif entry.action == ChangeAction.CREATE:
                collection[entry.entity_id] = {"id": entry.entity_id, **deepcopy(entry.field_patch)}
            else:
                record = collection.setdefault(entry.entity_id, {"id": entry.entity_id})
                record.update(deepcopy(entry.field_patch))

    async def restore(self) -> None:
        """Cold start: reload the journal, then the snapshots."""
        state = await self.journal.load()
        self.outbox.restore(state.pending)
        self.conflict_resolution.restore(state.conflicts)
        self.history.restore(state.history)
        if state.last_sync_time is not None:
            self.connectivity.mark_synced(state.last_sync_time)
        self._field_states.clear()
        for entry in self.outbox.entries:
            for name in entry.field_patch:
                self._field_states[(entry.entity_type, entry.entity_id, name)] = FieldState.PENDING_LOCAL
        for conflict in self.conflict_resolution.conflicts:
            self._field_states[(conflict.entity_type, conflict.entity_id, conflict.field)] = FieldState.CONFLICTED
        await self.load_from_cache()
        logger.info(
            "Restored %d pending changes, %d conflicts, %d history entries",
            len(self.outbox),
            len(self.conflict_resolution),
            len(self.history),
        )

    def journal_state(self) -> JournalState:
        return JournalState(
            pending=self.outbox.to_list(),
            conflicts=self.conflict_resolution.to_list(),
            history=self.history.to_list(),
            last_sync_time=self.last_sync_time,
            saved_at=self.clock(),
        )

    async def _persist(self) -> None:
        async with self._persist_lock:
            await self.journal.save(self.journal_state())

    async def close(self) -> None:
        """Stop background work and flush the journal."""
        self._cancel_retry()
        self.connectivity.detach()
        await self.stop_realtime_listeners()
        await self._persist()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_type(self, entity_type: str) -> None:
        if entity_type not in self._collections:
            raise ValueError(f"'{entity_type}' is not a tracked collection.")

    def _lock_for(self, entity_type: str, entity_id: str) -> asyncio.Lock:
        key = (entity_type, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _record(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        patch: FieldPatch,
        before: Optional[Record],
        after: Optional[Record],
        *,
        origin: ChangeOrigin,
        actor: Optional[str],
    ) -> Change:
        change = Change(
            id=self._new_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            field_patch=deepcopy(patch),
            before_state=before,
            after_state=after,
            origin=origin,
            actor=actor or self.settings.actor,
            applied_at=self.clock(),
        )
        return self.history.append(change)

    def _mark_synced(self, entity_type: str, entity_id: str, patch: FieldPatch) -> None:
        for name in patch:
            key = (entity_type, entity_id, name)
            if self._field_states.get(key) != FieldState.CONFLICTED:
                self._field_states[key] = FieldState.SYNCED

    def _remember_written(self, entity_type: str, entity_id: str, patch: FieldPatch) -> None:
        if not self.realtime.is_running:
            return
        for name, value in patch.items():
            key = (entity_type, entity_id, name)
            window = self._unechoed.get(key)
            if window is None:
                window = self._unechoed[key] = deque(maxlen=ECHO_WINDOW)
            window.append(deepcopy(value))

    def _consume_echo(self, key: FieldKey, server_value: Any) -> bool:
        """True when ``server_value`` is the echo of one of our own writes.

        Echoes arrive in write order, so a match also drops every older
        unechoed value. A value we never wrote clears the window.
        """
        window = self._unechoed.get(key)
        if not window:
            return False
        for index, value in enumerate(window):
            if value == server_value:
                for _ in range(index + 1):
                    window.popleft()
                if not window:
                    del self._unechoed[key]
                return True
        del self._unechoed[key]
        return False

    def _forget_entity(self, entity_type: str, entity_id: str) -> None:
        for mapping in (self._field_states, self._unechoed):
            for key in [key for key in mapping if key[0] == entity_type and key[1] == entity_id]:
                del mapping[key]


__all__ = ["BulkResult", "SyncEngine"]
