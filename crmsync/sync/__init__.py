"""Offline-first record synchronization for crmsync."""

from __future__ import annotations

from .models import (
    CacheSnapshot,
    Change,
    ChangeAction,
    ChangeOrigin,
    Conflict,
    ConflictSide,
    ConnectivityState,
    FieldState,
    PendingChange,
    RemoteEvent,
)
from .errors import (
    CacheError,
    ConflictResolutionError,
    EntityNotFoundError,
    NetworkError,
    OutboxFullError,
    RollbackError,
    SyncError,
)
from .protocol import ConnectivitySource, RemoteStore, Storage, Subscription
from .storage import FileStorage, MemoryStorage
from .snapshot import LocalSnapshotStore
from .history import ChangeLog
from .outbox import DrainResult, PendingChangeQueue, RetryPolicy
from .conflict import ConflictRegistry
from .realtime import RealtimeSubscriptionManager
from .connectivity import ConnectivityMonitor, HostConnectivitySource
from .journal import JournalState, JournalStore
from .memory import InMemoryRemoteStore, MemorySubscription
from .settings import SyncSettings
from .engine import BulkResult, SyncEngine

__all__ = [
    # Models
    "CacheSnapshot",
    "Change",
    "ChangeAction",
    "ChangeOrigin",
    "Conflict",
    "ConflictSide",
    "ConnectivityState",
    "FieldState",
    "PendingChange",
    "RemoteEvent",
    # Errors
    "CacheError",
    "ConflictResolutionError",
    "EntityNotFoundError",
    "NetworkError",
    "OutboxFullError",
    "RollbackError",
    "SyncError",
    # Capabilities
    "ConnectivitySource",
    "RemoteStore",
    "Storage",
    "Subscription",
    "FileStorage",
    "MemoryStorage",
    "InMemoryRemoteStore",
    "MemorySubscription",
    # Components
    "ChangeLog",
    "ConflictRegistry",
    "ConnectivityMonitor",
    "DrainResult",
    "HostConnectivitySource",
    "JournalState",
    "JournalStore",
    "LocalSnapshotStore",
    "PendingChangeQueue",
    "RealtimeSubscriptionManager",
    "RetryPolicy",
    # Engine
    "BulkResult",
    "SyncEngine",
    "SyncSettings",
]
