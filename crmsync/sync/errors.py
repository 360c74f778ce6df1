"""Exceptions raised by the synchronization engine."""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base exception for all synchronization errors."""


class NetworkError(SyncError):
    """Transient failure talking to the remote store.

    Raised by remote store clients on write or subscribe failure. The engine
    catches it and routes the mutation to the outbox.
    """

    def __init__(self, message: str, entity_type: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class RollbackError(SyncError):
    """A change cannot be rolled back.

    Raised when:
    - the change was evicted from the history or never existed
    - the change was already rolled back
    - the target entity was deleted since
    - a later change overwrote the same field
    """

    def __init__(self, message: str, change_id: Optional[str] = None):
        super().__init__(message)
        self.change_id = change_id


class CacheError(SyncError):
    """A snapshot or journal entry is missing or unreadable."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ConflictResolutionError(SyncError):
    """Resolving an unknown or already resolved conflict."""

    def __init__(self, message: str, conflict_id: Optional[str] = None):
        super().__init__(message)
        self.conflict_id = conflict_id


class EntityNotFoundError(SyncError, KeyError):
    """Update or delete addressed to a record that is not in the working copy."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type}/{entity_id} does not exist")
        self.entity_type = entity_type
        self.entity_id = entity_id

    def __str__(self) -> str:
        return self.args[0]


class OutboxFullError(SyncError):
    """The pending change queue is at capacity."""


__all__ = [
    "CacheError",
    "ConflictResolutionError",
    "EntityNotFoundError",
    "NetworkError",
    "OutboxFullError",
    "RollbackError",
    "SyncError",
]
