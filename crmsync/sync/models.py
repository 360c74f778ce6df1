"""Record types shared by the synchronization engine."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

Record = Dict[str, Any]
FieldPatch = Dict[str, Any]


class ChangeAction(str, Enum):
    """Kinds of mutation a Change can describe."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeOrigin(str, Enum):
    """Where an applied mutation came from."""
    LOCAL = "local"
    REMOTE = "remote"
    ROLLBACK = "rollback"


class ConflictSide(str, Enum):
    """Resolution state of a conflict."""
    PENDING = "pending"
    LOCAL = "local"
    SERVER = "server"


class FieldState(str, Enum):
    """Per-field synchronization state of a tracked attribute."""
    CLEAN = "clean"
    PENDING_LOCAL = "pending_local"
    SYNCED = "synced"
    CONFLICTED = "conflicted"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Change:
    """One applied mutation. Immutable once appended to the change log."""

    id: str
    entity_type: str
    entity_id: str
    action: ChangeAction
    field_patch: FieldPatch
    before_state: Optional[Record]
    after_state: Optional[Record]
    origin: ChangeOrigin
    actor: str
    applied_at: datetime

    def touches(self, entity_type: str, entity_id: str, field_name: Optional[str] = None) -> bool:
        """Return True when this change wrote to the entity (or the given field of it)."""
        if self.entity_type != entity_type or self.entity_id != entity_id:
            return False
        if field_name is None or self.action != ChangeAction.UPDATE:
            return True
        return field_name in self.field_patch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action.value,
            "field_patch": deepcopy(self.field_patch),
            "before_state": deepcopy(self.before_state),
            "after_state": deepcopy(self.after_state),
            "origin": self.origin.value,
            "actor": self.actor,
            "applied_at": format_timestamp(self.applied_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Change":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            action=ChangeAction(data["action"]),
            field_patch=dict(data.get("field_patch") or {}),
            before_state=data.get("before_state"),
            after_state=data.get("after_state"),
            origin=ChangeOrigin(data["origin"]),
            actor=data.get("actor", ""),
            applied_at=parse_timestamp(data["applied_at"]),
        )


@dataclass
class PendingChange:
    """A local mutation waiting for the remote store to acknowledge it."""

    id: str
    entity_type: str
    entity_id: str
    field_patch: FieldPatch
    created_at: datetime
    action: ChangeAction = ChangeAction.UPDATE
    retry_count: int = 0
    change_id: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field_patch": deepcopy(self.field_patch),
            "created_at": format_timestamp(self.created_at),
            "action": self.action.value,
            "retry_count": self.retry_count,
            "change_id": self.change_id,
            "last_error": self.last_error,
            "next_attempt_at": format_timestamp(self.next_attempt_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingChange":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            field_patch=dict(data.get("field_patch") or {}),
            created_at=parse_timestamp(data["created_at"]),
            action=ChangeAction(data.get("action", "update")),
            retry_count=int(data.get("retry_count", 0)),
            change_id=data.get("change_id"),
            last_error=data.get("last_error"),
            next_attempt_at=parse_timestamp(data.get("next_attempt_at")),
        )


@dataclass
class Conflict:
    """Divergence between a queued local value and an observed server value."""

    id: str
    entity_type: str
    entity_id: str
    field: str
    local_value: Any
    server_value: Any
    detected_at: datetime
    resolution: ConflictSide = ConflictSide.PENDING

    @property
    def is_resolved(self) -> bool:
        return self.resolution != ConflictSide.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field": self.field,
            "local_value": deepcopy(self.local_value),
            "server_value": deepcopy(self.server_value),
            "detected_at": format_timestamp(self.detected_at),
            "resolution": self.resolution.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conflict":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            field=data["field"],
            local_value=data.get("local_value"),
            server_value=data.get("server_value"),
            detected_at=parse_timestamp(data["detected_at"]),
            resolution=ConflictSide(data.get("resolution", "pending")),
        )


@dataclass
class CacheSnapshot:
    """Last known-good copy of one entity collection."""

    entity_type: str
    records: list = field(default_factory=list)
    cached_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "records": deepcopy(self.records),
            "cached_at": format_timestamp(self.cached_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheSnapshot":
        records = data.get("records")
        if not isinstance(records, list):
            raise ValueError("snapshot records must be a list")
        return cls(
            entity_type=data["entity_type"],
            records=records,
            cached_at=parse_timestamp(data.get("cached_at")),
        )


@dataclass
class ConnectivityState:
    """Process-wide connectivity flag plus the time of the last clean drain."""

    is_online: bool = True
    last_sync_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "last_sync_time": format_timestamp(self.last_sync_time),
        }


@dataclass
class RemoteEvent:
    """A document change pushed by a realtime subscription."""

    entity_type: str
    entity_id: str
    action: ChangeAction
    data: Record = field(default_factory=dict)
    received_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action.value,
            "data": deepcopy(self.data),
            "received_at": format_timestamp(self.received_at),
        }


__all__ = [
    "Change",
    "ChangeAction",
    "ChangeOrigin",
    "CacheSnapshot",
    "Conflict",
    "ConflictSide",
    "ConnectivityState",
    "FieldPatch",
    "FieldState",
    "PendingChange",
    "Record",
    "RemoteEvent",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
]
