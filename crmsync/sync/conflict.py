"""Registry of unresolved field conflicts."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..logging_utils import log_context
from .errors import ConflictResolutionError
from .models import Conflict, ConflictSide, utc_now
from .protocol import Clock, IdGenerator

logger = logging.getLogger("crmsync.sync.conflict")

FieldKey = Tuple[str, str, str]


class ConflictRegistry:
    """Holds at most one unresolved conflict per entity field.

    Conflicts are never resolved automatically; a person picks the local or
    the server value through ``resolve``.
    """

    def __init__(self, clock: Optional[Clock] = None, id_generator: Optional[IdGenerator] = None) -> None:
        self.clock = clock or utc_now
        counter = itertools.count(1)
        self._new_id = id_generator or (lambda: f"conflict-{next(counter)}")
        self._conflicts: Dict[str, Conflict] = {}
        self._by_field: Dict[FieldKey, str] = {}

    def __len__(self) -> int:
        return len(self._conflicts)

    @property
    def conflicts(self) -> List[Conflict]:
        """Unresolved conflicts, oldest first."""
        return list(self._conflicts.values())

    def get(self, conflict_id: str) -> Optional[Conflict]:
        return self._conflicts.get(conflict_id)

    def find(self, entity_type: str, entity_id: str, field_name: str) -> Optional[Conflict]:
        conflict_id = self._by_field.get((entity_type, entity_id, field_name))
        return self._conflicts.get(conflict_id) if conflict_id else None

    def is_conflicted(self, entity_type: str, entity_id: str, field_name: str) -> bool:
        return (entity_type, entity_id, field_name) in self._by_field

    def for_entity(self, entity_type: str, entity_id: str) -> List[Conflict]:
        return [
            conflict
            for conflict in self._conflicts.values()
            if conflict.entity_type == entity_type and conflict.entity_id == entity_id
        ]

    def register(
        self,
        entity_type: str,
        entity_id: str,
        field_name: str,
        local_value: Any,
        server_value: Any,
    ) -> Conflict:
        existing = self.find(entity_type, entity_id, field_name)
        if existing is not None:
            existing.server_value = server_value
            existing.local_value = local_value
            logger.info(
                "Updated conflict %s on %s/%s.%s with new server value",
                existing.id,
                entity_type,
                entity_id,
                field_name,
                extra=log_context(entity_type, entity_id, conflict_id=existing.id),
            )
            return existing

        conflict = Conflict(
            id=self._new_id(),
            entity_type=entity_type,
            entity_id=entity_id,
            field=field_name,
            local_value=local_value,
            server_value=server_value,
            detected_at=self.clock(),
        )
        self._conflicts[conflict.id] = conflict
        self._by_field[(entity_type, entity_id, field_name)] = conflict.id
        logger.info(
            "Conflict %s detected on %s/%s.%s",
            conflict.id,
            entity_type,
            entity_id,
            field_name,
            extra=log_context(entity_type, entity_id, conflict_id=conflict.id),
        )
        return conflict

    def require(self, conflict_id: str) -> Conflict:
        """Return the unresolved conflict or raise ConflictResolutionError."""
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictResolutionError(
                f"Conflict '{conflict_id}' is unknown or already resolved.",
                conflict_id=conflict_id,
            )
        return conflict

    def resolve(self, conflict_id: str, side: ConflictSide) -> Conflict:
        if side == ConflictSide.PENDING:
            raise ConflictResolutionError("Resolution side must be 'local' or 'server'.", conflict_id=conflict_id)
        conflict = self.require(conflict_id)
        conflict.resolution = side
        self._drop(conflict)
        logger.info(
            "Conflict %s resolved with %s value",
            conflict_id,
            side.value,
            extra=log_context(conflict.entity_type, conflict.entity_id, conflict_id=conflict_id),
        )
        return conflict

    def discard_entity(self, entity_type: str, entity_id: str) -> List[Conflict]:
        dropped = self.for_entity(entity_type, entity_id)
        for conflict in dropped:
            self._drop(conflict)
        return dropped

    def to_list(self) -> List[Dict[str, Any]]:
        return [conflict.to_dict() for conflict in self._conflicts.values()]

    def restore(self, items: List[Dict[str, Any]]) -> None:
        self._conflicts.clear()
        self._by_field.clear()
        for item in items:
            conflict = Conflict.from_dict(item)
            if conflict.is_resolved:
                continue
            key = (conflict.entity_type, conflict.entity_id, conflict.field)
            if key in self._by_field:
                continue
            self._conflicts[conflict.id] = conflict
            self._by_field[key] = conflict.id

    def _drop(self, conflict: Conflict) -> None:
        self._conflicts.pop(conflict.id, None)
        self._by_field.pop((conflict.entity_type, conflict.entity_id, conflict.field), None)


__all__ = ["ConflictRegistry"]
