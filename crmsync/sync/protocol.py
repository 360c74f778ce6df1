"""Capability interfaces the engine depends on.

The engine never talks to a concrete database, filesystem or network stack.
Everything it needs from the host is expressed here so tests can substitute
in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol, runtime_checkable

from .models import ChangeAction, FieldPatch, RemoteEvent

Clock = Callable[[], datetime]
IdGenerator = Callable[[], str]


@runtime_checkable
class Subscription(Protocol):
    """Live stream of remote events for one entity collection."""

    def __aiter__(self) -> AsyncIterator[RemoteEvent]:
        ...

    async def __anext__(self) -> RemoteEvent:
        ...

    def cancel(self) -> None:
        """Stop delivery. Iteration ends with StopAsyncIteration afterwards."""
        ...

    @property
    def cancelled(self) -> bool:
        ...


@runtime_checkable
class RemoteStore(Protocol):
    """Remote document database client."""

    async def write(
        self,
        entity_type: str,
        entity_id: str,
        action: ChangeAction,
        patch: Optional[FieldPatch],
    ) -> Dict[str, Any]:
        """Apply a mutation remotely and return the acknowledgment.

        Raises NetworkError on any transient failure.
        """
        ...

    def subscribe(self, entity_type: str) -> Subscription:
        ...


@runtime_checkable
class Storage(Protocol):
    """Durable local key/value storage."""

    async def get(self, key: str) -> Optional[bytes]:
        ...

    async def set(self, key: str, value: bytes) -> None:
        ...


@runtime_checkable
class ConnectivitySource(Protocol):
    """Host signal yielding True/False on each online/offline transition."""

    def __aiter__(self) -> AsyncIterator[bool]:
        ...


__all__ = [
    "Clock",
    "ConnectivitySource",
    "IdGenerator",
    "RemoteStore",
    "Storage",
    "Subscription",
]
