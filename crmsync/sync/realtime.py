"""Live subscriptions that feed remote events into the engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import NetworkError
from .models import RemoteEvent
from .protocol import RemoteStore, Subscription

logger = logging.getLogger("crmsync.sync.realtime")

EventHandler = Callable[[RemoteEvent], Awaitable[None]]


@dataclass
class _Listener:
    entity_type: str
    subscription: Subscription
    task: Optional["asyncio.Task[None]"] = None
    handling: bool = False
    delivered: int = 0


class RealtimeSubscriptionManager:
    """Opens one subscription per tracked entity type.

    ``start`` is idempotent. ``stop`` cancels every subscription token so no
    new event is delivered; an event whose handler is already running is
    allowed to finish.
    """

    def __init__(self, remote: RemoteStore, entity_types: Sequence[str], handler: EventHandler) -> None:
        self.remote = remote
        self.entity_types = list(entity_types)
        self.handler = handler
        self._listeners: Dict[str, _Listener] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._listeners)

    @property
    def active_types(self) -> List[str]:
        return sorted(self._listeners)

    def delivered(self, entity_type: str) -> int:
        listener = self._listeners.get(entity_type)
        return listener.delivered if listener else 0

    async def start(self) -> List[str]:
        """Open missing subscriptions and return the types opened by this call."""
        opened: List[str] = []
        for entity_type in self.entity_types:
            if entity_type in self._listeners:
                continue
            try:
                subscription = self.remote.subscribe(entity_type)
            except NetworkError as exc:
                logger.warning("Could not subscribe to %s: %s", entity_type, exc)
                continue
            listener = _Listener(entity_type=entity_type, subscription=subscription)
            listener.task = asyncio.create_task(
                self._consume(listener),
                name=f"crmsync-realtime-{entity_type}",
            )
            self._listeners[entity_type] = listener
            opened.append(entity_type)
        if opened:
            logger.info("Realtime listeners started for %s", ", ".join(opened))
        return opened

    async def stop(self) -> None:
        listeners = list(self._listeners.values())
        self._listeners.clear()
        for listener in listeners:
            listener.subscription.cancel()
            if listener.task is not None and not listener.handling:
                listener.task.cancel()
        tasks = [listener.task for listener in listeners if listener.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Realtime listeners stopped (%d)", len(tasks))

    async def _consume(self, listener: _Listener) -> None:
        subscription = listener.subscription
        try:
            async for event in subscription:
                if subscription.cancelled:
                    break
                listener.handling = True
                try:
                    await self.handler(event)
                    listener.delivered += 1
                except Exception:
                    logger.exception(
                        "Failed to apply remote event for %s/%s",
                        event.entity_type,
                        event.entity_id,
                    )
                finally:
                    listener.handling = False
        except NetworkError as exc:
            logger.warning("Realtime stream for %s ended: %s", listener.entity_type, exc)
            if self._listeners.get(listener.entity_type) is listener:
                del self._listeners[listener.entity_type]


__all__ = ["EventHandler", "RealtimeSubscriptionManager"]
