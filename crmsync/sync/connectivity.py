"""Connectivity tracking and host network probing."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
import socket
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple

import psutil

from .models import ConnectivityState
from .protocol import ConnectivitySource

logger = logging.getLogger("crmsync.sync.connectivity")

TransitionListener = Callable[[bool], Awaitable[None]]

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_CHECK_TIMEOUT = 1.0


class ConnectivityMonitor:
    """Tracks online/offline state and relays transitions to listeners.

    Listeners run only on an actual transition, in registration order.
    """

    def __init__(self, initially_online: bool = True) -> None:
        self.state = ConnectivityState(is_online=initially_online)
        self._listeners: List[TransitionListener] = []
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def is_online(self) -> bool:
        return self.state.is_online

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self.state.last_sync_time

    def on_transition(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def set_online_status(self, online: bool) -> bool:
        """Record the new state; return True if it was a transition."""
        online = bool(online)
        if online == self.state.is_online:
            return False
        self.state.is_online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            await listener(online)
        return True

    def mark_synced(self, when: datetime) -> None:
        self.state.last_sync_time = when

    def attach(self, source: ConnectivitySource) -> "asyncio.Task[None]":
        """Follow a host connectivity source in a background task."""
        self.detach()
        self._task = asyncio.create_task(self._follow(source), name="crmsync-connectivity")
        return self._task

    def detach(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _follow(self, source: ConnectivitySource) -> None:
        async for online in source:
            await self.set_online_status(online)


@dataclass
class HostConnectivitySource:
    """Polls host interfaces (and optional TCP targets) and yields transitions."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    include_loopback: bool = False
    checks: Sequence[str] = field(default_factory=tuple)
    timeout: float = DEFAULT_CHECK_TIMEOUT

    def __aiter__(self) -> AsyncIterator[bool]:
        return self._watch()

    async def _watch(self) -> AsyncIterator[bool]:
        last: Optional[bool] = None
        while True:
            current = await asyncio.to_thread(self.check_online)
            if current != last:
                last = current
                yield current
            await asyncio.sleep(self.poll_interval)

    def check_online(self) -> bool:
        """Return True when an interface is up and any configured target answers."""
        if not self._any_interface_up():
            return False
        if not self.checks:
            return True
        return any(_reachable(target, self.timeout) for target in self.checks)

    def _any_interface_up(self) -> bool:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()
        for name, entry in stats.items():
            if not getattr(entry, "isup", False):
                continue
            if not self.include_loopback and _is_loopback(name, addrs.get(name, ())):
                continue
            return True
        return False


def _is_loopback(name: str, entries: Sequence[Any]) -> bool:
    if name.lower().startswith("lo"):
        return True
    for addr in entries:
        address = getattr(addr, "address", "")
        if isinstance(address, str) and (
            address.startswith("127.") or address in {"::1", "0:0:0:0:0:0:0:1"}
        ):
            return True
    return False


def _reachable(target: str, timeout: float) -> bool:
    host, port = parse_target(target)
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as exc:
        logger.debug("Connectivity check %s:%s failed: %s", host, port, exc)
        return False


def parse_target(target: str) -> Tuple[str, int]:
    default_port = 443
    stripped = target.strip()
    if not stripped:
        return ("localhost", default_port)
    if stripped.count(":") == 1 and stripped.split(":", 1)[1].isdigit():
        host, raw_port = stripped.split(":", 1)
        return (host or "localhost", int(raw_port))
    return (stripped, default_port)


__all__ = [
    "ConnectivityMonitor",
    "HostConnectivitySource",
    "TransitionListener",
    "parse_target",
]
