"""Shared fakes for the sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import itertools
from typing import Callable

import pytest

from crmsync.sync import InMemoryRemoteStore, MemoryStorage, SyncEngine


class StepClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc), step: float = 1.0):
        self.current = start
        self.step = timedelta(seconds=step)

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def counter_ids(prefix: str = "id") -> Callable[[], str]:
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def make_engine(remote, storage, clock):
    """Factory building engines that share the test's remote, storage and clock."""

    def _make(**kwargs) -> SyncEngine:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("id_generator", counter_ids())
        return SyncEngine(kwargs.pop("remote", remote), kwargs.pop("storage", storage), **kwargs)

    return _make
