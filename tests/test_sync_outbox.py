import asyncio

import pytest

from crmsync.sync import ChangeAction, NetworkError, OutboxFullError
from crmsync.sync.outbox import PendingChangeQueue, RetryPolicy


def _queue(clock, **kwargs):
    return PendingChangeQueue(clock=clock, **kwargs)


def test_retry_policy_grows_exponentially_and_caps():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, multiplier=2.0)

    assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_entries_keep_global_enqueue_order(clock):
    queue = _queue(clock)
    queue.enqueue("leads", "L1", {"name": "a"})
    queue.enqueue("leads", "L2", {"name": "b"})
    queue.enqueue("leads", "L1", {"name": "c"})

    assert [entry.field_patch["name"] for entry in queue.entries] == ["a", "b", "c"]
    assert queue.entity_keys() == [("leads", "L1"), ("leads", "L2")]
    assert queue.pending_value("leads", "L1", "name") == (True, "c")
    assert queue.pending_value("leads", "L1", "status") == (False, None)


def test_capacity_is_enforced_unless_forced(clock):
    queue = _queue(clock, max_pending=1)
    queue.enqueue("leads", "L1", {"name": "a"})

    with pytest.raises(OutboxFullError):
        queue.enqueue("leads", "L2", {"name": "b"})
    queue.enqueue("leads", "L2", {"name": "b"}, force=True)
    assert len(queue) == 2


def test_drain_replays_in_order_and_stops_at_failure(clock):
    queue = _queue(clock)
    first = queue.enqueue("leads", "L1", {"name": "a"})
    queue.enqueue("leads", "L1", {"name": "b"})
    written = []

    async def flaky(entry):
        if entry.field_patch["name"] == "b":
            raise NetworkError("offline")
        written.append(entry.id)

    result = asyncio.run(queue.drain_entity(("leads", "L1"), flaky))

    assert written == [first.id]
    assert result.acknowledged == [first]
    assert result.failed == 1
    remaining = queue.pending_for("leads", "L1")
    assert len(remaining) == 1
    assert remaining[0].retry_count == 1
    assert remaining[0].last_error == "offline"
    assert remaining[0].next_attempt_at is not None


def test_backed_off_head_is_deferred_when_respecting_backoff(clock):
    queue = _queue(clock, retry_policy=RetryPolicy(base_delay=60.0))
    queue.enqueue("leads", "L1", {"name": "a"})

    async def failing(entry):
        raise NetworkError("offline")

    async def succeeding(entry):
        return None

    async def scenario():
        await queue.drain_entity(("leads", "L1"), failing)
        deferred = await queue.drain_entity(("leads", "L1"), succeeding, respect_backoff=True)
        forced = await queue.drain_entity(("leads", "L1"), succeeding, respect_backoff=False)
        return deferred, forced

    deferred, forced = asyncio.run(scenario())

    assert deferred.deferred == 1
    assert len(forced.acknowledged) == 1
    assert len(queue) == 0


def test_blocked_head_holds_back_the_entity(clock):
    queue = _queue(clock)
    queue.enqueue("leads", "L1", {"name": "a"})
    queue.enqueue("leads", "L1", {"status": "open"})

    async def writer(entry):
        raise AssertionError("blocked entries must not be written")

    result = asyncio.run(
        queue.drain_entity(("leads", "L1"), writer, blocked=lambda entry: "name" in entry.field_patch)
    )

    assert result.blocked == 1
    assert len(queue) == 2


def test_settle_field_strips_updates_and_rewrites_create(clock):
    queue = _queue(clock)
    queue.enqueue("leads", "L1", {"name": "a", "owner": "ana"}, action=ChangeAction.CREATE)
    queue.enqueue("leads", "L1", {"name": "b"})
    queue.enqueue("leads", "L1", {"name": "c", "status": "open"})

    removed = queue.settle_field("leads", "L1", "name", "server")

    assert removed == 1
    assert [entry.field_patch for entry in queue.entries] == [
        {"name": "server", "owner": "ana"},
        {"status": "open"},
    ]
    assert queue.pending_value("leads", "L1", "name") == (True, "server")


def test_restore_round_trips_entries(clock):
    queue = _queue(clock)
    queue.enqueue("leads", "L1", {"name": "a"}, change_id="c-1")
    queue.enqueue("clients", "C1", None, action=ChangeAction.DELETE)

    restored = _queue(clock)
    restored.restore(queue.to_list())

    assert [entry.to_dict() for entry in restored.entries] == queue.to_list()
    assert restored.has_pending_create("leads", "L1") is False
