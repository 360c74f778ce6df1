"""Scenario tests for the sync engine facade."""

from __future__ import annotations

import asyncio
import gc

import pytest

from crmsync.sync import (
    ChangeAction,
    ChangeOrigin,
    ConflictResolutionError,
    EntityNotFoundError,
    FieldState,
    OutboxFullError,
    RemoteEvent,
    RollbackError,
    SyncSettings,
)


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _remote_update(entity_type: str, entity_id: str, **fields) -> RemoteEvent:
    return RemoteEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        action=ChangeAction.UPDATE,
        data={"id": entity_id, **fields},
    )


def test_online_mutation_writes_through_and_is_acknowledged(make_engine, remote):
    async def scenario():
        engine = make_engine()
        change = await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        return engine, change

    engine, change = asyncio.run(scenario())

    assert engine.pending_changes == []
    assert remote.documents["leads"]["L1"] == {"id": "L1", "name": "Acme"}
    assert change.origin == ChangeOrigin.LOCAL
    assert change.actor == "Unknown User"
    assert engine.history.is_acknowledged(change.id)
    assert engine.field_state("leads", "L1", "name") == FieldState.SYNCED


def test_offline_edit_drains_on_reconnect(make_engine, remote):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"status": "new"}, action="create")
        await engine.set_online_status(False)

        edit = await engine.mutate("leads", "L1", {"status": "contacted"})
        queued = len(engine.pending_changes)
        state_while_offline = engine.field_state("leads", "L1", "status")
        history_before = len(engine.change_history)

        await engine.set_online_status(True)
        return engine, edit, queued, state_while_offline, history_before

    engine, edit, queued, state_while_offline, history_before = asyncio.run(scenario())

    assert queued == 1
    assert state_while_offline == FieldState.PENDING_LOCAL
    assert engine.pending_changes == []
    assert remote.documents["leads"]["L1"]["status"] == "contacted"
    assert len(engine.change_history) == history_before
    assert engine.change_history[-1].id == edit.id
    assert engine.change_history[-1].origin == ChangeOrigin.LOCAL
    assert engine.history.is_acknowledged(edit.id)
    assert engine.field_state("leads", "L1", "status") == FieldState.SYNCED
    assert engine.last_sync_time is not None


def test_remote_event_on_pending_field_registers_conflict(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.mutate("clients", "C1", {"name": "Acme"}, action="create")
        await engine.set_online_status(False)
        await engine.mutate("clients", "C1", {"name": "Acme Co"})
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Corp"))
        return engine

    engine = asyncio.run(scenario())

    conflicts = engine.conflict_resolution.conflicts
    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert (conflict.field, conflict.local_value, conflict.server_value) == ("name", "Acme Co", "Acme Corp")
    assert engine.get_record("clients", "C1")["name"] == "Acme Co"
    assert engine.field_state("clients", "C1", "name") == FieldState.CONFLICTED
    assert len(engine.pending_changes) == 1


def test_second_divergence_updates_existing_conflict(make_engine):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("clients", "C1", {"name": "Acme"}, action="create")
        await engine.mutate("clients", "C1", {"name": "Acme Co"})
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Corp"))
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Inc"))
        return engine

    engine = asyncio.run(scenario())

    conflicts = engine.conflict_resolution.conflicts
    assert len(conflicts) == 1
    assert conflicts[0].server_value == "Acme Inc"


def test_remote_event_without_pending_edit_applies_directly(make_engine):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.handle_remote_event(
            RemoteEvent("leads", "L1", ChangeAction.CREATE, {"id": "L1", "name": "Acme", "status": "new"})
        )
        await engine.mutate("leads", "L1", {"status": "won"})
        change = await engine.handle_remote_event(_remote_update("leads", "L1", name="Acme Ltd", status="won"))
        return engine, change

    engine, change = asyncio.run(scenario())

    assert engine.conflict_resolution.conflicts == []
    assert change.origin == ChangeOrigin.REMOTE
    assert change.field_patch == {"name": "Acme Ltd"}
    assert engine.get_record("leads", "L1") == {"id": "L1", "name": "Acme Ltd", "status": "won"}
    assert engine.field_state("leads", "L1", "name") == FieldState.SYNCED
    assert engine.field_state("leads", "L1", "status") == FieldState.PENDING_LOCAL


def test_conflicted_entry_blocks_drain_until_resolved_local(make_engine, remote):
    async def scenario():
        engine = make_engine()
        await engine.mutate("clients", "C1", {"name": "Acme"}, action="create")
        await engine.set_online_status(False)
        await engine.mutate("clients", "C1", {"name": "Acme Co"})
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Corp"))

        result = await engine.drain_outbox()
        await engine.set_online_status(True)
        still_queued = len(engine.pending_changes)

        conflict = engine.conflict_resolution.conflicts[0]
        resolution = await engine.resolve_conflict(conflict.id, "local")
        return engine, result, still_queued, resolution, conflict

    engine, result, still_queued, resolution, conflict = asyncio.run(scenario())

    assert result.acknowledged == []
    assert still_queued == 1
    assert engine.conflict_resolution.conflicts == []
    assert engine.pending_changes == []
    assert remote.documents["clients"]["C1"]["name"] == "Acme Co"
    assert resolution.origin == ChangeOrigin.LOCAL
    assert engine.field_state("clients", "C1", "name") == FieldState.SYNCED
    assert conflict.id not in {c.id for c in engine.conflict_resolution.conflicts}


def test_resolve_server_discards_local_edit(make_engine, remote):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("clients", "C1", {"name": "Acme", "tier": "gold"}, action="create")
        await engine.mutate("clients", "C1", {"name": "Acme Co"})
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Corp"))
        conflict = engine.conflict_resolution.conflicts[0]
        change = await engine.resolve_conflict(conflict.id, "server")
        with pytest.raises(ConflictResolutionError):
            await engine.resolve_conflict(conflict.id, "server")
        return engine, change

    engine, change = asyncio.run(scenario())

    assert change.origin == ChangeOrigin.REMOTE
    assert engine.get_record("clients", "C1")["name"] == "Acme Corp"
    assert engine.field_state("clients", "C1", "name") == FieldState.SYNCED
    # only the queued create remains, now carrying the server value
    assert [entry.action for entry in engine.pending_changes] == [ChangeAction.CREATE]
    assert engine.pending_changes[0].field_patch == {"name": "Acme Corp", "tier": "gold"}
    assert remote.writes == []


def test_resolve_server_on_queued_create_survives_reconnect(make_engine, remote):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("clients", "C1", {"name": "Acme Co", "tier": "gold"}, action="create")
        remote.seed("clients", [{"id": "C1", "name": "Acme Corp"}])
        await engine.handle_remote_event(
            RemoteEvent("clients", "C1", ChangeAction.CREATE, {"id": "C1", "name": "Acme Corp"})
        )
        conflict = engine.conflict_resolution.conflicts[0]
        await engine.resolve_conflict(conflict.id, "server")
        await engine.set_online_status(True)
        return engine

    engine = asyncio.run(scenario())

    expected = {"id": "C1", "name": "Acme Corp", "tier": "gold"}
    assert remote.documents["clients"]["C1"] == expected
    assert engine.get_record("clients", "C1") == expected
    assert engine.pending_changes == []


def test_resolve_conflict_rejects_unknown_side(make_engine):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("clients", "C1", {"name": "Acme"}, action="create")
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Other"))
        conflict = engine.conflict_resolution.conflicts[0]
        with pytest.raises(ConflictResolutionError):
            await engine.resolve_conflict(conflict.id, "pending")
        with pytest.raises(ConflictResolutionError):
            await engine.resolve_conflict(conflict.id, "mine")
        return engine

    engine = asyncio.run(scenario())
    assert len(engine.conflict_resolution.conflicts) == 1


def test_rollback_restores_previous_value_once(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        change = await engine.mutate("leads", "L1", {"status": "closed"})
        rollback = await engine.rollback_change(change.id)
        with pytest.raises(RollbackError):
            await engine.rollback_change(change.id)
        return engine, change, rollback

    engine, change, rollback = asyncio.run(scenario())

    assert engine.get_record("leads", "L1")["status"] == "open"
    assert rollback.origin == ChangeOrigin.ROLLBACK
    assert engine.change_history[-1].id == rollback.id
    assert engine.history.is_rolled_back(change.id)


def test_rollback_rejects_superseded_change(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"status": "open", "owner": "ana"}, action="create")
        first = await engine.mutate("leads", "L1", {"status": "closed"})
        await engine.mutate("leads", "L1", {"status": "won"})
        with pytest.raises(RollbackError):
            await engine.rollback_change(first.id)
        return engine

    engine = asyncio.run(scenario())
    assert engine.get_record("leads", "L1")["status"] == "won"


def test_rollback_rejects_deleted_entity_and_unknown_change(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        update = await engine.mutate("leads", "L1", {"status": "closed"})
        await engine.mutate("leads", "L1", action="delete")
        with pytest.raises(RollbackError):
            await engine.rollback_change(update.id)
        with pytest.raises(RollbackError):
            await engine.rollback_change("missing")

    asyncio.run(scenario())


def test_rollback_rejects_change_evicted_from_history(make_engine):
    async def scenario():
        engine = make_engine(settings=SyncSettings(history_limit=2))
        first = await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        await engine.mutate("leads", "L2", {"status": "open"}, action="create")
        await engine.mutate("leads", "L3", {"status": "open"}, action="create")
        with pytest.raises(RollbackError):
            await engine.rollback_change(first.id)
        return engine

    engine = asyncio.run(scenario())

    assert len(engine.change_history) == 2
    assert engine.get_record("leads", "L1") == {"id": "L1", "status": "open"}


def test_rollback_of_create_and_delete(make_engine, remote):
    async def scenario():
        engine = make_engine()
        created = await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        await engine.rollback_change(created.id)
        gone = engine.get_record("leads", "L1")

        await engine.mutate("leads", "L2", {"status": "open"}, action="create")
        deleted = await engine.mutate("leads", "L2", action="delete")
        await engine.rollback_change(deleted.id)
        return engine, gone

    engine, gone = asyncio.run(scenario())

    assert gone is None
    assert "L1" not in remote.documents["leads"]
    assert engine.get_record("leads", "L2") == {"id": "L2", "status": "open"}
    assert remote.documents["leads"]["L2"] == {"id": "L2", "status": "open"}


def test_cache_round_trip_restores_same_records(make_engine, storage):
    async def scenario():
        engine = make_engine()
        for index in range(10):
            await engine.mutate("leads", f"L{index}", {"name": f"Lead {index}", "score": index}, action="create")
        expected = engine.records("leads")
        await engine.cache_data()

        fresh = make_engine(storage=storage)
        await fresh.load_from_cache()
        return expected, fresh.records("leads")

    expected, restored = asyncio.run(scenario())

    assert len(restored) == 10
    assert sorted(restored, key=lambda r: r["id"]) == sorted(expected, key=lambda r: r["id"])


def test_load_from_cache_keeps_queued_edits(make_engine, storage):
    async def scenario():
        seeded = make_engine()
        await seeded.mutate("leads", "L1", {"name": "Acme"}, action="create")
        await seeded.cache_data()

        engine = make_engine(storage=storage, initially_online=False)
        await engine.load_from_cache()
        await engine.mutate("leads", "L1", {"name": "Acme Co"})
        await engine.load_from_cache()
        return engine

    engine = asyncio.run(scenario())
    assert engine.get_record("leads", "L1") == {"id": "L1", "name": "Acme Co"}


def test_corrupt_cache_yields_empty_collection(make_engine, storage):
    async def scenario():
        await storage.set("snapshot:leads", b"{not json")
        engine = make_engine()
        counts = await engine.load_from_cache()
        return counts

    counts = asyncio.run(scenario())
    assert counts["leads"] == 0


def test_offline_transition_serves_reads_from_cache(make_engine, storage):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        await engine.set_online_status(False)
        return engine

    engine = asyncio.run(scenario())

    assert not engine.is_online
    assert engine.get_record("leads", "L1") == {"id": "L1", "name": "Acme"}
    assert "snapshot:leads" in storage.keys()


def test_outbox_eventually_drains_after_failures(make_engine, remote):
    async def scenario():
        engine = make_engine(initially_online=False)
        for entity_id in ("L1", "L2", "L3"):
            await engine.mutate("leads", entity_id, {"name": entity_id}, action="create")
            await engine.mutate("leads", entity_id, {"status": "open"})

        remote.fail_writes = True
        await engine.set_online_status(True)
        retries = sorted({entry.retry_count for entry in engine.pending_changes})
        queued = len(engine.pending_changes)

        remote.fail_writes = False
        result = await engine.drain_outbox()
        await engine.close()
        return engine, retries, queued, result

    engine, retries, queued, result = asyncio.run(scenario())

    assert queued == 6
    assert retries == [0, 1]
    assert engine.pending_changes == []
    assert result.failed == 0
    assert remote.documents["leads"]["L2"] == {"id": "L2", "name": "L2", "status": "open"}


def test_rejected_entity_does_not_block_others(make_engine, remote):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("leads", "L1", {"name": "one"}, action="create")
        await engine.mutate("leads", "L2", {"name": "two"}, action="create")
        remote.reject.add(("leads", "L1"))
        await engine.set_online_status(True)
        await engine.close()
        return engine

    engine = asyncio.run(scenario())

    assert [entry.entity_id for entry in engine.pending_changes] == ["L1"]
    assert engine.pending_changes[0].last_error
    assert "L2" in remote.documents["leads"]


def test_local_delete_discards_unsent_create(make_engine, remote):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("leads", "L9", {"name": "draft"}, action="create")
        await engine.mutate("leads", "L9", {"status": "open"})
        await engine.mutate("leads", "L9", action="delete")
        queued = len(engine.pending_changes)
        await engine.set_online_status(True)
        return engine, queued

    engine, queued = asyncio.run(scenario())

    assert queued == 0
    assert remote.writes == []
    assert engine.get_record("leads", "L9") is None


def test_remote_delete_discards_queued_edits(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        await engine.set_online_status(False)
        await engine.mutate("leads", "L1", {"name": "Acme Co"})
        change = await engine.handle_remote_event(RemoteEvent("leads", "L1", ChangeAction.DELETE))
        return engine, change

    engine, change = asyncio.run(scenario())

    assert engine.get_record("leads", "L1") is None
    assert engine.pending_changes == []
    assert change.origin == ChangeOrigin.REMOTE
    assert change.before_state == {"id": "L1", "name": "Acme Co"}


def test_mutation_validation(make_engine):
    async def scenario():
        engine = make_engine()
        with pytest.raises(EntityNotFoundError):
            await engine.mutate("leads", "nope", {"name": "x"})
        await engine.mutate("leads", "L1", {"name": "x"}, action="create")
        with pytest.raises(ValueError):
            await engine.mutate("leads", "L1", {"name": "y"}, action="create")
        with pytest.raises(ValueError):
            await engine.mutate("leads", "L1", {})
        with pytest.raises(ValueError):
            await engine.mutate("unicorns", "U1", {"name": "x"}, action="create")
        return engine

    engine = asyncio.run(scenario())
    assert len(engine.change_history) == 1


def test_outbox_capacity_rejects_before_applying(make_engine):
    async def scenario():
        engine = make_engine(settings=SyncSettings(max_pending=2), initially_online=False)
        await engine.mutate("leads", "L1", {"name": "a"}, action="create")
        await engine.mutate("leads", "L1", {"name": "b"})
        with pytest.raises(OutboxFullError):
            await engine.mutate("leads", "L1", {"name": "c"})
        return engine

    engine = asyncio.run(scenario())
    assert engine.get_record("leads", "L1")["name"] == "b"
    assert len(engine.change_history) == 2


def test_bulk_mutate_collects_failures(make_engine, remote):
    async def scenario():
        engine = make_engine()
        return engine, await engine.bulk_mutate(
            "leads",
            [
                {"id": "L1", "name": "one"},
                {"id": "L2", "name": "two"},
                {"name": "missing id"},
                {"id": "L1", "name": "duplicate"},
            ],
            action="create",
        )

    engine, result = asyncio.run(scenario())

    assert len(result.changes) == 2
    assert len(result.failures) == 2
    assert not result.success
    assert engine.get_record("leads", "L1")["name"] == "one"
    assert set(remote.documents["leads"]) == {"L1", "L2"}


def test_actor_is_recorded(make_engine):
    async def scenario():
        engine = make_engine(settings=SyncSettings(actor="Dana"))
        default = await engine.mutate("leads", "L1", {"name": "a"}, action="create")
        explicit = await engine.mutate("leads", "L1", {"name": "b"}, actor="Sam")
        return default, explicit

    default, explicit = asyncio.run(scenario())
    assert default.actor == "Dana"
    assert explicit.actor == "Sam"


def test_realtime_listeners_feed_engine_and_stop_cleanly(make_engine, remote):
    remote.seed("leads", [{"id": "L1", "name": "Acme"}])

    async def scenario():
        engine = make_engine(settings=SyncSettings(entity_types=("leads", "clients")))
        opened = await engine.start_realtime_listeners()
        reopened = await engine.start_realtime_listeners()
        subscribers = remote.subscriber_count("leads")
        await _settle()
        initial = engine.get_record("leads", "L1")

        remote.push_remote_change("leads", "L1", {"name": "Acme Ltd"})
        await _settle()
        updated = engine.get_record("leads", "L1")

        await engine.stop_realtime_listeners()
        remote.push_remote_change("leads", "L1", {"name": "Ignored"})
        await _settle()
        return engine, opened, reopened, subscribers, initial, updated

    engine, opened, reopened, subscribers, initial, updated = asyncio.run(scenario())

    assert opened == ["leads", "clients"]
    assert reopened == []
    assert subscribers == 1
    assert remote.subscriber_count() == 0
    assert initial == {"id": "L1", "name": "Acme"}
    assert updated["name"] == "Acme Ltd"
    assert engine.get_record("leads", "L1")["name"] == "Acme Ltd"
    assert engine.change_history[-1].origin == ChangeOrigin.REMOTE


def test_own_write_echo_is_not_recorded_twice(make_engine):
    async def scenario():
        engine = make_engine()
        await engine.start_realtime_listeners()
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        await engine.mutate("leads", "L1", {"name": "Acme Co"})
        await _settle()
        await engine.stop_realtime_listeners()
        return engine

    engine = asyncio.run(scenario())

    assert [change.origin for change in engine.change_history] == [ChangeOrigin.LOCAL, ChangeOrigin.LOCAL]
    assert engine.conflict_resolution.conflicts == []
    assert engine.get_record("leads", "L1")["name"] == "Acme Co"


def test_writes_made_before_listening_do_not_hide_remote_edits(make_engine, remote):
    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        await engine.mutate("leads", "L1", {"status": "closed"})
        await engine.mutate("leads", "L1", {"status": "open"})
        await engine.start_realtime_listeners()
        await _settle()

        remote.push_remote_change("leads", "L1", {"status": "closed"})
        await _settle()
        await engine.stop_realtime_listeners()
        return engine

    engine = asyncio.run(scenario())

    assert remote.documents["leads"]["L1"]["status"] == "closed"
    assert engine.get_record("leads", "L1")["status"] == "closed"
    assert engine.change_history[-1].origin == ChangeOrigin.REMOTE
    assert engine.change_history[-1].field_patch == {"status": "closed"}


def test_stale_echo_does_not_revert_newer_local_value(make_engine, remote):
    async def scenario():
        engine = make_engine()
        await engine.start_realtime_listeners()
        await engine.mutate("leads", "L1", {"status": "open"}, action="create")
        await engine.mutate("leads", "L1", {"status": "closed"})
        await engine.mutate("leads", "L1", {"status": "won"})
        await _settle()
        await engine.stop_realtime_listeners()
        return engine

    engine = asyncio.run(scenario())

    assert engine.get_record("leads", "L1")["status"] == "won"
    assert all(change.origin == ChangeOrigin.LOCAL for change in engine.change_history)


def test_entity_locks_do_not_outlive_their_operations(make_engine):
    async def scenario():
        engine = make_engine()
        for entity_id in ("L1", "L2", "L3"):
            await engine.mutate("leads", entity_id, {"name": entity_id}, action="create")
            await engine.mutate("leads", entity_id, action="delete")
        held = engine._lock_for("leads", "L9")
        shared = engine._lock_for("leads", "L9") is held
        del held
        gc.collect()
        return engine, shared

    engine, shared = asyncio.run(scenario())

    assert shared
    assert len(engine._locks) == 0


def test_restore_reloads_journal(make_engine, storage):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("clients", "C1", {"name": "Acme"}, action="create")
        await engine.mutate("clients", "C1", {"name": "Acme Co"})
        await engine.handle_remote_event(_remote_update("clients", "C1", name="Acme Corp"))
        await engine.cache_data()

        restored = make_engine(storage=storage, initially_online=False)
        await restored.restore()
        return engine, restored

    engine, restored = asyncio.run(scenario())

    assert [e.id for e in restored.pending_changes] == [e.id for e in engine.pending_changes]
    assert [c.id for c in restored.conflict_resolution.conflicts] == [
        c.id for c in engine.conflict_resolution.conflicts
    ]
    assert [c.id for c in restored.change_history] == [c.id for c in engine.change_history]
    assert restored.get_record("clients", "C1") == {"id": "C1", "name": "Acme Co"}
    assert restored.field_state("clients", "C1", "name") == FieldState.CONFLICTED


def test_watch_connectivity_follows_source(make_engine, remote):
    async def transitions():
        for online in (False, True):
            yield online

    async def scenario():
        engine = make_engine()
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        task = engine.watch_connectivity(transitions())
        await task
        return engine

    engine = asyncio.run(scenario())
    assert engine.is_online
    assert engine.last_sync_time is not None


def test_status_reports_counts(make_engine):
    async def scenario():
        engine = make_engine(initially_online=False)
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create")
        return engine.status()

    status = asyncio.run(scenario())

    assert status["is_online"] is False
    assert status["pending_changes"] == 1
    assert status["collections"]["leads"] == 1
    assert status["last_sync_time"] is None
