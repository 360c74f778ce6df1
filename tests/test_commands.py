"""Tests for the operator commands reading the persisted journal."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from crmsync.app import build_router
from crmsync.configuration import ConfigurationBundle, Diagnostic
from crmsync.sync import ChangeAction, FileStorage, InMemoryRemoteStore, RemoteEvent, SyncEngine, SyncSettings


@pytest.fixture(autouse=True)
def wide_terminal(monkeypatch):
    monkeypatch.setenv("COLUMNS", "200")


def _bundle(vault: Path, **kwargs) -> ConfigurationBundle:
    return ConfigurationBundle(vault_dir=vault, status="ready", **kwargs)


def _populate(vault: Path) -> None:
    settings = SyncSettings(entity_types=("leads", "clients"))
    engine = SyncEngine(
        InMemoryRemoteStore(),
        FileStorage(settings.state_path(vault)),
        settings=settings,
        initially_online=False,
    )

    async def scenario():
        await engine.mutate("leads", "L1", {"name": "Acme"}, action="create", actor="dana")
        await engine.mutate("clients", "C1", {"name": "Acme Co"}, action="create")
        await engine.handle_remote_event(
            RemoteEvent("clients", "C1", ChangeAction.UPDATE, {"id": "C1", "name": "Acme Corp"})
        )

    asyncio.run(scenario())


def test_empty_vault_reports_nothing_recorded(tmp_path: Path):
    router = build_router(_bundle(tmp_path))

    assert router.handle("pending", []).startswith("[pending] Outbox is empty")
    assert router.handle("history", []) == "[history] No changes recorded yet."
    assert router.handle("conflicts", []) == "[conflicts] No unresolved conflicts."
    assert "No sync journal recorded yet." in router.handle("status", ["sync"])


def test_pending_lists_queued_changes(tmp_path: Path):
    _populate(tmp_path)
    router = build_router(_bundle(tmp_path))

    output = router.handle("pending", [])

    assert "Pending Changes (showing 2 of 2)" in output
    assert "leads/L1" in output
    assert "clients/C1" in output
    assert router.handle("pending", ["crewJobs"]) == "[pending] No queued changes for 'crewJobs'."


def test_history_filters_by_actor(tmp_path: Path):
    _populate(tmp_path)
    router = build_router(_bundle(tmp_path))

    output = router.handle("history", ["dana"])

    assert "Change History (showing 1 of 2)" in output
    assert "leads/L1" in output
    assert "clients/C1" not in output
    assert "No changes matching 'zed'" in router.handle("history", ["zed"])


def test_conflicts_lists_open_conflicts(tmp_path: Path):
    _populate(tmp_path)
    router = build_router(_bundle(tmp_path))

    output = router.handle("conflicts", [])

    assert "Unresolved Conflicts (1)" in output
    assert "clients/C1" in output


def test_status_renders_sections(tmp_path: Path):
    _populate(tmp_path)
    bundle = _bundle(
        tmp_path,
        diagnostics=[Diagnostic(level="warning", message="Unknown configuration key 'config.x'.")],
    )
    router = build_router(bundle)

    output = router.handle("status", [])

    assert "Runtime Status" in output
    assert "Sync" in output
    assert "Pending changes" in output
    assert "Diagnostics" in output
    assert "WARNING" in output


def test_corrupt_journal_is_reported(tmp_path: Path):
    state_dir = tmp_path / "state" / "crmsync"
    state_dir.mkdir(parents=True)
    (state_dir / "journal.json").write_text("{broken", encoding="utf-8")
    router = build_router(_bundle(tmp_path))

    assert router.handle("pending", []).startswith("[pending] Corrupt journal")
    assert "Corrupt journal" in router.handle("status", ["sync"])


def test_help_lists_every_command(tmp_path: Path):
    output = build_router(_bundle(tmp_path)).handle("help", [])

    for name in ("status", "help", "pending", "history", "conflicts"):
        assert name in output
