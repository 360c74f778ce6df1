"""Unit tests for the operator command registry."""

from __future__ import annotations

from pathlib import Path

from crmsync.configuration import ConfigurationBundle
from crmsync.slash_commands import (
    CommandRouter,
    SlashCommand,
    SlashCommandContext,
    parse_limit_args,
    preview_value,
    render_help_table,
    render_rich,
)


def test_router_handles_registered_command(tmp_path: Path):
    config = ConfigurationBundle(vault_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    captured = {}

    def handler(context: SlashCommandContext, args: list[str]) -> str:
        captured["context"] = context
        return f"echo:{' '.join(args)}"

    router.register(SlashCommand(name="echo", description="Echo args", handler=handler))
    result = router.handle("ECHO", ["hello", "world"])

    assert result == "echo:hello world"
    assert captured["context"].config is config
    assert "echo" in router.command_names


def test_unknown_command_points_to_help(tmp_path: Path):
    router = CommandRouter(ConfigurationBundle(vault_dir=tmp_path, status="ready"))

    result = router.handle("nope", [])

    assert "Unknown command 'nope'" in result
    assert "help" in result


def test_render_help_table_lists_commands(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("COLUMNS", "200")
    config = ConfigurationBundle(vault_dir=tmp_path, status="ready")
    router = CommandRouter(config)
    router.register(SlashCommand(name="status", description="Show status", handler=lambda *_: ""))
    router.register(SlashCommand(name="help", description="Show help", handler=lambda *_: ""))

    output = render_help_table(router.commands())

    assert "status" in output
    assert "/status" not in output
    assert "Show status" in output


def test_render_rich_produces_ansi():
    def _render(console):
        console.print("hello", style="bold red")

    ansi = render_rich(_render)

    assert "\x1b[" in ansi  # contains ANSI escape sequence


def test_requires_ready_guard(tmp_path: Path):
    config = ConfigurationBundle(vault_dir=tmp_path, status="missing")
    router = CommandRouter(config)
    router.register(
        SlashCommand(
            name="needs_ready",
            description="Needs ready config",
            handler=lambda *_: "ok",
            requires_ready=True,
        )
    )

    result = router.handle("needs_ready", [])

    assert "requires a ready configuration" in result


def test_parse_limit_args():
    assert parse_limit_args([]) == (20, None)
    assert parse_limit_args(["-n", "5", "leads"]) == (5, "leads")
    assert parse_limit_args(["--limit", "x", "--verbose"], default_limit=7) == (7, None)


def test_preview_value_truncates():
    assert preview_value(None) == "(unset)"
    assert preview_value("line\nbreak") == "line break"
    assert preview_value("x" * 50, width=10) == "xxxxxxx..."


def test_context_reports_journal_location(tmp_path: Path):
    config = ConfigurationBundle(vault_dir=tmp_path, status="ready", merged={"sync": {"state_dir": "data"}})
    context = SlashCommandContext(config=config, router=CommandRouter(config))

    assert context.journal_path == tmp_path / "data" / "journal.json"
    assert context.load_journal().is_empty
